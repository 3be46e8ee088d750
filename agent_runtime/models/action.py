"""Actions, action plans and execution results."""

from decimal import Decimal
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from agent_runtime.errors import ValidationError

DEFAULT_REASON = "auto-generated"


class Action(BaseModel):
    """Minimal execution unit. `type` selects a handler."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(min_length=1)
    params: Dict[str, Any] = {}


class ActionPlan(BaseModel):
    """An Action enriched with a rationale and optional dependency metadata."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    type: str = Field(min_length=1)
    target: Optional[str] = None            # Address the step acts on, if any
    params: Dict[str, Any]
    reason: str = Field(min_length=1)       # Audit trail
    dependencies: List[str] = []            # Ids of steps that must complete first
    metadata: Dict[str, Any] = {}

    def to_action(self) -> Action:
        return Action(type=self.type, params=dict(self.params))

    @classmethod
    def from_action(
        cls,
        action: Action,
        reason: str = DEFAULT_REASON,
        step_id: Optional[str] = None,
    ) -> "ActionPlan":
        return cls(id=step_id, type=action.type, params=dict(action.params), reason=reason)


class ExecutionResult(BaseModel):
    """Outcome of executing a single action. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None        # Exception class name, e.g. "ExecutionTimeoutError"
    duration_ms: int = 0
    retry_count: int = 0
    dry_run: bool = False
    data: Any = None


# --- Typed parameters, one shape per known action type ---


class _Params(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class ValidateAddressParams(_Params):
    address: str


class ValidateContractParams(_Params):
    address: str


class CheckBalanceParams(_Params):
    address: Optional[str] = None           # Defaults to the signer
    amount: Optional[Decimal] = None        # Required balance, in ether


class EstimateGasParams(_Params):
    to: Optional[str] = None
    value: Optional[Decimal] = None
    data: Optional[str] = None
    contract: Optional[str] = None
    method: Optional[str] = None
    args: List[Any] = []


class TransferParams(_Params):
    to: str
    amount: Decimal = Field(gt=0)
    gas_limit: Optional[int] = None


class GetQuoteParams(_Params):
    token_in: str
    token_out: str
    amount_in: Decimal = Field(gt=0)
    router: Optional[str] = None


class ApproveTokenParams(_Params):
    token: str
    amount: Decimal = Field(gt=0)
    spender: Optional[str] = None


class SwapParams(_Params):
    token_in: str
    token_out: str
    amount_in: Decimal = Field(gt=0)
    amount_out_min: Decimal = Decimal(0)
    router: Optional[str] = None
    gas_limit: Optional[int] = None


class ContractCallParams(_Params):
    contract: str
    method: str
    args: List[Any] = []
    value: Optional[Decimal] = None
    abi: List[Dict[str, Any]] = []
    gas_limit: Optional[int] = None


class CompileContractParams(_Params):
    bytecode: str
    source: Optional[str] = None


class EstimateDeploymentGasParams(_Params):
    bytecode: str


class DeployContractParams(_Params):
    bytecode: str
    args: List[Any] = []
    gas_limit: Optional[int] = None


class OpaqueParams(BaseModel):
    """Raw key-values for plugin action types with no declared shape."""

    model_config = ConfigDict(frozen=True, extra="allow")


ACTION_PARAMS: Dict[str, Type[BaseModel]] = {
    "validate_address": ValidateAddressParams,
    "validate_contract": ValidateContractParams,
    "check_balance": CheckBalanceParams,
    "estimate_gas": EstimateGasParams,
    "execute_transfer": TransferParams,
    "get_quote": GetQuoteParams,
    "approve_token": ApproveTokenParams,
    "execute_swap": SwapParams,
    "call_contract": ContractCallParams,
    "compile_contract": CompileContractParams,
    "estimate_deployment_gas": EstimateDeploymentGasParams,
    "deploy_contract": DeployContractParams,
}


def typed_params(action_type: str, params: Dict[str, Any]) -> BaseModel:
    """Validate raw params against the shape declared for `action_type`."""
    model = ACTION_PARAMS.get(action_type, OpaqueParams)
    try:
        return model.model_validate(params or {})
    except PydanticValidationError as e:
        fields = ", ".join(
            ".".join(str(p) for p in err["loc"]) or "params" for err in e.errors()
        )
        raise ValidationError(
            f"Invalid params for {action_type}: {fields}"
        ) from e
