"""
Chain Client interfaces — the narrow execution surface the runtime consumes.

Consumed by the Executor (handlers), the Context Builder (chain state),
Agent registration and the On-chain Trigger. Implementations must surface
network/RPC hiccups as `TransientExecutionError` or `ConnectionError` so the
executor can retry them.
"""

from typing import Any, Callable, Dict, List, Optional, Protocol

from agent_runtime.errors import DryRunViolationError

# Pseudo event name used to subscribe to provider reconnects.
RECONNECT_EVENT = "__reconnect__"

EventHandler = Callable[[Dict[str, Any]], Any]


class ContractHandle(Protocol):
    """A deployed contract bound to an ABI."""

    address: str

    async def call(self, method: str, *args: Any) -> Any: ...

    def encode_call(self, method: str, *args: Any) -> str: ...


class ChainClient(Protocol):

    def is_connected(self) -> bool: ...

    async def get_chain_id(self) -> int: ...

    async def get_block_number(self) -> int: ...

    async def get_gas_price(self) -> int: ...

    async def get_balance(self, address: str) -> int: ...

    async def get_code(self, address: str) -> str: ...

    async def get_signer_address(self) -> Optional[str]: ...

    async def estimate_gas(self, tx: Dict[str, Any]) -> int: ...

    async def send_transaction(self, tx: Dict[str, Any]) -> Dict[str, Any]: ...

    async def wait_for_transaction(
        self, tx_hash: str, confirmations: int = 1
    ) -> Dict[str, Any]: ...

    def get_contract(self, address: str, abi: List[Dict[str, Any]]) -> ContractHandle: ...

    def on(
        self, event_name: str, event_filter: Optional[Dict[str, Any]], handler: EventHandler
    ) -> None: ...

    def off(self, event_name: str, handler: EventHandler) -> None: ...


class AgentRegistry(Protocol):
    """The on-chain registry contract, treated as an opaque remote service."""

    async def register_agent(
        self, name: str, description: str, capabilities: List[str]
    ) -> str: ...

    async def deactivate_agent(self, agent_id: str) -> None: ...


class ReadOnlyChainClient:
    """
    Wraps a ChainClient for dry runs. Reads pass through; sending or
    waiting on a transaction raises DryRunViolationError.
    """

    MUTATING_METHODS = frozenset({"send_transaction", "wait_for_transaction"})

    def __init__(self, client: Any):
        self._client = client

    def __getattr__(self, name: str) -> Any:
        if name in self.MUTATING_METHODS:
            return _blocked(name)
        return getattr(self._client, name)


def _blocked(method: str) -> Callable[..., Any]:
    async def blocked(*args: Any, **kwargs: Any) -> Any:
        raise DryRunViolationError(method)

    return blocked
