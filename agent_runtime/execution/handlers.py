"""
Built-in action handlers.

Each handler is `async (params, ctx) -> dict`. Params arrive raw and are
validated through their typed params model first. Amounts are in ether
and converted to wei here; everything sent to the chain client is wei.
"""

import re
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from agent_runtime.errors import (
    AgentRuntimeError,
    FatalConfigurationError,
    ValidationError,
)
from agent_runtime.models.action import typed_params

WEI_PER_ETHER = Decimal(10) ** 18
SWAP_DEADLINE_SECONDS = 20 * 60

_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
_BYTECODE = re.compile(r"^0x(?:[0-9a-fA-F]{2})+$")

ERC20_ABI: List[Dict[str, Any]] = [
    {"type": "function", "name": "approve", "stateMutability": "nonpayable",
     "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}]},
    {"type": "function", "name": "allowance", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}]},
]

ROUTER_ABI: List[Dict[str, Any]] = [
    {"type": "function", "name": "getAmountsOut", "stateMutability": "view",
     "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "path", "type": "address[]"}]},
    {"type": "function", "name": "swapExactTokensForTokens", "stateMutability": "nonpayable",
     "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "amountOutMin", "type": "uint256"},
                {"name": "path", "type": "address[]"}, {"name": "to", "type": "address"},
                {"name": "deadline", "type": "uint256"}]},
]


def is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS.match(value))


def to_wei(ether: Optional[Decimal]) -> int:
    if ether is None:
        return 0
    return int(Decimal(ether) * WEI_PER_ETHER)


def from_wei(wei: int) -> str:
    return str(Decimal(wei) / WEI_PER_ETHER)


def _require_address(value: str, label: str) -> str:
    if not is_address(value):
        raise ValidationError(f"Invalid {label}: {value}")
    return value


def _chain(ctx):
    if ctx.chain_client is None:
        raise FatalConfigurationError("Chain client not configured")
    return ctx.chain_client


async def _signer(ctx) -> str:
    signer = await _chain(ctx).get_signer_address()
    if not signer:
        raise FatalConfigurationError("No signer configured on the chain client")
    return signer


def _is_view(abi: List[Dict[str, Any]], method: str) -> bool:
    for entry in abi:
        if entry.get("name") == method:
            return entry.get("stateMutability") in ("view", "pure")
    return False


async def _send_and_wait(ctx, tx: Dict[str, Any]) -> Dict[str, Any]:
    chain = _chain(ctx)
    sent = await chain.send_transaction(tx)
    receipt = await chain.wait_for_transaction(sent["hash"], ctx.confirmations)
    if receipt.get("status") == 0:
        raise AgentRuntimeError(f"Transaction {sent['hash']} reverted")
    return {
        "tx_hash": sent["hash"],
        "block_number": receipt.get("block_number"),
        "gas_used": receipt.get("gas_used"),
        "contract_address": receipt.get("contract_address"),
    }


# --- Read-only ---


async def validate_address(params: Dict[str, Any], ctx) -> Dict[str, Any]:
    p = typed_params("validate_address", params)
    return {"valid": True, "address": _require_address(p.address, "address")}


async def validate_contract(params: Dict[str, Any], ctx) -> Dict[str, Any]:
    p = typed_params("validate_contract", params)
    address = _require_address(p.address, "contract address")
    code = await _chain(ctx).get_code(address)
    if not code or code == "0x":
        raise ValidationError(f"Address is not a contract: {address}")
    return {"valid": True, "address": address, "code_size": (len(code) - 2) // 2}


async def check_balance(params: Dict[str, Any], ctx) -> Dict[str, Any]:
    p = typed_params("check_balance", params)
    address = p.address or await _signer(ctx)
    balance = await _chain(ctx).get_balance(address)
    required = to_wei(p.amount)
    if balance < required:
        raise ValidationError(
            f"Insufficient balance on {address}: have {from_wei(balance)}, "
            f"need {from_wei(required)}"
        )
    return {
        "address": address,
        "balance_wei": balance,
        "balance": from_wei(balance),
        "required_wei": required,
        "sufficient": True,
    }


async def estimate_gas(params: Dict[str, Any], ctx) -> Dict[str, Any]:
    p = typed_params("estimate_gas", params)
    chain = _chain(ctx)
    if p.contract and p.method:
        contract = chain.get_contract(_require_address(p.contract, "contract address"), [])
        tx = {"to": p.contract, "data": contract.encode_call(p.method, *p.args)}
    else:
        tx = {"to": p.to, "value": to_wei(p.value), "data": p.data}
    gas_limit = await chain.estimate_gas(tx)
    gas_price = await chain.get_gas_price()
    return {
        "gas_limit": gas_limit,
        "gas_price": gas_price,
        "estimated_cost_wei": gas_limit * gas_price,
    }


async def get_quote(params: Dict[str, Any], ctx) -> Dict[str, Any]:
    p = typed_params("get_quote", params)
    if not p.router:
        raise ValidationError("get_quote requires a router address")
    router = _chain(ctx).get_contract(_require_address(p.router, "router"), ROUTER_ABI)
    amounts = await router.call("getAmountsOut", to_wei(p.amount_in), [p.token_in, p.token_out])
    amount_out = int(amounts[-1])
    return {
        "token_in": p.token_in,
        "token_out": p.token_out,
        "amount_in": str(p.amount_in),
        "amount_out": from_wei(amount_out),
        "amount_out_wei": amount_out,
    }


async def compile_contract(params: Dict[str, Any], ctx) -> Dict[str, Any]:
    p = typed_params("compile_contract", params)
    if not _BYTECODE.match(p.bytecode):
        raise ValidationError("Bytecode must be a 0x-prefixed, even-length hex string")
    return {"bytecode": p.bytecode, "size": (len(p.bytecode) - 2) // 2}


async def estimate_deployment_gas(params: Dict[str, Any], ctx) -> Dict[str, Any]:
    p = typed_params("estimate_deployment_gas", params)
    chain = _chain(ctx)
    gas_limit = await chain.estimate_gas({"data": p.bytecode})
    gas_price = await chain.get_gas_price()
    return {
        "gas_limit": gas_limit,
        "gas_price": gas_price,
        "estimated_cost_wei": gas_limit * gas_price,
    }


# --- State-mutating ---


async def execute_transfer(params: Dict[str, Any], ctx) -> Dict[str, Any]:
    p = typed_params("execute_transfer", params)
    signer = await _signer(ctx)
    tx = {"from": signer, "to": _require_address(p.to, "recipient"), "value": to_wei(p.amount)}
    if p.gas_limit:
        tx["gas"] = p.gas_limit
    receipt = await _send_and_wait(ctx, tx)
    return dict(receipt, **{"from": signer, "to": p.to, "amount": str(p.amount)})


async def approve_token(params: Dict[str, Any], ctx) -> Dict[str, Any]:
    p = typed_params("approve_token", params)
    if not p.spender:
        raise ValidationError("approve_token requires a spender")
    signer = await _signer(ctx)
    token = _chain(ctx).get_contract(_require_address(p.token, "token"), ERC20_ABI)
    data = token.encode_call("approve", p.spender, to_wei(p.amount))
    receipt = await _send_and_wait(ctx, {"from": signer, "to": p.token, "data": data})
    return dict(receipt, token=p.token, spender=p.spender, amount=str(p.amount))


async def execute_swap(params: Dict[str, Any], ctx) -> Dict[str, Any]:
    p = typed_params("execute_swap", params)
    if not p.router:
        raise ValidationError("execute_swap requires a router address")
    signer = await _signer(ctx)
    router = _chain(ctx).get_contract(_require_address(p.router, "router"), ROUTER_ABI)
    data = router.encode_call(
        "swapExactTokensForTokens",
        to_wei(p.amount_in),
        to_wei(p.amount_out_min),
        [p.token_in, p.token_out],
        signer,
        int(time.time()) + SWAP_DEADLINE_SECONDS,
    )
    tx = {"from": signer, "to": p.router, "data": data}
    if p.gas_limit:
        tx["gas"] = p.gas_limit
    receipt = await _send_and_wait(ctx, tx)
    return dict(receipt, token_in=p.token_in, token_out=p.token_out, amount_in=str(p.amount_in))


async def call_contract(params: Dict[str, Any], ctx) -> Dict[str, Any]:
    p = typed_params("call_contract", params)
    contract = _chain(ctx).get_contract(_require_address(p.contract, "contract address"), p.abi)
    if _is_view(p.abi, p.method) and not p.value:
        return {"result": await contract.call(p.method, *p.args)}

    signer = await _signer(ctx)
    tx = {
        "from": signer,
        "to": p.contract,
        "data": contract.encode_call(p.method, *p.args),
        "value": to_wei(p.value),
    }
    if p.gas_limit:
        tx["gas"] = p.gas_limit
    receipt = await _send_and_wait(ctx, tx)
    return dict(receipt, contract=p.contract, method=p.method)


async def deploy_contract(params: Dict[str, Any], ctx) -> Dict[str, Any]:
    p = typed_params("deploy_contract", params)
    if not _BYTECODE.match(p.bytecode):
        raise ValidationError("Bytecode must be a 0x-prefixed, even-length hex string")
    signer = await _signer(ctx)
    tx = {"from": signer, "data": p.bytecode}
    if p.args:
        tx["constructor_args"] = list(p.args)
    if p.gas_limit:
        tx["gas"] = p.gas_limit
    receipt = await _send_and_wait(ctx, tx)
    if not receipt.get("contract_address"):
        raise AgentRuntimeError(f"Deployment {receipt['tx_hash']} produced no contract address")
    return receipt


# action type -> (handler, mutates_state)
BUILTIN_HANDLERS = {
    "validate_address": (validate_address, False),
    "validate_contract": (validate_contract, False),
    "check_balance": (check_balance, False),
    "estimate_gas": (estimate_gas, False),
    "get_quote": (get_quote, False),
    "compile_contract": (compile_contract, False),
    "estimate_deployment_gas": (estimate_deployment_gas, False),
    "execute_transfer": (execute_transfer, True),
    "approve_token": (approve_token, True),
    "execute_swap": (execute_swap, True),
    "call_contract": (call_contract, True),
    "deploy_contract": (deploy_contract, True),
}
