"""
In-memory Chain Client and Agent Registry.

Deterministic stand-ins for a real provider, used by tests, demos and
dry runs. Every call is counted in `calls` so callers can assert which
methods were (or were not) reached.
"""

import hashlib
import inspect
import json
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import structlog

from agent_runtime.chain.client import RECONNECT_EVENT, EventHandler
from agent_runtime.errors import TransientExecutionError

logger = structlog.get_logger(__name__)


def _new_hash() -> str:
    return "0x" + uuid4().hex + uuid4().hex


def _new_address() -> str:
    return "0x" + uuid4().hex + uuid4().hex[:8]


class InMemoryContract:
    """Contract handle whose view calls return canned responses."""

    def __init__(
        self,
        address: str,
        abi: List[Dict[str, Any]],
        responses: Dict[str, Any],
    ):
        self.address = address
        self.abi = abi
        self._responses = responses

    async def call(self, method: str, *args: Any) -> Any:
        if method not in self._responses:
            raise TransientExecutionError(
                f"Contract {self.address} reverted: no response for {method}"
            )
        response = self._responses[method]
        if callable(response):
            return response(*args)
        return response

    def encode_call(self, method: str, *args: Any) -> str:
        selector = hashlib.sha256(method.encode()).hexdigest()[:8]
        payload = json.dumps(list(args), default=str).encode().hex()
        return f"0x{selector}{payload}"


class InMemoryChainClient:
    """A fake chain with balances, contract code, transactions and event logs."""

    def __init__(
        self,
        chain_id: int = 50312,
        block_number: int = 1,
        gas_price: int = 1_000_000_000,
        signer_address: Optional[str] = None,
        balances: Optional[Dict[str, int]] = None,
    ):
        self.chain_id = chain_id
        self.block_number = block_number
        self.gas_price = gas_price
        self.signer_address = signer_address
        self.balances: Dict[str, int] = {
            k.lower(): v for k, v in (balances or {}).items()
        }
        self.code: Dict[str, str] = {}
        self.contract_responses: Dict[str, Dict[str, Any]] = {}
        self.sent_transactions: List[Dict[str, Any]] = []
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.calls: Counter = Counter()
        self.connected = True
        self._listeners: Dict[str, List[Tuple[Optional[Dict[str, Any]], EventHandler]]] = {}
        self._failures: Dict[str, List[Exception]] = {}

    # --- Test controls ---

    def set_balance(self, address: str, wei: int) -> None:
        self.balances[address.lower()] = wei

    def deploy_code(self, address: str, code: str = "0x6080604052") -> None:
        self.code[address.lower()] = code

    def set_contract_response(self, address: str, method: str, response: Any) -> None:
        self.contract_responses.setdefault(address.lower(), {})[method] = response

    def inject_failure(self, method: str, exc: Exception, times: int = 1) -> None:
        """Make the next `times` calls to `method` raise `exc`."""
        self._failures.setdefault(method, []).extend([exc] * times)

    def listener_count(self, event_name: str) -> int:
        return len(self._listeners.get(event_name, []))

    async def emit_event(
        self,
        event_name: str,
        args: Dict[str, Any],
        transaction_hash: Optional[str] = None,
        block_number: Optional[int] = None,
        address: Optional[str] = None,
    ) -> int:
        """Deliver a contract log to matching listeners. Returns deliveries."""
        log = {
            "event": event_name,
            "args": args,
            "transaction_hash": transaction_hash or _new_hash(),
            "block_number": block_number if block_number is not None else self.block_number,
            "address": address,
        }
        delivered = 0
        for event_filter, handler in list(self._listeners.get(event_name, [])):
            if event_filter and any(args.get(k) != v for k, v in event_filter.items()):
                continue
            await _call_handler(handler, log)
            delivered += 1
        return delivered

    async def simulate_reconnect(self) -> None:
        """Drop every subscription, as a real provider does, then notify."""
        reconnect_handlers = list(self._listeners.get(RECONNECT_EVENT, []))
        self._listeners = {RECONNECT_EVENT: reconnect_handlers}
        logger.info("chain_client_reconnected", handlers=len(reconnect_handlers))
        for _, handler in reconnect_handlers:
            await _call_handler(handler, {"event": RECONNECT_EVENT})

    def _record(self, method: str) -> None:
        self.calls[method] += 1
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)
        if not self.connected and method != "is_connected":
            raise ConnectionError("Chain client is not connected")

    # --- ChainClient protocol ---

    def is_connected(self) -> bool:
        return self.connected

    async def get_chain_id(self) -> int:
        self._record("get_chain_id")
        return self.chain_id

    async def get_block_number(self) -> int:
        self._record("get_block_number")
        return self.block_number

    async def get_gas_price(self) -> int:
        self._record("get_gas_price")
        return self.gas_price

    async def get_balance(self, address: str) -> int:
        self._record("get_balance")
        return self.balances.get(address.lower(), 0)

    async def get_code(self, address: str) -> str:
        self._record("get_code")
        return self.code.get(address.lower(), "0x")

    async def get_signer_address(self) -> Optional[str]:
        self._record("get_signer_address")
        return self.signer_address

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        self._record("estimate_gas")
        data = tx.get("data") or "0x"
        return 21000 + 16 * max(0, (len(data) - 2) // 2)

    async def send_transaction(self, tx: Dict[str, Any]) -> Dict[str, Any]:
        self._record("send_transaction")
        sender = (tx.get("from") or self.signer_address or "").lower()
        value = int(tx.get("value", 0))
        if value and self.balances.get(sender, 0) < value:
            raise ValueError(f"Insufficient funds for transfer of {value} wei")
        if value:
            self.balances[sender] -= value
            recipient = (tx.get("to") or "").lower()
            self.balances[recipient] = self.balances.get(recipient, 0) + value

        tx_hash = _new_hash()
        sent = dict(tx, hash=tx_hash, nonce=len(self.sent_transactions))
        self.sent_transactions.append(sent)

        self.block_number += 1
        receipt = {
            "transaction_hash": tx_hash,
            "block_number": self.block_number,
            "status": 1,
            "gas_used": await self.estimate_gas(tx),
            "contract_address": _new_address() if not tx.get("to") else None,
        }
        self.receipts[tx_hash] = receipt
        return sent

    async def wait_for_transaction(
        self, tx_hash: str, confirmations: int = 1
    ) -> Dict[str, Any]:
        self._record("wait_for_transaction")
        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            raise TransientExecutionError(f"Receipt not found for {tx_hash}")
        return receipt

    def get_contract(self, address: str, abi: List[Dict[str, Any]]) -> InMemoryContract:
        self.calls["get_contract"] += 1
        return InMemoryContract(
            address, abi, self.contract_responses.get(address.lower(), {})
        )

    def on(
        self,
        event_name: str,
        event_filter: Optional[Dict[str, Any]],
        handler: EventHandler,
    ) -> None:
        self._listeners.setdefault(event_name, []).append((event_filter, handler))

    def off(self, event_name: str, handler: EventHandler) -> None:
        listeners = self._listeners.get(event_name, [])
        self._listeners[event_name] = [(f, h) for f, h in listeners if h != handler]


class InMemoryAgentRegistry:
    """Registry stand-in that hands out agent ids and tracks deactivation."""

    def __init__(self):
        self.agents: Dict[str, Dict[str, Any]] = {}

    async def register_agent(
        self, name: str, description: str, capabilities: List[str]
    ) -> str:
        agent_id = _new_address()
        self.agents[agent_id] = {
            "name": name,
            "description": description,
            "capabilities": list(capabilities),
            "active": True,
        }
        return agent_id

    async def deactivate_agent(self, agent_id: str) -> None:
        if agent_id not in self.agents:
            raise KeyError(f"Unknown agent: {agent_id}")
        self.agents[agent_id]["active"] = False


async def _call_handler(handler: Callable[[Dict[str, Any]], Any], payload: Dict[str, Any]) -> None:
    result = handler(payload)
    if inspect.isawaitable(result):
        await result
