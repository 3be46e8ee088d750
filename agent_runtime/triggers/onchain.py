"""On-chain trigger — fires on contract events seen by the chain client."""

from typing import Any, Dict, Optional

import structlog

from agent_runtime.chain.client import RECONNECT_EVENT
from agent_runtime.triggers.base import Trigger, TriggerCallback, invoke_callback

logger = structlog.get_logger(__name__)


class OnChainTrigger(Trigger):
    """
    Subscribes to `event_name` and re-subscribes after provider reconnects.

    `event_filter` is passed to the client and also checked locally against
    the event args, since not every provider filters server-side.
    """

    trigger_type = "onchain"

    def __init__(
        self,
        chain_client: Any,
        event_name: str,
        event_filter: Optional[Dict[str, Any]] = None,
        contract_address: Optional[str] = None,
    ):
        super().__init__()
        self.chain_client = chain_client
        self.event_name = event_name
        self.event_filter = event_filter or {}
        self.contract_address = contract_address

    async def _start(self, callback: TriggerCallback) -> None:
        self._subscribe()
        self.chain_client.on(RECONNECT_EVENT, None, self._on_reconnect)

    async def _stop(self) -> None:
        self.chain_client.off(self.event_name, self._on_event)
        self.chain_client.off(RECONNECT_EVENT, self._on_reconnect)

    def describe(self) -> Dict[str, Any]:
        return dict(
            super().describe(),
            event_name=self.event_name,
            filter=self.event_filter,
            contract_address=self.contract_address,
        )

    def _subscribe(self) -> None:
        self.chain_client.off(self.event_name, self._on_event)
        self.chain_client.on(self.event_name, self.event_filter or None, self._on_event)

    def _matches(self, log: Dict[str, Any]) -> bool:
        address = log.get("address")
        if self.contract_address and address and address.lower() != self.contract_address.lower():
            return False
        args = log.get("args") or {}
        return all(args.get(k) == v for k, v in self.event_filter.items())

    async def _on_event(self, log: Dict[str, Any]) -> None:
        if not self.is_running() or not self._matches(log):
            return
        payload = {
            "event_name": self.event_name,
            "args": log.get("args") or {},
            "transaction_hash": log.get("transaction_hash"),
            "block_number": log.get("block_number"),
        }
        await invoke_callback(self._callback, payload)

    async def _on_reconnect(self, _: Dict[str, Any]) -> None:
        if self.is_running():
            logger.info("onchain_trigger_resubscribed", event_name=self.event_name)
            self._subscribe()
