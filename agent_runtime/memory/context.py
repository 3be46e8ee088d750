"""
Context Builder — assembles what the planner sees about the agent's situation.

Chain state, recent actions and memory are fetched concurrently. Chain
state is cached for a short TTL; a chain failure degrades the context
(no chain state) instead of failing the pipeline.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

import structlog

from agent_runtime.config import AgentConfig, ContextOptions
from agent_runtime.models.agent import AgentContext, ChainState
from agent_runtime.models.storage import ActionEntry

logger = structlog.get_logger(__name__)

MEMORY_PREVIEW_CHARS = 200


class ContextBuilder:

    def __init__(
        self,
        agent_config: AgentConfig,
        chain_client: Any = None,
        persistence: Any = None,
        memory: Any = None,
        options: Optional[ContextOptions] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.agent_config = agent_config
        self.chain_client = chain_client
        self.persistence = persistence
        self.memory = memory
        self.options = options or ContextOptions()
        self._clock = clock
        self._cached_state: Optional[ChainState] = None
        self._cached_at = 0.0
        self._cache_lock = asyncio.Lock()

    async def build(
        self,
        options: Optional[ContextOptions] = None,
        metadata: Optional[dict] = None,
    ) -> AgentContext:
        opts = options or self.options
        chain_state, recent_actions, memory = await asyncio.gather(
            self.get_chain_state() if opts.include_chain_state else _none(),
            self.get_recent_actions(opts.max_actions) if opts.include_actions else _empty(),
            self.get_memory_context(opts.max_memory_tokens) if opts.include_memory else _blank(),
        )
        return AgentContext(
            agent={
                "name": self.agent_config.name,
                "description": self.agent_config.description,
                "capabilities": list(self.agent_config.capabilities),
                "owner": self.agent_config.owner,
            },
            chain_state=chain_state,
            recent_actions=recent_actions,
            memory=memory,
            timestamp=datetime.now(timezone.utc),
            metadata=metadata or {},
        )

    async def get_chain_state(self) -> Optional[ChainState]:
        """Cached for `chain_state_ttl_ms`; None when the chain is unavailable."""
        if self.chain_client is None:
            return None

        async with self._cache_lock:
            ttl = self.options.chain_state_ttl_ms / 1000.0
            now = self._clock()
            if self._cached_state is not None and now - self._cached_at < ttl:
                return self._cached_state

            try:
                block_number, gas_price, chain_id = await asyncio.gather(
                    self.chain_client.get_block_number(),
                    self.chain_client.get_gas_price(),
                    self.chain_client.get_chain_id(),
                )
            except Exception as e:
                logger.warning("chain_state_unavailable", error=str(e))
                return None

            self._cached_state = ChainState(
                block_number=block_number,
                gas_price=gas_price,
                chain_id=chain_id,
                timestamp=datetime.now(timezone.utc),
            )
            self._cached_at = now
            return self._cached_state

    async def get_recent_actions(self, limit: int = 10) -> List[ActionEntry]:
        if self.persistence is None or limit <= 0:
            return []
        return await asyncio.to_thread(self.persistence.get_recent_actions, limit)

    async def get_memory_context(self, max_tokens: Optional[int] = None) -> str:
        if self.memory is None:
            return ""
        return await asyncio.to_thread(self.memory.get_context, max_tokens)

    def clear_cache(self) -> None:
        self._cached_state = None
        self._cached_at = 0.0


async def _none() -> None:
    return None


async def _empty() -> list:
    return []


async def _blank() -> str:
    return ""


def format_context(context: AgentContext) -> str:
    """Sectioned plain-text rendering for prompts."""
    parts = []

    if context.chain_state is not None:
        state = context.chain_state
        parts.extend([
            "=== Chain State ===",
            f"Chain ID: {state.chain_id}",
            f"Block: {state.block_number}",
            f"Gas Price: {state.gas_price} wei",
            "",
        ])

    parts.append("=== Agent Info ===")
    parts.append(f"Name: {context.agent.get('name', '')}")
    parts.append(f"Description: {context.agent.get('description', '')}")
    if context.agent.get("capabilities"):
        parts.append(f"Capabilities: {', '.join(context.agent['capabilities'])}")
    parts.append("")

    if context.recent_actions:
        parts.append("=== Recent Actions ===")
        for entry in context.recent_actions:
            parts.append(
                f"[{entry.timestamp.isoformat()}] {entry.action.type} - {entry.status.value}"
            )
        parts.append("")

    if context.memory:
        parts.extend(["=== Memory ===", context.memory, ""])

    return "\n".join(parts)


def format_compact(context: AgentContext) -> str:
    """Single-line rendering for tight token budgets."""
    parts = []

    if context.chain_state is not None:
        state = context.chain_state
        parts.append(
            f"Chain: {state.chain_id} | Block: {state.block_number} | Gas: {state.gas_price}wei"
        )

    parts.append(
        f"Agent: {context.agent.get('name', '')} - {context.agent.get('description', '')}"
    )

    if context.recent_actions:
        succeeded = sum(1 for e in context.recent_actions if e.status.value == "success")
        parts.append(f"Recent: {succeeded}/{len(context.recent_actions)} actions succeeded")

    if context.memory:
        preview = context.memory[:MEMORY_PREVIEW_CHARS]
        ellipsis = "..." if len(context.memory) > MEMORY_PREVIEW_CHARS else ""
        parts.append(f"Memory: {preview}{ellipsis}")

    return " | ".join(parts)
