"""
Runtime configuration.

Component configs are plain pydantic models with safe defaults.
`RuntimeSettings.from_env()` reads `AGENT_*` variables (after loading a
`.env` file, if present) for process-level bootstrapping.
"""

import os
from enum import Enum
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class StorageBackend(str, Enum):
    MEMORY = "memory"
    FILE = "file"


class PolicyMode(str, Enum):
    ENFORCE = "enforce"     # Reject actions that break the policy
    OVERRIDE = "override"   # Clamp amounts/gas to maxima first, then evaluate


class ExecutorConfig(BaseModel):
    max_retries: int = Field(ge=0, default=3)
    retry_delay_ms: int = Field(ge=0, default=1000)     # Doubles each attempt
    max_retry_delay_ms: int = Field(ge=0, default=30000)
    timeout_ms: int = Field(gt=0, default=30000)        # Per attempt
    enable_parallel: bool = True
    max_concurrent: int = Field(ge=1, default=5)
    dry_run: bool = False
    confirmations: int = Field(ge=0, default=1)
    stop_on_failure: bool = True                        # Sequential mode only


class GenerativePlannerConfig(BaseModel):
    temperature: float = Field(ge=0.0, le=2.0, default=0.3)
    max_tokens: int = Field(gt=0, default=1000)
    # True: one invalid element fails the whole batch.
    # False: invalid elements are dropped and logged.
    strict_validation: bool = True
    request_structured: bool = True
    timeout_ms: int = Field(gt=0, default=30000)
    system_prompt: Optional[str] = None


class ContextOptions(BaseModel):
    include_chain_state: bool = True
    include_actions: bool = True
    include_memory: bool = True
    max_actions: int = Field(ge=0, default=10)
    max_memory_tokens: int = Field(ge=0, default=1000)
    chain_state_ttl_ms: int = Field(ge=0, default=2000)


class AgentConfig(BaseModel):
    """Configuration for one Agent instance."""

    name: str = Field(min_length=1)
    description: str = ""
    owner: Optional[str] = None
    version: str = "0.1.0"
    capabilities: List[str] = []
    goal: Optional[dict] = None             # Default goal when a trigger carries none

    storage_backend: StorageBackend = StorageBackend.MEMORY
    storage_path: Optional[str] = None      # Defaults to ./data/<name>
    memory_backend: StorageBackend = StorageBackend.MEMORY
    memory_path: Optional[str] = None       # Defaults to ./data/<name>/memory
    memory_max_entries: int = Field(ge=1, default=100)
    memory_max_tokens: int = Field(ge=1, default=4000)

    policy_mode: PolicyMode = PolicyMode.ENFORCE
    delay_on_rate_limit: bool = False
    queue_size: int = Field(ge=1, default=100)
    queue_while_paused: bool = False

    executor: ExecutorConfig = ExecutorConfig()
    context: ContextOptions = ContextOptions()

    def resolved_storage_path(self) -> Path:
        return Path(self.storage_path or Path("data") / self.name)

    def resolved_memory_path(self) -> Path:
        return Path(self.memory_path or self.resolved_storage_path() / "memory")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


class RuntimeSettings(BaseModel):
    """Process-level settings, typically read from the environment."""

    log_level: str = "INFO"
    log_format: str = "console"
    storage_backend: StorageBackend = StorageBackend.MEMORY
    storage_path: Optional[str] = None
    dry_run: bool = False
    max_retries: int = 3
    timeout_ms: int = 30000
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_base_url: Optional[str] = None

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "RuntimeSettings":
        """Load `.env` (without overriding real env vars) and read AGENT_* keys."""
        load_dotenv(env_file, override=False)
        return cls(
            log_level=os.getenv("AGENT_LOG_LEVEL", "INFO"),
            log_format=os.getenv("AGENT_LOG_FORMAT", "console"),
            storage_backend=os.getenv("AGENT_STORAGE_BACKEND", StorageBackend.MEMORY.value),
            storage_path=os.getenv("AGENT_STORAGE_PATH") or None,
            dry_run=_env_bool("AGENT_DRY_RUN", False),
            max_retries=_env_int("AGENT_MAX_RETRIES", 3),
            timeout_ms=_env_int("AGENT_TIMEOUT_MS", 30000),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("AGENT_OPENAI_MODEL", "gpt-4o-mini"),
            openai_base_url=os.getenv("AGENT_OPENAI_BASE_URL") or None,
        )

    def to_agent_config(self, name: str, **overrides) -> AgentConfig:
        """Build an AgentConfig seeded from these settings."""
        executor = ExecutorConfig(
            max_retries=self.max_retries,
            timeout_ms=self.timeout_ms,
            dry_run=self.dry_run,
        )
        fields = {
            "name": name,
            "storage_backend": self.storage_backend,
            "storage_path": self.storage_path,
            "memory_backend": self.storage_backend,
            "executor": executor,
        }
        fields.update(overrides)
        return AgentConfig(**fields)
