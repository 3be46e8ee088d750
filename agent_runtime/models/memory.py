"""Memory entries for the session interaction log."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class MemoryType(str, Enum):
    INPUT = "input"
    OUTPUT = "output"
    STATE = "state"
    SYSTEM = "system"


class MemoryEntry(BaseModel):
    """Append-only log entry. Tokens are estimated at write time."""

    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    type: MemoryType
    content: Any
    timestamp: datetime
    tokens: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None


class MemoryFilter(BaseModel):
    type: Optional[MemoryType] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = None


class MemorySummary(BaseModel):
    """Diagnostic aggregate over one session."""

    session_id: str
    total_entries: int
    total_tokens: int
    counts_by_type: Dict[str, int] = {}
    first_timestamp: Optional[datetime] = None
    last_timestamp: Optional[datetime] = None

    def render(self) -> str:
        if self.total_entries == 0:
            return f"Session: {self.session_id}\nNo memory entries."
        lines = [
            f"Session: {self.session_id}",
            f"Total entries: {self.total_entries}",
            f"Estimated tokens: {self.total_tokens}",
            f"Time range: {self.first_timestamp.isoformat()} to {self.last_timestamp.isoformat()}",
            "Entry types:",
        ]
        for memory_type, count in sorted(self.counts_by_type.items()):
            lines.append(f"  - {memory_type}: {count}")
        return "\n".join(lines)
