"""
Generation Service interface consumed by the GenerativePlanner.

Implementations own their retry/backoff and surface failures as
`GenerationError`.
"""

from typing import Dict, Optional, Protocol

from pydantic import BaseModel, Field


class GenerationOptions(BaseModel):
    temperature: float = Field(ge=0.0, le=2.0, default=0.3)
    max_tokens: int = Field(gt=0, default=1000)
    timeout_ms: int = Field(gt=0, default=30000)
    retries: int = Field(ge=0, default=2)
    json_output: bool = False           # Ask for structured JSON where supported
    system_prompt: Optional[str] = None


class GenerationResult(BaseModel):
    content: str
    usage: Optional[Dict[str, int]] = None
    finish_reason: Optional[str] = None
    model: Optional[str] = None


class GenerationService(Protocol):

    async def generate(
        self, prompt: str, options: GenerationOptions
    ) -> GenerationResult: ...
