"""OpenAI-compatible Generation Service adapter."""

from typing import Optional

import openai
import structlog
from openai import AsyncOpenAI

from agent_runtime.errors import GenerationError
from agent_runtime.llm.service import GenerationOptions, GenerationResult

logger = structlog.get_logger(__name__)


class OpenAIGenerationService:
    """
    Chat-completions backed generation.

    Retries and timeouts are delegated to the SDK client; any SDK failure
    surfaces as `GenerationError`. When `json_output` is requested the
    completion is constrained to a JSON object.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def generate(
        self, prompt: str, options: GenerationOptions
    ) -> GenerationResult:
        messages = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        if options.json_output:
            kwargs["response_format"] = {"type": "json_object"}

        client = self._client.with_options(
            timeout=options.timeout_ms / 1000.0,
            max_retries=options.retries,
        )
        try:
            response = await client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            logger.warning("generation_failed", model=self.model, error=str(e))
            raise GenerationError(f"OpenAI generation failed: {e}") from e

        if not response.choices:
            raise GenerationError("OpenAI returned no choices")

        choice = response.choices[0]
        usage = None
        if response.usage is not None:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        return GenerationResult(
            content=choice.message.content or "",
            usage=usage,
            finish_reason=choice.finish_reason,
            model=response.model,
        )
