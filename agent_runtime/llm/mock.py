"""Scripted generation service for tests and offline demos."""

from typing import List, Optional, Tuple, Union

from agent_runtime.errors import GenerationError
from agent_runtime.llm.service import GenerationOptions, GenerationResult


class MockGenerationService:
    """
    Returns queued responses in order, then repeats `default_response`.

    Queue an Exception instance to make the next call fail.
    """

    def __init__(
        self,
        responses: Optional[List[Union[str, Exception]]] = None,
        default_response: Optional[str] = None,
    ):
        self._responses: List[Union[str, Exception]] = list(responses or [])
        self.default_response = default_response
        self.calls: List[Tuple[str, GenerationOptions]] = []

    def queue(self, response: Union[str, Exception]) -> None:
        self._responses.append(response)

    async def generate(
        self, prompt: str, options: GenerationOptions
    ) -> GenerationResult:
        self.calls.append((prompt, options))

        if self._responses:
            response = self._responses.pop(0)
        elif self.default_response is not None:
            response = self.default_response
        else:
            raise GenerationError("MockGenerationService has no scripted response left")

        if isinstance(response, Exception):
            raise response

        return GenerationResult(
            content=response,
            usage={"prompt_tokens": len(prompt) // 4, "completion_tokens": len(response) // 4},
            finish_reason="stop",
            model="mock",
        )
