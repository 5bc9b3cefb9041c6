"""Uniform interface over AI model backends."""

import asyncio
import dataclasses
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .images import ImageInput
from ..utils.errors import ProviderError, ErrorType, ErrorContext

logger = logging.getLogger(__name__)

JSON_RESPONSE_FORMAT = "json"


@dataclass
class GenerationRequest:
    """
    One model call.

    Either ``prompt`` (with optional ``images`` placed before it in a single
    user turn) or an explicit ``messages`` list may be given. Message content
    blocks are ``{"text": str}`` or ``{"image": ImageInput}``.

    Attributes:
        model_id: Backend model identifier
        prompt: User prompt text
        messages: Explicit conversation, overrides prompt/images
        system_prompt: Optional system instructions
        images: Images attached to the prompt turn
        max_tokens: Maximum tokens to generate
        temperature: Sampling temperature
        response_format: Structured-response hint ("json") or None
    """
    model_id: str
    prompt: Optional[str] = None
    messages: Optional[List[Dict[str, Any]]] = None
    system_prompt: Optional[str] = None
    images: List[ImageInput] = field(default_factory=list)
    max_tokens: int = 4000
    temperature: float = 0.2
    response_format: Optional[str] = None

    def without_hint(self) -> "GenerationRequest":
        return dataclasses.replace(self, response_format=None)

    def build_messages(self) -> List[Dict[str, Any]]:
        """Conversation to send, in provider-neutral content blocks."""
        if self.messages:
            return list(self.messages)
        content: List[Dict[str, Any]] = [{"image": image} for image in self.images]
        content.append({"text": self.prompt or ""})
        return [{"role": "user", "content": content}]


@dataclass
class GenerationResponse:
    """
    Raw text returned by a backend plus call metadata.

    Attributes:
        content: Generated text
        finish_reason: Backend stop reason (e.g. "end_turn", "max_tokens")
        raw: Backend response payload
        model_id: Model that produced the text
        usage: Token usage
        attempts: Number of attempts the call took
        hint_dropped: True when the call only succeeded without the response-format hint
    """
    content: str
    finish_reason: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)
    model_id: str = ""
    usage: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 1
    hint_dropped: bool = False

    @property
    def truncated(self) -> bool:
        return self.finish_reason in ("max_tokens", "length")


class ModelProvider(ABC):
    """
    Base class for model backends.

    Subclasses implement ``_send`` for a single attempt and raise
    ProviderError on failure. ``generate`` adds retry with exponential
    backoff for transient errors and a single retry without the
    response-format hint when the backend rejects it.
    """

    def __init__(self, max_retries: int = 3, backoff_base: float = 1.0):
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base

    @abstractmethod
    async def _send(self, request: GenerationRequest) -> GenerationResponse:
        """Perform a single call to the backend."""
        pass

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        """
        Call the backend with retries.

        Args:
            request: GenerationRequest describing the call

        Returns:
            GenerationResponse with the generated text

        Raises:
            ProviderError: When retries are exhausted or the error is not transient
        """
        try:
            return await self._generate_with_retry(request)
        except ProviderError as e:
            if not request.response_format or not self._hint_may_be_cause(e):
                raise
            logger.warning(
                f"Model {request.model_id} rejected the response-format hint "
                f"({e.error_code}); retrying once without it"
            )
            response = await self._generate_with_retry(request.without_hint())
            response.hint_dropped = True
            return response

    @staticmethod
    def _hint_may_be_cause(error: ProviderError) -> bool:
        return not error.is_retryable and error.error_type != ErrorType.PROVIDER_AUTH_ERROR

    async def _generate_with_retry(self, request: GenerationRequest) -> GenerationResponse:
        for attempt in range(self.max_retries):
            try:
                logger.debug(
                    f"Invoking {request.model_id} (attempt {attempt + 1}/{self.max_retries})"
                )
                response = await self._send(request)
                response.attempts = attempt + 1
                return response

            except ProviderError as e:
                logger.warning(
                    f"Provider error from {request.model_id} "
                    f"(attempt {attempt + 1}/{self.max_retries}): {e.context.message}"
                )
                if e.is_retryable and attempt < self.max_retries - 1:
                    # Exponential backoff: 1s, 2s, 4s, ...
                    wait_time = self.backoff_base * (2 ** attempt)
                    logger.info(f"Retrying {request.model_id} in {wait_time} seconds...")
                    await asyncio.sleep(wait_time)
                    continue
                raise

        # Should not reach here, but just in case
        raise ProviderError(ErrorContext(
            error_type=ErrorType.PROVIDER_SERVICE_ERROR,
            message=f"Failed to invoke {request.model_id} after {self.max_retries} attempts",
            recoverable=False,
            details={"model_id": request.model_id, "status_code": None}
        ))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(max_retries={self.max_retries})"
