"""Base agent class for plan analysis agents."""

import logging
from typing import Dict, Any, List, Optional
from abc import ABC, abstractmethod

from ..providers.base import ModelProvider, GenerationRequest, GenerationResponse
from ..providers.images import ImageInput

logger = logging.getLogger(__name__)


class BaseAnalysisAgent(ABC):
    """
    Base class for agents that call one model through a ModelProvider.

    Attributes:
        name: Agent name/identifier
        instructions: System instructions for the agent
        provider: ModelProvider used for model calls
        model_id: Model the agent talks to
    """

    def __init__(
        self,
        name: str,
        instructions: str,
        provider: ModelProvider,
        model_id: str,
    ):
        self.name = name
        self.instructions = instructions
        self.provider = provider
        self.model_id = model_id

        logger.info(f"Initialized {self.__class__.__name__}: {name} ({model_id})")

    @abstractmethod
    async def invoke(self, context: Dict[str, Any]) -> Dict[str, Any]:
        """Process one request described by a context dict."""
        pass

    async def get_response(
        self,
        user_message: str,
        images: Optional[List[ImageInput]] = None,
        system_prompt: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 4000,
        response_format: Optional[str] = None,
    ) -> GenerationResponse:
        """
        Send one user turn (images first, then text) to the agent's model.

        Args:
            user_message: Prompt text
            images: Images to attach
            system_prompt: Overrides the agent instructions when given
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate
            response_format: Structured-response hint

        Returns:
            GenerationResponse from the provider
        """
        request = GenerationRequest(
            model_id=self.model_id,
            prompt=user_message,
            system_prompt=system_prompt or self.instructions,
            images=list(images or []),
            max_tokens=max_tokens,
            temperature=temperature,
            response_format=response_format,
        )

        try:
            response = await self.provider.generate(request)
        except Exception as e:
            logger.error(f"Error getting response from {self.name}: {str(e)}")
            raise

        logger.debug(f"{self.name} generated response: {response.content[:100]}...")
        return response

    def __str__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name})"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name}, model_id={self.model_id})"
