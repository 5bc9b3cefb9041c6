"""AWS Bedrock Converse backend for the model provider interface."""

import asyncio
import logging
import os
import time
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)
from dotenv import load_dotenv

from .base import ModelProvider, GenerationRequest, GenerationResponse, JSON_RESPONSE_FORMAT
from ..utils.errors import ProviderError, ErrorType, ErrorContext

# Ensure environment variables are loaded
load_dotenv()

logger = logging.getLogger(__name__)


class BedrockProvider(ModelProvider):
    """
    Calls any Bedrock chat model through the Converse API.

    One provider instance serves every model of the roster; the model is
    chosen per request. The blocking boto3 call runs in a worker thread so
    concurrent model calls do not block the event loop.
    """

    def __init__(
        self,
        region: str = "us-east-1",
        timeout: int = 120,
        connect_timeout: int = 10,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        client: Optional[Any] = None
    ):
        """
        Initialize Bedrock provider.

        Args:
            region: AWS region for Bedrock service
            timeout: Read timeout in seconds
            connect_timeout: Connect timeout in seconds
            max_retries: Maximum number of attempts per call
            backoff_base: First backoff delay in seconds
            client: Pre-built bedrock-runtime client (tests inject a stub)
        """
        super().__init__(max_retries=max_retries, backoff_base=backoff_base)
        self.region = region

        if client is not None:
            self.runtime = client
        else:
            config_kwargs: Dict[str, Any] = {
                "region_name": region,
                "connect_timeout": connect_timeout,
                "read_timeout": timeout,
                "retries": {"max_attempts": 0},  # We handle retries manually
            }

            # Bedrock API keys use bearer-token auth instead of SigV4
            if self._resolve_bearer_token():
                config_kwargs["signature_version"] = "bearer"
                logger.info("BedrockProvider configured to use Amazon Bedrock API key authentication")
            else:
                logger.info("BedrockProvider configured to use AWS IAM credentials (SigV4)")

            self.runtime = boto3.client("bedrock-runtime", config=BotoConfig(**config_kwargs))

        logger.info(f"Initialized BedrockProvider: region={region}, max_retries={self.max_retries}")

    @staticmethod
    def _resolve_bearer_token() -> Optional[str]:
        token = os.getenv("AWS_BEARER_TOKEN_BEDROCK") or os.getenv("BEDROCK_API_KEY")
        if token and not os.getenv("AWS_BEARER_TOKEN_BEDROCK"):
            # botocore only reads the AWS_ prefixed variable
            os.environ["AWS_BEARER_TOKEN_BEDROCK"] = token.strip()
        return token.strip() if token else None

    def build_params(self, request: GenerationRequest) -> Dict[str, Any]:
        """
        Translate a GenerationRequest into Converse API parameters.

        Args:
            request: Provider-neutral request

        Returns:
            Keyword arguments for ``bedrock-runtime.converse``
        """
        params: Dict[str, Any] = {
            "modelId": request.model_id,
            "messages": [self._convert_message(m) for m in request.build_messages()],
            "inferenceConfig": {
                "temperature": request.temperature,
                "maxTokens": request.max_tokens
            }
        }

        if request.system_prompt:
            params["system"] = [{"text": request.system_prompt}]

        if request.response_format == JSON_RESPONSE_FORMAT:
            params["additionalModelRequestFields"] = {
                "response_format": {"type": "json_object"}
            }

        return params

    @staticmethod
    def _convert_message(message: Dict[str, Any]) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = []
        for block in message.get("content", []):
            if "image" in block:
                image = block["image"]
                content.append({
                    "image": {
                        "format": image.format,
                        "source": {"bytes": image.data}
                    }
                })
            else:
                content.append({"text": block.get("text", "")})
        return {"role": message.get("role", "user"), "content": content}

    async def _send(self, request: GenerationRequest) -> GenerationResponse:
        params = self.build_params(request)
        start_time = time.time()

        try:
            response = await asyncio.to_thread(self.runtime.converse, **params)
        except ClientError as e:
            raise ProviderError.from_client_error(
                error=e,
                operation="converse",
                model_id=request.model_id,
                recoverable=False
            )
        except NoCredentialsError as e:
            raise self._wrap(e, request.model_id, ErrorType.PROVIDER_AUTH_ERROR, None)
        except (ReadTimeoutError, ConnectTimeoutError) as e:
            raise self._wrap(e, request.model_id, ErrorType.PROVIDER_TIMEOUT, 408)
        except (EndpointConnectionError, BotoCoreError) as e:
            raise self._wrap(e, request.model_id, ErrorType.PROVIDER_SERVICE_ERROR, 503)

        elapsed = time.time() - start_time
        logger.info(
            f"Bedrock invocation successful: model={request.model_id}, "
            f"stop_reason={response.get('stopReason')}, "
            f"usage={response.get('usage')}, elapsed={elapsed:.2f}s"
        )
        return self._parse_converse_response(response, request.model_id)

    @staticmethod
    def _wrap(
        error: Exception,
        model_id: str,
        error_type: ErrorType,
        status_code: Optional[int]
    ) -> ProviderError:
        context = ErrorContext(
            error_type=error_type,
            message=f"Provider error during converse: {str(error)}",
            recoverable=False,
            details={
                "error_code": type(error).__name__,
                "status_code": status_code,
                "operation": "converse",
                "model_id": model_id,
            },
            original_exception=error
        )
        return ProviderError(context)

    @staticmethod
    def _parse_converse_response(response: Dict[str, Any], model_id: str) -> GenerationResponse:
        """
        Extract the generated text from a Converse API response.

        Args:
            response: Raw response from Converse API
            model_id: Model the request was sent to

        Returns:
            GenerationResponse
        """
        output = response.get("output", {})
        message = output.get("message", {})
        content = message.get("content", [])

        text_parts = [
            block["text"] for block in content
            if isinstance(block, dict) and block.get("text")
        ]

        return GenerationResponse(
            content="\n".join(text_parts),
            finish_reason=response.get("stopReason"),
            raw=response,
            model_id=model_id,
            usage=response.get("usage", {}) or {},
        )
