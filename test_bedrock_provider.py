"""
Tests for the Bedrock provider adapter.

A stub bedrock-runtime client stands in for boto3, so no AWS credentials or
network access are needed.
"""

import pytest
from botocore.exceptions import ClientError, ReadTimeoutError

from bidcore.providers.base import GenerationRequest, JSON_RESPONSE_FORMAT
from bidcore.providers.bedrock import BedrockProvider
from bidcore.providers.images import ImageInput
from bidcore.utils.errors import ErrorType, ProviderError


def client_error(code: str, status: int, message: str = "failed") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": message}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "Converse",
    )


def converse_response(text: str, stop_reason: str = "end_turn") -> dict:
    return {
        "output": {"message": {"role": "assistant", "content": [{"text": text}]}},
        "stopReason": stop_reason,
        "usage": {"inputTokens": 100, "outputTokens": 50},
    }


class StubRuntime:
    """Replays scripted converse results and records the call parameters."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def converse(self, **params):
        self.calls.append(params)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def make_provider(*results) -> BedrockProvider:
    return BedrockProvider(client=StubRuntime(*results), max_retries=3, backoff_base=0.0)


def test_build_params():
    provider = make_provider()
    image = ImageInput(data=b'\x89PNG\r\n\x1a\n', format="png")
    request = GenerationRequest(
        model_id="amazon.nova-pro-v1:0",
        prompt="Analyze",
        system_prompt="You are an estimator.",
        images=[image],
        max_tokens=2000,
        temperature=0.1,
        response_format=JSON_RESPONSE_FORMAT,
    )

    params = provider.build_params(request)
    assert params["modelId"] == "amazon.nova-pro-v1:0"
    assert params["system"] == [{"text": "You are an estimator."}]
    assert params["inferenceConfig"] == {"temperature": 0.1, "maxTokens": 2000}
    assert params["additionalModelRequestFields"] == {"response_format": {"type": "json_object"}}

    content = params["messages"][0]["content"]
    assert content[0] == {"image": {"format": "png", "source": {"bytes": image.data}}}
    assert content[1] == {"text": "Analyze"}


def test_build_params_without_hint_or_system():
    params = make_provider().build_params(GenerationRequest(model_id="m", prompt="hi"))
    assert "system" not in params
    assert "additionalModelRequestFields" not in params


@pytest.mark.asyncio
async def test_generate_parses_converse_response():
    provider = make_provider(converse_response('{"items": []}', stop_reason="max_tokens"))
    response = await provider.generate(GenerationRequest(model_id="m", prompt="hi"))

    assert response.content == '{"items": []}'
    assert response.finish_reason == "max_tokens"
    assert response.truncated
    assert response.usage == {"inputTokens": 100, "outputTokens": 50}
    assert response.attempts == 1


@pytest.mark.asyncio
async def test_throttling_is_retried():
    provider = make_provider(
        client_error("ThrottlingException", 429),
        client_error("ThrottlingException", 429),
        converse_response("ok"),
    )
    response = await provider.generate(GenerationRequest(model_id="m", prompt="hi"))

    assert response.content == "ok"
    assert response.attempts == 3
    assert len(provider.runtime.calls) == 3


@pytest.mark.asyncio
async def test_retries_exhausted():
    provider = make_provider(*[client_error("ServiceUnavailableException", 503)] * 3)

    with pytest.raises(ProviderError) as exc_info:
        await provider.generate(GenerationRequest(model_id="m", prompt="hi"))

    error = exc_info.value
    assert error.error_type == ErrorType.PROVIDER_SERVICE_ERROR
    assert error.status_code == 503
    assert error.is_retryable
    assert error.model_id == "m"
    assert len(provider.runtime.calls) == 3


@pytest.mark.asyncio
async def test_rejected_hint_is_dropped_once():
    provider = make_provider(
        client_error("ValidationException", 400, "response_format is not supported"),
        converse_response('{"items": []}'),
    )
    request = GenerationRequest(model_id="m", prompt="hi", response_format=JSON_RESPONSE_FORMAT)
    response = await provider.generate(request)

    assert response.hint_dropped
    first, second = provider.runtime.calls
    assert "additionalModelRequestFields" in first
    assert "additionalModelRequestFields" not in second


@pytest.mark.asyncio
async def test_auth_error_is_not_retried():
    provider = make_provider(client_error("AccessDeniedException", 403))
    request = GenerationRequest(model_id="m", prompt="hi", response_format=JSON_RESPONSE_FORMAT)

    with pytest.raises(ProviderError) as exc_info:
        await provider.generate(request)

    assert exc_info.value.error_type == ErrorType.PROVIDER_AUTH_ERROR
    assert not exc_info.value.is_retryable
    assert len(provider.runtime.calls) == 1


@pytest.mark.asyncio
async def test_read_timeout_maps_to_timeout():
    provider = make_provider(
        ReadTimeoutError(endpoint_url="https://bedrock-runtime.us-east-1.amazonaws.com"),
        converse_response("ok"),
    )
    response = await provider.generate(GenerationRequest(model_id="m", prompt="hi"))
    assert response.attempts == 2


def test_provider_error_from_client_error():
    error = ProviderError.from_client_error(
        client_error("ModelNotReadyException", 429, "warming up"), operation="converse", model_id="m"
    )
    assert error.error_type == ErrorType.PROVIDER_MODEL_ERROR
    assert error.error_code == "ModelNotReadyException"
    assert error.is_retryable
    assert "warming up" in str(error)
