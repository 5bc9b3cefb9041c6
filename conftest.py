"""Shared fixtures: a scripted model provider and an in-memory configuration."""

import asyncio
import json
from typing import Any, Dict, List

import pytest

from bidcore.providers.base import ModelProvider, GenerationRequest, GenerationResponse
from bidcore.utils.config import (
    Config,
    ConsensusConfig,
    InvoiceConfig,
    LoggingConfig,
    ModelProfile,
    ProviderConfig,
)

PNG_BYTES = b'\x89PNG\r\n\x1a\n' + b'\x00' * 32

MODEL_IDS = ["model-a", "model-b", "model-c", "model-d", "model-e"]


class FakeProvider(ModelProvider):
    """
    ModelProvider whose answers are scripted per model id.

    A script entry is the response text, an exception to raise, or a list of
    those consumed one per call. ``delays`` holds per-model sleep seconds.
    """

    def __init__(self, scripts: Dict[str, Any] = None, delays: Dict[str, float] = None):
        super().__init__(max_retries=3, backoff_base=0.0)
        self.scripts = dict(scripts or {})
        self.delays = dict(delays or {})
        self.requests: List[GenerationRequest] = []

    async def _send(self, request: GenerationRequest) -> GenerationResponse:
        self.requests.append(request)
        delay = self.delays.get(request.model_id)
        if delay:
            await asyncio.sleep(delay)

        script = self.scripts.get(request.model_id, '{"items": []}')
        if isinstance(script, list):
            script = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(script, BaseException):
            raise script
        return GenerationResponse(
            content=script,
            finish_reason="end_turn",
            model_id=request.model_id,
            usage={"inputTokens": 10, "outputTokens": 20},
        )


def items_payload(*items: Dict[str, Any], **extra: Any) -> str:
    return json.dumps({"items": list(items), **extra})


def make_profile(model_id: str, score: float, **overrides: Any) -> ModelProfile:
    return ModelProfile(
        model_id=model_id,
        vendor=overrides.pop("vendor", "acme"),
        specialization=overrides.pop("specialization", "general"),
        task_scores={"takeoff": score, "quality": score, "bid_analysis": score},
        strengths=overrides.pop("strengths", ["quantity extraction"]),
        weaknesses=overrides.pop("weaknesses", []),
        response_format_hint=overrides.pop("response_format_hint", False),
        **overrides,
    )


def make_config(model_count: int = 5, **consensus: Any) -> Config:
    models = [make_profile(model_id, 0.9 - i * 0.05) for i, model_id in enumerate(MODEL_IDS[:model_count])]
    return Config(
        aws_region="us-east-1",
        provider=ProviderConfig(timeout=30, connect_timeout=5, max_retries=3, backoff_base=0.0),
        models=models,
        consensus=ConsensusConfig(**{"model_timeout": 1.0, **consensus}),
        invoice=InvoiceConfig(model_id="model-invoice"),
        logging=LoggingConfig(level="DEBUG", format="%(message)s", file=None),
    )


@pytest.fixture
def config() -> Config:
    return make_config()


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES
