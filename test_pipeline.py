"""
Tests for the pipeline entry points and the FastAPI routes.

The pipeline globals are replaced with engines built on the scripted
FakeProvider, so initialization never touches AWS.
"""

import base64
import json
import logging

import pytest
from fastapi.testclient import TestClient

from bidcore import pipeline
from bidcore.orchestration.consensus import ConsensusEngine
from bidcore.plugins import InvoiceExtractorPlugin
from bidcore.utils.errors import ErrorType, ImageLoadError
from bidcore.utils.logging import ContextFilter, clear_context, get_context, set_context, setup_logging
from conftest import MODEL_IDS, PNG_BYTES, FakeProvider, items_payload, make_config

DATA_URL = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode()

INVOICE_TEXT = "Valley Electric\nRough-in wiring for 12 units ........ $14,400.00\nTotal $14,400.00"

STUD_WALL = {"name": "Stud wall", "quantity": 100, "unit": "LF", "category": "interior"}


@pytest.fixture
def provider(monkeypatch):
    scripts = {model_id: items_payload(STUD_WALL) for model_id in MODEL_IDS}
    scripts["model-invoice"] = json.dumps({
        "company": {"name": "Valley Electric"},
        "lineItems": [{"description": "Rough-in wiring", "category": "labor", "amount": 14400}],
        "total": 14400,
    })
    fake = FakeProvider(scripts)
    config = make_config()

    monkeypatch.setattr(pipeline, "_config", config)
    monkeypatch.setattr(pipeline, "_provider", fake)
    monkeypatch.setattr(pipeline, "_engine", ConsensusEngine(fake, config))
    monkeypatch.setattr(pipeline, "_invoice_extractor", InvoiceExtractorPlugin(fake, model_id="model-invoice"))
    return fake


@pytest.fixture
def client(provider):
    from server import app
    return TestClient(app)


@pytest.mark.asyncio
async def test_analyze_plans_runs_consensus(provider):
    result = await pipeline.analyze_plans([DATA_URL], {"taskType": "takeoff"})

    assert result["taskType"] == "takeoff"
    assert result["modelsSucceeded"] == 5
    assert result["items"][0]["consensusCount"] == 5
    assert get_context() == {}


@pytest.mark.asyncio
async def test_analyze_plans_uses_config_defaults(provider):
    await pipeline.analyze_plans([DATA_URL])

    request = provider.requests[0]
    assert request.max_tokens == 4000
    assert request.temperature == 0.2


@pytest.mark.asyncio
async def test_partial_options_keep_config_generation_settings(provider, monkeypatch):
    config = make_config(max_tokens=1500, temperature=0.05)
    monkeypatch.setattr(pipeline, "_config", config)
    monkeypatch.setattr(pipeline, "_engine", ConsensusEngine(provider, config))

    await pipeline.analyze_plans([DATA_URL], {"taskType": "takeoff"})

    assert {r.max_tokens for r in provider.requests} == {1500}
    assert {r.temperature for r in provider.requests} == {0.05}


@pytest.mark.asyncio
async def test_explicit_options_override_config(provider):
    await pipeline.analyze_plans([DATA_URL], {"maxTokens": 800, "temperature": 0.0})

    request = provider.requests[0]
    assert request.max_tokens == 800
    assert request.temperature == 0.0


@pytest.mark.asyncio
async def test_single_model_mode(provider):
    result = await pipeline.analyze_plans([DATA_URL], {"includeConsensus": False})

    assert result["modelId"] == "model-a"
    assert len(provider.requests) == 1


@pytest.mark.asyncio
async def test_extract_invoice(provider):
    result = await pipeline.extract_invoice(INVOICE_TEXT, "valley.txt")

    assert result["company"]["name"] == "Valley Electric"
    assert result["total"] == 14400.0
    assert result["fileName"] == "valley.txt"


def test_run_invoice_extraction_requires_input():
    with pytest.raises(ValueError):
        pipeline.run_invoice_extraction()


def test_error_response():
    error = ImageLoadError.from_reference("plans/missing.png", FileNotFoundError("no such file"))
    body = pipeline.error_response(error)["error"]
    assert body["error_type"] == "IMAGE_LOAD_FAILED"
    assert body["user_message"].startswith("Image could not be loaded")

    unknown = pipeline.error_response(RuntimeError("boom"))["error"]
    assert unknown["error_type"] == ErrorType.UNKNOWN_ERROR.value
    assert unknown["user_message"] == "Unexpected error: please try again"


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_analyze_route(client):
    response = client.post("/api/plan/analyze", json={"images": [DATA_URL], "taskType": "takeoff"})

    assert response.status_code == 200
    assert response.json()["modelsInvoked"] == 5


def test_single_route(client, provider):
    response = client.post("/api/plan/analyze/single", json={"images": [DATA_URL]})

    assert response.status_code == 200
    assert response.json()["modelId"] == "model-a"


def test_analyze_route_requires_images(client):
    response = client.post("/api/plan/analyze", json={"taskType": "takeoff"})
    assert response.status_code == 400


def test_analyze_route_rejects_unknown_task(client):
    response = client.post("/api/plan/analyze", json={"images": [DATA_URL], "taskType": "demolition"})
    assert response.status_code == 400


def test_insufficient_consensus_is_bad_gateway(client, provider):
    for model_id in MODEL_IDS[1:]:
        provider.scripts[model_id] = "no JSON here"

    response = client.post("/api/plan/analyze", json={"images": [DATA_URL]})

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["error_type"] == "CONSENSUS_INSUFFICIENT_MODELS"
    assert len(error["details"]["failures"]) == 4


def test_bad_image_is_bad_request(client):
    response = client.post("/api/plan/analyze", json={"images": ["data:image/png;base64,@@@"]})
    assert response.status_code == 400
    assert response.json()["error"]["error_type"] == "IMAGE_LOAD_FAILED"


def test_parse_invoice_text_upload(client):
    response = client.post(
        "/api/parse-invoice",
        files={"file": ("valley.txt", INVOICE_TEXT.encode(), "text/plain")},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["lineItems"][0]["category"] == "labor"


def test_parse_invoice_rejects_other_types(client):
    response = client.post("/api/parse-invoice", files={"file": ("plan.png", PNG_BYTES, "image/png")})
    assert response.status_code == 400


def test_parse_invoice_corrupt_pdf(client):
    response = client.post("/api/parse-invoice", files={"file": ("bad.pdf", b"not a pdf", "application/pdf")})
    assert response.status_code == 422
    assert response.json()["error"]["error_type"] == "PDF_EXTRACTION_FAILED"


def test_context_filter_adds_fields():
    set_context(request_id="PLAN-1234", model_id="model-a")
    try:
        record = logging.LogRecord("bidcore", logging.INFO, __file__, 1, "hello", None, None)
        assert ContextFilter().filter(record)
        assert record.request_id == "PLAN-1234"
        assert record.model_id == "model-a"
        assert record.task_type == "-"
    finally:
        clear_context()
    assert get_context() == {}


def test_setup_logging_writes_context_to_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    log_file = tmp_path / "logs" / "bidcore.log"
    try:
        setup_logging("debug", "[%(request_id)s %(model_id)s] %(message)s", str(log_file))
        set_context(request_id="DOC-0001")
        logging.getLogger("bidcore.test").info("extracting")
        for handler in root.handlers:
            handler.flush()
    finally:
        clear_context()
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)

    assert "[DOC-0001 -] extracting" in log_file.read_text()
