"""FastAPI service for plan analysis and invoice/bid extraction."""

from __future__ import annotations

import os
from typing import Any, Dict, List

from fastapi import Body, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse

from bidcore.pipeline import (
    analyze_plans,
    error_response,
    extract_invoice,
    extract_invoice_pdf,
)
from bidcore.utils.errors import BidAnalysisError, ErrorType


APP_TITLE = "Bid Analysis Service"
ALLOWED_DOC_TYPES = {"pdf", "txt"}

MAX_FILE_SIZE_MB = int(os.getenv("MAX_FILE_SIZE_MB", "10"))
MAX_IMAGES = int(os.getenv("MAX_IMAGES", "5"))

# Status codes for domain errors; anything unlisted is a 502 from an upstream model
ERROR_STATUS = {
    ErrorType.IMAGE_LOAD_FAILED: 400,
    ErrorType.EXTRACTION_INSUFFICIENT_TEXT: 422,
    ErrorType.PDF_EXTRACTION_FAILED: 422,
    ErrorType.PROVIDER_RATE_LIMIT: 429,
    ErrorType.PROVIDER_TIMEOUT: 504,
    ErrorType.CONFIG_MISSING: 500,
    ErrorType.CONFIG_INVALID: 500,
    ErrorType.INITIALIZATION_FAILED: 500,
    ErrorType.UNKNOWN_ERROR: 500,
}

app = FastAPI(title=APP_TITLE)


@app.exception_handler(BidAnalysisError)
async def bid_analysis_error_handler(request: Request, exc: BidAnalysisError) -> JSONResponse:
    status_code = ERROR_STATUS.get(exc.error_type, 502)
    return JSONResponse(error_response(exc), status_code=status_code)


def _extension(filename: str) -> str:
    return filename.rsplit(".", 1)[-1].lower() if "." in filename else ""


def _read_upload(file: UploadFile) -> bytes:
    data = file.file.read()
    if len(data) > MAX_FILE_SIZE_MB * 1024 * 1024:
        raise HTTPException(
            status_code=413,
            detail=f"{file.filename} exceeds the {MAX_FILE_SIZE_MB} MB per-file limit.",
        )
    return data


def _plan_request(payload: Dict[str, Any]) -> List[Any]:
    images = payload.get("images") or []
    if not isinstance(images, list) or not images:
        raise HTTPException(status_code=400, detail="images array is required (base64 data URLs or URLs)")
    return images[:MAX_IMAGES]


async def _run_plan_analysis(payload: Dict[str, Any]) -> JSONResponse:
    images = _plan_request(payload)
    options = {key: value for key, value in payload.items() if key != "images"}
    try:
        result = await analyze_plans(images, options)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return JSONResponse(result)


@app.get("/health")
async def health() -> JSONResponse:
    return JSONResponse({"status": "ok"})


@app.post("/api/plan/analyze")
async def analyze(payload: Dict[str, Any] = Body(...)) -> JSONResponse:
    """Multi-model consensus analysis (single model when includeConsensus is false)."""
    return await _run_plan_analysis(payload)


@app.post("/api/plan/analyze/single")
async def analyze_single(payload: Dict[str, Any] = Body(...)) -> JSONResponse:
    return await _run_plan_analysis({**payload, "includeConsensus": False})


@app.post("/api/parse-invoice")
async def parse_invoice(file: UploadFile = File(...)) -> JSONResponse:
    filename = file.filename or "document"
    extension = _extension(filename)
    if extension not in ALLOWED_DOC_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file type for {filename}. Allowed: {', '.join(sorted(ALLOWED_DOC_TYPES))}",
        )

    data = _read_upload(file)
    if extension == "pdf":
        result = await extract_invoice_pdf(data, filename)
    else:
        result = await extract_invoice(data.decode("utf-8", errors="replace"), filename)
    return JSONResponse({"success": True, "data": result})
