"""
Entry points for plan analysis and invoice/bid extraction.

This module wires configuration, the Bedrock provider, the consensus engine
and the invoice extractor together and exposes them as plain functions
returning JSON-serializable dicts for the API layer.
"""

from __future__ import annotations
import asyncio
import logging
import uuid
from typing import Any, Dict, Optional, Sequence, Union

from dotenv import load_dotenv

from .agents.plan_analyzer import AnalysisOptions
from .orchestration.consensus import ConsensusEngine
from .plugins.invoice_extractor import InvoiceExtractorPlugin
from .providers.bedrock import BedrockProvider
from .utils.config import Config
from .utils.errors import BidAnalysisError, ErrorContext, ErrorType
from .utils.logging import clear_context, set_context, setup_logging

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

# Global instances (initialized on first use)
_config: Optional[Config] = None
_provider: Optional[BedrockProvider] = None
_engine: Optional[ConsensusEngine] = None
_invoice_extractor: Optional[InvoiceExtractorPlugin] = None

OptionsLike = Union[AnalysisOptions, Dict[str, Any], None]


def _initialize_system(config_path: str = "config.yaml") -> None:
    """
    Build config, provider, consensus engine and invoice extractor.

    Called lazily on the first request so importing the module stays cheap.
    """
    global _config, _provider, _engine, _invoice_extractor

    if _config is not None:
        return

    try:
        config = Config.load(config_path)
        setup_logging(config.logging.level, config.logging.format, config.logging.file)
        logger.info(
            f"Initializing bid analysis pipeline: region={config.aws_region}, "
            f"{len(config.enabled_models)} models enabled"
        )

        provider = BedrockProvider(
            region=config.aws_region,
            timeout=config.provider.timeout,
            connect_timeout=config.provider.connect_timeout,
            max_retries=config.provider.max_retries,
            backoff_base=config.provider.backoff_base,
        )
        engine = ConsensusEngine(provider, config)
        invoice_extractor = InvoiceExtractorPlugin(
            provider,
            model_id=config.invoice.model_id,
            temperature=config.invoice.temperature,
            max_tokens=config.invoice.max_tokens,
            min_text_length=config.invoice.min_text_length,
        )
    except BidAnalysisError:
        raise
    except Exception as e:
        logger.error(f"System initialization failed: {str(e)}", exc_info=True)
        raise BidAnalysisError(
            ErrorContext(
                error_type=ErrorType.INITIALIZATION_FAILED,
                message=f"Failed to initialize bid analysis pipeline: {str(e)}",
                recoverable=False,
                original_exception=e
            )
        )

    _config, _provider, _engine, _invoice_extractor = config, provider, engine, invoice_extractor
    logger.info("System initialization complete")


def _resolve_options(options: OptionsLike) -> AnalysisOptions:
    if isinstance(options, AnalysisOptions):
        return options
    defaults = AnalysisOptions(
        max_tokens=_config.consensus.max_tokens,
        temperature=_config.consensus.temperature,
    )
    return AnalysisOptions.from_dict(options, defaults) if options else defaults


async def analyze_plans(images: Sequence[Any], options: OptionsLike = None) -> Dict[str, Any]:
    """
    Analyze construction plan images.

    Args:
        images: Image references (data URLs, base64, bytes, paths, http(s) URLs)
        options: AnalysisOptions or an API payload dict (taskType, maxTokens,
            temperature, prioritizeAccuracy, includeConsensus, annotations)

    Returns:
        ConsensusResult dict, or a ModelResult dict when consensus is disabled

    Raises:
        InsufficientConsensusError: If fewer than the minimum models succeed
        BidAnalysisError: For configuration, image or single-model failures
    """
    _initialize_system()
    resolved = _resolve_options(options)
    request_id = f"PLAN-{uuid.uuid4().hex[:8].upper()}"
    set_context(request_id=request_id, task_type=resolved.task_type)

    try:
        if not resolved.include_consensus:
            logger.info(f"Request {request_id}: single-model {resolved.task_type} analysis")
            result = await _engine.analyze_single(images, resolved)
        else:
            logger.info(f"Request {request_id}: consensus {resolved.task_type} analysis")
            result = await _engine.analyze_with_consensus(images, resolved)
        return result.to_dict()
    finally:
        clear_context()


async def extract_invoice(document_text: str, file_name: str = "document") -> Dict[str, Any]:
    """Extract structured invoice/bid data from document text."""
    _initialize_system()
    set_context(request_id=f"DOC-{uuid.uuid4().hex[:8].upper()}")
    try:
        result = await _invoice_extractor.extract(document_text, file_name)
        return result.to_dict()
    finally:
        clear_context()


async def extract_invoice_pdf(pdf_bytes: bytes, file_name: str = "document.pdf") -> Dict[str, Any]:
    """Extract structured invoice/bid data from a text-based PDF."""
    _initialize_system()
    set_context(request_id=f"DOC-{uuid.uuid4().hex[:8].upper()}")
    try:
        result = await _invoice_extractor.extract_pdf(pdf_bytes, file_name)
        return result.to_dict()
    finally:
        clear_context()


def run_analysis(images: Sequence[Any], options: OptionsLike = None) -> Dict[str, Any]:
    """Synchronous wrapper around ``analyze_plans``."""
    return asyncio.run(analyze_plans(images, options))


def run_invoice_extraction(
    document_text: Optional[str] = None,
    pdf_bytes: Optional[bytes] = None,
    file_name: str = "document"
) -> Dict[str, Any]:
    """
    Synchronous invoice/bid extraction from text or PDF bytes.

    Args:
        document_text: Document text (takes precedence when given)
        pdf_bytes: Raw PDF bytes
        file_name: Source document name

    Returns:
        ParsedInvoiceData dict
    """
    if document_text is None and pdf_bytes is None:
        raise ValueError("Either document_text or pdf_bytes must be provided")
    if document_text is not None:
        return asyncio.run(extract_invoice(document_text, file_name))
    return asyncio.run(extract_invoice_pdf(pdf_bytes, file_name))


def error_response(error: BaseException) -> Dict[str, Any]:
    """
    Render an error in the format expected by the API layer.

    Args:
        error: Exception raised by one of the entry points

    Returns:
        Error response dictionary
    """
    if isinstance(error, BidAnalysisError):
        body = error.to_dict()
    else:
        logger.error(f"Unexpected error in pipeline: {str(error)}", exc_info=error)
        body = {
            "error_type": ErrorType.UNKNOWN_ERROR.value,
            "message": str(error),
            "recoverable": False,
            "user_message": "Unexpected error: please try again",
        }
    return {"error": body}
