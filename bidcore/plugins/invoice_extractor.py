"""Invoice/bid text extraction plugin for Semantic Kernel."""

import logging
import math
import time
from typing import List, Dict, Any, Optional

from semantic_kernel.functions import kernel_function

from .pdf_extractor import PDFExtractorPlugin
from ..models.invoice import (
    CompanyInfo,
    LINE_ITEM_CATEGORIES,
    ParsedInvoiceData,
    ParsedLineItem,
)
from ..providers.base import ModelProvider, GenerationRequest, JSON_RESPONSE_FORMAT
from ..utils.coercion import pick, safe_float, safe_str
from ..utils.errors import ExtractionError
from ..utils.response_formatter import ResponseFormatter

logger = logging.getLogger(__name__)

EXTRACTION_INSTRUCTIONS = """You extract structured data from construction invoices and subcontractor bids.
Read the document text and return a single JSON object with this structure:
{
  "company": {"name": "Company name", "email": "email or null", "phone": "phone or null", "address": "address or null"},
  "jobReference": "Job name, project or reference number, or null",
  "invoiceNumber": "Invoice or bid number, or null",
  "invoiceDate": "Date as written, or null",
  "lineItems": [
    {
      "description": "What the line covers",
      "category": "labor | materials | equipment | permits | other",
      "quantity": 10,
      "unit": "unit of measure or null",
      "unitPrice": 25.0,
      "amount": 250.0,
      "notes": "notes or null"
    }
  ],
  "subtotal": 250.0,
  "tax": 20.0,
  "total": 270.0,
  "timeline": "Proposed schedule or duration, or null",
  "notes": "Exclusions, assumptions or other notes, or null",
  "paymentTerms": "Payment terms, or null"
}

Rules:
- Company details are usually at the top of the document.
- Classify each line as labor, materials, equipment, permits or other; use null when unclear.
- The line-item amount is required; it is the most important field.
- Amounts are plain numbers without currency symbols or thousands separators.
- Include every priced line; do not merge or drop lines.
- Use null for anything the document does not state. Do not compute a total the document does not show.
- Return ONLY the JSON object, no additional text."""


class InvoiceExtractorPlugin:
    """
    Semantic Kernel plugin that turns invoice/bid text into ParsedInvoiceData.

    The model response goes through direct parse, JSON repair and embedded
    brace matching, in that order; ExtractionError is raised only when all
    three fail.
    """

    def __init__(
        self,
        provider: ModelProvider,
        model_id: str,
        temperature: float = 0.1,
        max_tokens: int = 4000,
        min_text_length: int = 50,
        pdf_extractor: Optional[PDFExtractorPlugin] = None
    ):
        """
        Initialize invoice extractor plugin.

        Args:
            provider: ModelProvider used for the extraction call
            model_id: Model to call
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate
            min_text_length: Minimum document text length worth sending
            pdf_extractor: PDF text extractor for ``extract_pdf``
        """
        self.provider = provider
        self.model_id = model_id
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.min_text_length = min_text_length
        self.pdf_extractor = pdf_extractor or PDFExtractorPlugin(min_text_length=min_text_length)
        logger.info(f"Initialized InvoiceExtractorPlugin (model={model_id})")

    @kernel_function(
        name="extract_invoice",
        description=(
            "Extract structured data from invoice or subcontractor bid text. "
            "Returns company info, line items with amounts, and totals."
        )
    )
    async def extract(self, document_text: str, file_name: str = "document") -> ParsedInvoiceData:
        """
        Extract invoice/bid data from document text.

        Args:
            document_text: Text from PDF extraction or OCR
            file_name: Source document name

        Returns:
            ParsedInvoiceData

        Raises:
            ExtractionError: If the text is too short or no parse strategy succeeds
            ProviderError: If the model call fails after retries
        """
        start_time = time.time()
        text = (document_text or "").strip()
        if len(text) < self.min_text_length:
            logger.warning(f"Insufficient text in {file_name}: {len(text)} characters")
            raise ExtractionError.insufficient_text(file_name, len(text))

        logger.info(f"Starting invoice extraction: {file_name} ({len(text)} characters)")

        request = GenerationRequest(
            model_id=self.model_id,
            prompt=f"Document: {file_name}\n\n{text}",
            system_prompt=EXTRACTION_INSTRUCTIONS,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            response_format=JSON_RESPONSE_FORMAT,
        )

        api_start = time.time()
        response = await self.provider.generate(request)
        api_time = time.time() - api_start
        logger.debug(f"Extraction model call completed in {api_time:.3f}s")
        logger.debug(f"Response preview: {ResponseFormatter.preview(response.content)}")

        outcome = ResponseFormatter.parse_model_json(response.content, allow_embedded=True)
        if not outcome.ok:
            logger.error(f"All parse strategies failed for {file_name}")
            raise ExtractionError.unparseable(
                file_name=file_name,
                raw_text=response.content,
                repaired_text=outcome.repaired_text,
                direct_error=outcome.direct_error or "",
                repair_error=outcome.repair_error or "",
            )
        if outcome.was_repaired:
            logger.warning(f"Extraction response for {file_name} parsed via {outcome.strategy} strategy")

        result = self._structure_invoice_result(outcome.data, file_name)

        total_time = time.time() - start_time
        logger.info(
            f"Invoice extraction complete for {file_name}: {len(result.line_items)} line items, "
            f"total {result.total:.2f}{' (computed)' if result.total_computed else ''} "
            f"in {total_time:.3f}s (API: {api_time:.3f}s)"
        )
        return result

    @kernel_function(
        name="extract_invoice_pdf",
        description="Extract structured data from a text-based invoice or bid PDF."
    )
    async def extract_pdf(self, pdf_bytes: bytes, file_name: str = "document.pdf") -> ParsedInvoiceData:
        """
        Extract the PDF text layer, then run ``extract`` on it.

        Raises:
            ExtractionError: If the PDF is unreadable or image-based/scanned
        """
        text = self.pdf_extractor.extract_text(pdf_bytes=pdf_bytes, file_name=file_name)
        if not self.pdf_extractor.has_sufficient_text(text):
            raise ExtractionError.insufficient_text(file_name, len(text.strip()))
        return await self.extract(text, file_name)

    def _structure_invoice_result(self, invoice_data: Dict[str, Any], file_name: str) -> ParsedInvoiceData:
        """
        Validate and coerce the parsed payload.

        Every line item keeps a numeric amount (0.0 when unparseable). The
        total is the model's value when it is a number, otherwise the sum of
        the line-item amounts.
        """
        line_items = [
            self._structure_line_item(item, index)
            for index, item in enumerate(self._raw_line_items(invoice_data))
        ]
        line_sum = round(sum(item.amount for item in line_items), 2)

        raw_total = invoice_data.get("total")
        if self._is_number(raw_total):
            total = float(raw_total)
            total_computed = False
            if abs(total - line_sum) > 0.01 and line_items:
                logger.info(
                    f"{file_name}: stated total {total:.2f} differs from line items sum {line_sum:.2f}"
                )
        else:
            total = line_sum
            total_computed = True

        return ParsedInvoiceData(
            company=self._structure_company(invoice_data),
            line_items=line_items,
            total=total,
            total_computed=total_computed,
            subtotal=safe_float(invoice_data.get("subtotal")),
            tax=safe_float(invoice_data.get("tax")),
            job_reference=safe_str(pick(invoice_data, ("jobReference", "job_reference", "project"))),
            invoice_number=safe_str(pick(invoice_data, ("invoiceNumber", "invoice_number", "bidNumber"))),
            invoice_date=safe_str(pick(invoice_data, ("invoiceDate", "invoice_date", "date"))),
            timeline=safe_str(invoice_data.get("timeline")),
            notes=safe_str(invoice_data.get("notes")),
            payment_terms=safe_str(pick(invoice_data, ("paymentTerms", "payment_terms"))),
            file_name=file_name,
        )

    @staticmethod
    def _is_number(value: Any) -> bool:
        return (
            isinstance(value, (int, float))
            and not isinstance(value, bool)
            and math.isfinite(value)
        )

    @staticmethod
    def _raw_line_items(invoice_data: Dict[str, Any]) -> List[Any]:
        raw = pick(invoice_data, ("lineItems", "line_items", "items"))
        if raw is None:
            return []
        return raw if isinstance(raw, list) else [raw]

    @staticmethod
    def _structure_line_item(data: Any, index: int) -> ParsedLineItem:
        if not isinstance(data, dict):
            data = {"description": safe_str(data)}

        category = (safe_str(data.get("category")) or "").lower()
        amount = safe_float(pick(data, ("amount", "total")))

        return ParsedLineItem(
            description=safe_str(data.get("description")) or f"Line Item {index + 1}",
            amount=amount if amount is not None else 0.0,
            category=category if category in LINE_ITEM_CATEGORIES else None,
            quantity=safe_float(pick(data, ("quantity", "qty"))),
            unit=safe_str(data.get("unit")),
            unit_price=safe_float(pick(data, ("unitPrice", "unit_price", "rate"))),
            notes=safe_str(data.get("notes")),
        )

    @staticmethod
    def _structure_company(invoice_data: Dict[str, Any]) -> CompanyInfo:
        company = invoice_data.get("company")
        if not isinstance(company, dict):
            company = {"name": company if isinstance(company, str) else None}

        return CompanyInfo(
            name=safe_str(pick(company, ("name",))) or safe_str(
                pick(invoice_data, ("companyName", "company_name", "vendor"))
            ),
            email=safe_str(company.get("email")),
            phone=safe_str(company.get("phone")),
            address=safe_str(company.get("address")),
        )
