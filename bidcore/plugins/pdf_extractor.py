"""PDF text layer extraction plugin for Semantic Kernel."""

import io
import logging
from typing import Optional

from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError
from semantic_kernel.functions import kernel_function

from ..utils.errors import ExtractionError

logger = logging.getLogger(__name__)

PAGE_MARKER = "=== PAGE {number} ==="


class PDFExtractorPlugin:
    """
    Semantic Kernel plugin for extracting the text layer of PDF invoices and bids.

    Scanned documents have no text layer; callers check the result with
    ``has_sufficient_text`` before sending it to a model.
    """

    def __init__(self, min_text_length: int = 50):
        self.min_text_length = min_text_length
        logger.info("Initialized PDFExtractorPlugin")

    @kernel_function(
        name="extract_pdf_text",
        description="Extract text content from PDF documents. Returns the full text with page markers."
    )
    def extract_text(
        self,
        pdf_bytes: Optional[bytes] = None,
        pdf_path: Optional[str] = None,
        file_name: str = "document.pdf",
        include_page_markers: bool = True
    ) -> str:
        """
        Extract text from a PDF.

        Args:
            pdf_bytes: Raw PDF bytes (optional if pdf_path provided)
            pdf_path: Path to PDF file (optional if pdf_bytes provided)
            file_name: Document name used in logs and errors
            include_page_markers: Whether to insert "=== PAGE n ===" markers

        Returns:
            Extracted text (may be empty for scanned documents)

        Raises:
            ValueError: If neither pdf_bytes nor pdf_path provided
            ExtractionError: If the PDF cannot be read
        """
        if pdf_bytes is None and pdf_path is None:
            raise ValueError("Either pdf_bytes or pdf_path must be provided")

        try:
            if pdf_bytes is not None:
                reader = PdfReader(io.BytesIO(pdf_bytes))
                text = self._read_pages(reader, include_page_markers)
            else:
                with open(pdf_path, 'rb') as pdf_file:
                    reader = PdfReader(pdf_file)
                    text = self._read_pages(reader, include_page_markers)
        except (PdfReadError, OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"PDF extraction failed for {file_name}: {str(e)}")
            raise ExtractionError.pdf_failed(file_name, e)

        logger.info(f"Extracted {len(text)} characters using PyPDF2 from {file_name}")
        return text

    @staticmethod
    def _read_pages(reader: PdfReader, include_page_markers: bool) -> str:
        text_parts = []
        for page_num, page in enumerate(reader.pages, start=1):
            page_text = page.extract_text() or ""
            if not page_text.strip():
                continue
            if include_page_markers:
                text_parts.append(PAGE_MARKER.format(number=page_num))
            text_parts.append(page_text.strip())
        return "\n\n".join(text_parts)

    def has_sufficient_text(self, text: Optional[str]) -> bool:
        """True when the text (markers excluded) is long enough to extract from."""
        if not text:
            return False
        content = "\n".join(
            line for line in text.splitlines()
            if not (line.startswith("=== PAGE ") and line.endswith(" ==="))
        )
        return len(content.strip()) >= self.min_text_length
