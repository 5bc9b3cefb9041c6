"""Semantic Kernel plugins for document ingestion and invoice/bid extraction."""

from .pdf_extractor import PDFExtractorPlugin
from .invoice_extractor import InvoiceExtractorPlugin

__all__ = [
    'PDFExtractorPlugin',
    'InvoiceExtractorPlugin',
]
