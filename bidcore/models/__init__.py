"""Data models for plan analysis, consensus and invoice extraction."""

from .items import BoundingBox, ExtractedItem, AnalysisIssue
from .results import (
    ModelResult,
    ModelOutcome,
    Disagreement,
    ModelAgreement,
    SpecializedInsight,
    ConsensusResult,
)
from .invoice import CompanyInfo, ParsedLineItem, ParsedInvoiceData

__all__ = [
    'BoundingBox',
    'ExtractedItem',
    'AnalysisIssue',
    'ModelResult',
    'ModelOutcome',
    'Disagreement',
    'ModelAgreement',
    'SpecializedInsight',
    'ConsensusResult',
    'CompanyInfo',
    'ParsedLineItem',
    'ParsedInvoiceData',
]
