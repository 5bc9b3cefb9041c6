"""Invoice / subcontractor bid models."""

from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

LINE_ITEM_CATEGORIES = ("labor", "materials", "equipment", "permits", "other")


@dataclass
class CompanyInfo:
    """Issuing company (subcontractor) contact details."""
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
        }


@dataclass
class ParsedLineItem:
    """
    One priced line of an invoice or bid.

    Attributes:
        description: Line description ("Line Item N" when the model gave none)
        amount: Extended amount; 0.0 when unparseable, never dropped
        category: One of LINE_ITEM_CATEGORIES or None
        quantity: Quantity, if stated
        unit: Unit of measure, if stated
        unit_price: Price per unit, if stated
        notes: Additional notes
    """
    description: str
    amount: float
    category: Optional[str] = None
    quantity: Optional[float] = None
    unit: Optional[str] = None
    unit_price: Optional[float] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "category": self.category,
            "quantity": self.quantity,
            "unit": self.unit,
            "unitPrice": self.unit_price,
            "amount": self.amount,
            "notes": self.notes,
        }


@dataclass
class ParsedInvoiceData:
    """
    Structured data extracted from an invoice or bid document.

    Attributes:
        company: Issuing company
        line_items: Priced lines
        total: Explicit total from the document, or the sum of line amounts
        total_computed: True when ``total`` is the line-item sum fallback
        subtotal: Subtotal before tax, if stated
        tax: Tax amount, if stated
        job_reference: Job name/number the document refers to
        invoice_number: Document number
        invoice_date: Document date as written
        timeline: Proposed schedule
        notes: Additional notes
        payment_terms: Payment terms
        file_name: Source document name
    """
    company: CompanyInfo
    line_items: List[ParsedLineItem]
    total: float
    total_computed: bool = False
    subtotal: Optional[float] = None
    tax: Optional[float] = None
    job_reference: Optional[str] = None
    invoice_number: Optional[str] = None
    invoice_date: Optional[str] = None
    timeline: Optional[str] = None
    notes: Optional[str] = None
    payment_terms: Optional[str] = None
    file_name: Optional[str] = None

    @property
    def line_item_sum(self) -> float:
        return round(sum(item.amount for item in self.line_items), 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "company": self.company.to_dict(),
            "jobReference": self.job_reference,
            "invoiceNumber": self.invoice_number,
            "invoiceDate": self.invoice_date,
            "lineItems": [item.to_dict() for item in self.line_items],
            "subtotal": self.subtotal,
            "tax": self.tax,
            "total": self.total,
            "totalComputed": self.total_computed,
            "timeline": self.timeline,
            "notes": self.notes,
            "paymentTerms": self.payment_terms,
            "fileName": self.file_name,
        }
