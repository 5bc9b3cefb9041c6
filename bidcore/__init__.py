"""Multi-model plan analysis, consensus merging and invoice/bid extraction."""

__version__ = "0.1.0"
