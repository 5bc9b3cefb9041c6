"""Model-backed analysis agents."""

from .base import BaseAnalysisAgent
from .plan_analyzer import PlanAnalyzer, AnalysisOptions

__all__ = [
    'BaseAnalysisAgent',
    'PlanAnalyzer',
    'AnalysisOptions',
]
