"""Risk scoring, typosquatting detection and the remote analysis gateway."""

from .analysis_gateway import AnalysisGateway, AnalysisSubject
from .risk_scorer import FLAG_WEIGHTS, classify, score
from .typosquatting import ReferenceTables, TyposquatDetector

__all__ = [
    "AnalysisGateway",
    "AnalysisSubject",
    "FLAG_WEIGHTS",
    "classify",
    "score",
    "ReferenceTables",
    "TyposquatDetector",
]
