"""Clients for the remote analysis service and the crates.io registry."""

from .analysis_client import AnalysisTransport, GeminiTransport
from .crates_client import CratesIOClient

__all__ = [
    "AnalysisTransport",
    "GeminiTransport",
    "CratesIOClient",
]
