"""Scanners for Rust sources and their locked dependencies."""

from .chunker import RustChunker
from .dependency_scanner import DependencyScanner
from .orchestrator import ScanOrchestrator
from .static_scanner import StaticPatternScanner

__all__ = [
    "RustChunker",
    "StaticPatternScanner",
    "DependencyScanner",
    "ScanOrchestrator",
]
