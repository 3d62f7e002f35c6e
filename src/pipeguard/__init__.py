"""
pipeguard - Resilience orchestration for content ingestion pipelines.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .container import ResilienceContainer
from .pipeline import PipelineOrchestrator
from .reporting import PartialSuccessReport, ResilienceReporter

__all__ = [
    "__version__",
    "Config",
    "ResilienceContainer",
    "PipelineOrchestrator",
    "PartialSuccessReport",
    "ResilienceReporter",
]
