"""
voicepipe.observability — Structured logging and metrics.
"""

from voicepipe.observability.logger import setup_logging, JSONFormatter
from voicepipe.observability.metrics import MetricsRegistry

__all__ = ["setup_logging", "JSONFormatter", "MetricsRegistry"]
