"""Observability package for RepoBrief."""

from .logging import setup_logging, get_structured_logger, StructuredLogger
from .prometheus_metrics import (
    setup_prometheus_metrics,
    PrometheusMiddleware,
    repobrief_registry
)

__all__ = [
    'setup_logging',
    'get_structured_logger',
    'StructuredLogger',
    'setup_prometheus_metrics',
    'PrometheusMiddleware',
    'repobrief_registry'
]
