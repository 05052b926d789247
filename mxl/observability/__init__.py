"""
MxL Observability Module
Process metrics collector and health/readiness endpoints.
"""

from .metrics import MetricsCollector

__all__ = ["MetricsCollector"]
