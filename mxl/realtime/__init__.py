from .metrics_cache import RealtimeMetrics

__all__ = ["RealtimeMetrics"]
