"""
MxL Retention Module
Archival, expiry and cleanup of aged data.
"""

from .service import RetentionReport, RetentionScheduler, RetentionService

__all__ = ["RetentionReport", "RetentionScheduler", "RetentionService"]
