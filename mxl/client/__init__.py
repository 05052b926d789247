"""
MxL Client Module
On-device durable queue, uploader, flush scheduling, sessions and the SDK context.
"""

from .settings import ClientSettings
from .uploader import HttpUploader, UploadResult
from .queue import DurableQueue, FlushResult, QueueRecord
from .scheduler import PeriodicFlusher
from .session import LifecycleSignal, SessionTracker
from .sdk import InitResult, SdkContext

__all__ = [
    "ClientSettings",
    "HttpUploader",
    "UploadResult",
    "DurableQueue",
    "FlushResult",
    "QueueRecord",
    "PeriodicFlusher",
    "LifecycleSignal",
    "SessionTracker",
    "InitResult",
    "SdkContext",
]
