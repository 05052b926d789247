"""
MxL GDPR Module
Export, erasure and anonymization of a user's server-side data.
"""

from .hooks import GdprHooks

__all__ = ["GdprHooks"]
