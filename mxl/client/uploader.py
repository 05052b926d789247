"""
MxL Batch Uploader
POSTs {events: [...]} to the ingestion endpoint with the SDK API key.

Timeouts, transport errors and non-2xx responses are failures; the queue keeps
the records pending and retries them on the next flush.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


@dataclass
class UploadResult:
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class HttpUploader:

    def __init__(
        self,
        url: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def upload(self, events: List[Dict[str, Any]]) -> UploadResult:
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(self.url, json={"events": events}, headers=self._headers())
        except httpx.TimeoutException:
            return UploadResult(success=False, error=f"Request timed out after {self.timeout}s")
        except httpx.RequestError as e:
            return UploadResult(success=False, error=f"Request failed: {e}")

        if 200 <= response.status_code < 300:
            return UploadResult(success=True, status_code=response.status_code)

        detail = response.text[:200] if response.text else ""
        logger.debug(f"Upload rejected with {response.status_code}: {detail}")
        return UploadResult(success=False, status_code=response.status_code, error=f"HTTP {response.status_code}")
