"""
MxL Event Enricher
==================
Server-side enrichment applied by the stream processor.

Fields (each best-effort, a failure omits only that field):
- receivedAt / processedAt: server receipt and processing time (epoch millis)
- geo: country/region/city from an HTTP lookup service
- userAgent: browser, OS and device family parsed from the User-Agent header
- deviceFingerprint: canonical hash over stable request attributes

The raw source address and User-Agent string are inputs only; they are never
copied into the enriched record.
"""

import ipaddress
import logging
import re
import time
from typing import Any, Callable, Dict, Optional

import httpx

from mxl.shared.hashing import canonicalize_and_hash
from mxl.telemetry.models import RequestContext

logger = logging.getLogger(__name__)

GEO_FIELDS = ("country", "region", "city")


# ============================================================
# GEOLOCATION
# ============================================================

def is_public_address(address: Optional[str]) -> bool:
    """False for private, loopback, link-local, reserved and unparseable addresses."""
    if not address:
        return False
    try:
        ip = ipaddress.ip_address(address.strip())
    except ValueError:
        return False
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


class GeoLocator:
    """
    Looks up `{base_url}/{ip}` and expects a JSON object with any of
    country / region / city. Disabled when base_url is empty.
    """

    def __init__(self, base_url: str = "", timeout: float = 2.0, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def lookup(self, address: Optional[str]) -> Optional[Dict[str, str]]:
        if not self.enabled or not is_public_address(address):
            return None
        url = f"{self.base_url}/{address.strip()}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.get(url)
            if response.status_code != 200:
                logger.debug(f"Geo lookup returned {response.status_code}")
                return None
            body = response.json()
        except httpx.TimeoutException:
            logger.debug(f"Geo lookup timed out after {self.timeout}s")
            return None
        except (httpx.RequestError, ValueError) as e:
            logger.debug(f"Geo lookup failed: {e}")
            return None

        if not isinstance(body, dict):
            return None
        geo = {k: str(body[k]) for k in GEO_FIELDS if body.get(k)}
        return geo or None


# ============================================================
# USER AGENT
# ============================================================

# Order matters: Edge and Opera also advertise Chrome, Chrome advertises Safari.
_BROWSERS = (
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/([\d.]+)")),
    ("Opera", re.compile(r"(?:OPR|Opera)/([\d.]+)")),
    ("Firefox", re.compile(r"(?:Firefox|FxiOS)/([\d.]+)")),
    ("Chrome", re.compile(r"(?:Chrome|CriOS)/([\d.]+)")),
    ("Safari", re.compile(r"Version/([\d.]+).*Safari/")),
    ("okhttp", re.compile(r"okhttp/([\d.]+)")),
    ("CFNetwork", re.compile(r"CFNetwork/([\d.]+)")),
)

_OPERATING_SYSTEMS = (
    ("Android", re.compile(r"Android[ /]?([\d.]*)")),
    ("iOS", re.compile(r"(?:iPhone|iPad|iPod).*?OS ([\d_]+)")),
    ("iOS", re.compile(r"Darwin/([\d.]+)")),
    ("Windows", re.compile(r"Windows NT ([\d.]+)")),
    ("macOS", re.compile(r"Mac OS X ([\d_.]+)")),
    ("Linux", re.compile(r"Linux()")),
)


def _device_family(user_agent: str) -> str:
    if re.search(r"iPad|Tablet", user_agent):
        return "tablet"
    if re.search(r"Mobile|iPhone|iPod|Android|okhttp|CFNetwork|Darwin", user_agent):
        return "mobile"
    if re.search(r"bot|crawler|spider", user_agent, re.IGNORECASE):
        return "bot"
    return "desktop"


def parse_user_agent(user_agent: Optional[str]) -> Optional[Dict[str, str]]:
    """Coarse browser/OS/device classification. None for an empty header."""
    if not user_agent or not user_agent.strip():
        return None

    parsed: Dict[str, str] = {"browser": "unknown", "os": "unknown", "device": _device_family(user_agent)}
    for family, pattern in _BROWSERS:
        m = pattern.search(user_agent)
        if m:
            parsed["browser"] = family
            parsed["browser_version"] = m.group(1)
            break
    for family, pattern in _OPERATING_SYSTEMS:
        m = pattern.search(user_agent)
        if m:
            parsed["os"] = family
            if m.group(1):
                parsed["os_version"] = m.group(1).replace("_", ".")
            break
    return parsed


# ============================================================
# FINGERPRINT
# ============================================================

def device_fingerprint(context: RequestContext) -> Optional[str]:
    """Stable hash of request attributes that survive across sessions."""
    material = {
        "userAgent": context.user_agent or "",
        "acceptLanguage": context.accept_language or "",
        "acceptEncoding": context.accept_encoding or "",
        "screen": dict(sorted(context.screen.items())),
    }
    if not any(material.values()):
        return None
    return canonicalize_and_hash(material, exclude=None)


# ============================================================
# ENRICHER
# ============================================================

class EventEnricher:

    def __init__(self, geo: Optional[GeoLocator] = None, clock: Callable[[], float] = time.time):
        self.geo = geo or GeoLocator()
        self._clock = clock

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def receipt_only(self, received_at: Optional[int]) -> Dict[str, Any]:
        """Enrichment for batch deliveries, which carry no request context."""
        now = self.now_ms()
        return {"receivedAt": received_at if received_at is not None else now, "processedAt": now}

    def enrich(self, context: Optional[RequestContext], received_at: Optional[int] = None) -> Dict[str, Any]:
        enriched = self.receipt_only(received_at)
        if context is None:
            return enriched

        try:
            geo = self.geo.lookup(context.source_ip)
            if geo:
                enriched["geo"] = geo
        except Exception as e:
            logger.warning(f"Geo enrichment skipped: {e}")

        try:
            ua = parse_user_agent(context.user_agent)
            if ua:
                enriched["userAgent"] = ua
        except Exception as e:
            logger.warning(f"User agent enrichment skipped: {e}")

        try:
            fingerprint = device_fingerprint(context)
            if fingerprint:
                enriched["deviceFingerprint"] = fingerprint
        except Exception as e:
            logger.warning(f"Fingerprint enrichment skipped: {e}")

        if context.screen:
            enriched["screen"] = dict(context.screen)
        if context.accept_language:
            enriched["locale"] = context.accept_language.split(",")[0].strip()
        return enriched
