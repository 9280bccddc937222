"""Session security context - session ids, device fingerprints and risk scoring"""

from __future__ import annotations

import calendar
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from app.config import settings
from app.core.clock import utcnow

IP_ADDRESS_MAX_LENGTH = 45
USER_AGENT_MAX_LENGTH = 500
_SESSION_UA_PREFIX = 200


def truncate(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value[:limit] if value else None


@dataclass(frozen=True)
class ClientInfo:
    """Best-effort client fingerprint supplied by the HTTP layer."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def build(cls, ip_address: Optional[str], user_agent: Optional[str]) -> "ClientInfo":
        return cls(
            ip_address=truncate(ip_address, IP_ADDRESS_MAX_LENGTH),
            user_agent=truncate(user_agent, USER_AGENT_MAX_LENGTH),
        )


def derive_session_id(
    user_id: str,
    client: ClientInfo,
    at: Optional[datetime] = None,
    bucket_seconds: Optional[int] = None,
) -> str:
    """
    Derive a stable session identifier.

    Deterministic in (user id, client IP, user agent, timestamp bucket), so the
    same device inside one bucket maps to the same session without putting the
    IP or user agent in the token itself.
    """
    bucket_size = max(1, bucket_seconds or settings.SESSION_BUCKET_SECONDS)
    moment = at or utcnow()
    bucket = calendar.timegm(moment.utctimetuple()) // bucket_size

    material = json.dumps(
        {
            "user_id": str(user_id),
            "ip_address": client.ip_address or "unknown",
            "user_agent": (client.user_agent or "unknown")[:_SESSION_UA_PREFIX],
            "bucket": bucket,
        },
        sort_keys=True,
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def extract_browser_info(user_agent: Optional[str]) -> Tuple[str, str]:
    """Return (browser, os) families parsed from a user agent string."""
    if not user_agent:
        return "unknown", "unknown"

    ua = user_agent.lower()

    # Order matters: Edge and Opera also advertise Chrome, Chrome advertises Safari.
    if "edg" in ua:
        browser = "edge"
    elif "opr" in ua or "opera" in ua:
        browser = "opera"
    elif "chrome" in ua:
        browser = "chrome"
    elif "firefox" in ua:
        browser = "firefox"
    elif "safari" in ua:
        browser = "safari"
    else:
        browser = "unknown"

    if "windows" in ua:
        os_family = "windows"
    elif "android" in ua:
        os_family = "android"
    elif "iphone" in ua or "ipad" in ua or " ios" in ua:
        os_family = "ios"
    elif "macintosh" in ua or "mac os" in ua:
        os_family = "macos"
    elif "linux" in ua:
        os_family = "linux"
    else:
        os_family = "unknown"

    return browser, os_family


def network_prefix(ip_address: Optional[str]) -> str:
    """/24 for IPv4, first four groups for IPv6."""
    if not ip_address:
        return "unknown"
    if "." in ip_address:
        parts = ip_address.split(".")
        if len(parts) >= 3:
            return ".".join(parts[:3])
    if ":" in ip_address:
        parts = ip_address.split(":")
        if len(parts) >= 4:
            return ":".join(parts[:4])
    return ip_address


def device_fingerprint(client: ClientInfo) -> str:
    browser, os_family = extract_browser_info(client.user_agent)
    material = json.dumps(
        {"browser": browser, "os": os_family, "network": network_prefix(client.ip_address)},
        sort_keys=True,
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SessionObservation:
    ip_address: Optional[str]
    user_agent: Optional[str]
    seen_at: datetime


def calculate_session_risk(
    previous: Sequence[SessionObservation],
    current: SessionObservation,
) -> int:
    """
    Score how suspicious ``current`` looks against earlier activity.

    Returns:
        int: 0 (nothing unusual) to 100
    """
    if not previous:
        return 0

    risk = 0
    window_start = current.seen_at - timedelta(hours=24)
    recent: List[SessionObservation] = sorted(
        (obs for obs in previous if obs.seen_at > window_start),
        key=lambda obs: obs.seen_at,
        reverse=True,
    )

    if not recent:
        risk += 20
    else:
        last = recent[0]
        ip_changed = last.ip_address != current.ip_address
        if ip_changed:
            risk += 30

        if last.user_agent != current.user_agent:
            last_browser, last_os = extract_browser_info(last.user_agent)
            current_browser, current_os = extract_browser_info(current.user_agent)
            if last_browser != current_browser:
                risk += 40
            if last_os != current_os:
                risk += 50

        if ip_changed and current.seen_at - last.seen_at < timedelta(minutes=5):
            risk += 60

    if len({obs.ip_address for obs in recent}) > 3:
        risk += 25

    return min(risk, 100)
