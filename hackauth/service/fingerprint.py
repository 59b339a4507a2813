"""Client IP and user-agent classification for session auditing.

The fingerprint is recorded on a session when it is created. It is never an
authentication factor.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Mapping, Optional

DEVICE_UNKNOWN = "unknown"

_TABLET = re.compile(r"tablet|ipad|playbook|silk", re.IGNORECASE)
_MOBILE = re.compile(
    r"mobile|iphone|ipod|android.*mobile|windows phone|blackberry", re.IGNORECASE
)
_DESKTOP = re.compile(r"windows|macintosh|linux|cros", re.IGNORECASE)


@dataclass(frozen=True)
class RequestFingerprint:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: str = DEVICE_UNKNOWN
    browser: Optional[str] = None
    os: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def resolve_ip(
    headers: Mapping[str, str],
    socket_address: Optional[str] = None,
    *,
    resolved_ip: Optional[str] = None,
) -> Optional[str]:
    forwarded = _header(headers, "x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = _header(headers, "x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return resolved_ip or socket_address or None


def device_type(user_agent: Optional[str]) -> str:
    if not user_agent:
        return DEVICE_UNKNOWN
    if _TABLET.search(user_agent):
        return "tablet"
    if _MOBILE.search(user_agent):
        return "mobile"
    if _DESKTOP.search(user_agent):
        return "desktop"
    return DEVICE_UNKNOWN


def browser(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    ua = user_agent.lower()
    if "edg/" in ua:
        return "Edge"
    if "chrome" in ua and "edg" not in ua:
        return "Chrome"
    if "firefox" in ua:
        return "Firefox"
    if "safari" in ua and "chrome" not in ua:
        return "Safari"
    if "msie" in ua or "trident" in ua:
        return "Internet Explorer"
    if "opera" in ua or "opr" in ua:
        return "Opera"
    return None


def operating_system(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    ua = user_agent.lower()
    if "windows nt" in ua:
        return "Windows"
    if "macintosh" in ua or "mac os x" in ua:
        return "macOS"
    if "linux" in ua and "android" not in ua:
        return "Linux"
    if "android" in ua:
        return "Android"
    if "iphone" in ua or "ipad" in ua or "ipod" in ua:
        return "iOS"
    if "cros" in ua:
        return "Chrome OS"
    return None


def extract(
    headers: Mapping[str, str],
    socket_address: Optional[str] = None,
    *,
    resolved_ip: Optional[str] = None,
) -> RequestFingerprint:
    """Derive a fingerprint from request headers.

    IP precedence: first ``X-Forwarded-For`` entry, ``X-Real-IP``, the
    platform-resolved IP, the raw socket address.
    """
    user_agent = _header(headers, "user-agent") or None
    return RequestFingerprint(
        ip_address=resolve_ip(headers, socket_address, resolved_ip=resolved_ip),
        user_agent=user_agent,
        device_type=device_type(user_agent),
        browser=browser(user_agent),
        os=operating_system(user_agent),
    )
