"""
auth/fingerprint.py -- Device and session fingerprints from request metadata.

Two identifiers are derived from (User-Agent, client IP):

  device fingerprint  -- IP + browser family + OS family. Versions are left
      out on purpose so a browser auto-update, or a second tab of the same
      browser, still maps to the same physical device.

  session fingerprint -- full User-Agent + IP. Two browser processes on the
      same machine produce different values, so each login instance gets its
      own device row. This value is the unique key of the devices table.

Both are SHA-256 hex digests of the "|"-joined components. Hashing keeps raw
IPs and User-Agent strings out of identifiers that end up in logs, cookies
and audit details. Missing components are treated as empty strings.

User-Agent classification uses the `user-agents` library.

Layer rule: pure functions only -- no store, no I/O.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from user_agents import parse as _parse_ua

_SEPARATOR = "|"


def _digest(*components: str | None) -> str:
    joined = _SEPARATOR.join(c or "" for c in components)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def device_fingerprint(ip: str | None, browser_family: str | None, os_family: str | None) -> str:
    """Coarse identifier: same machine + same browser/OS class."""
    return _digest(ip, browser_family, os_family)


def session_fingerprint(full_user_agent: str | None, ip: str | None) -> str:
    """Fine identifier: one browser process instance behind one IP."""
    return _digest(full_user_agent, ip)


def short(fingerprint: str) -> str:
    """Truncated form for log lines and audit details."""
    return fingerprint[:10] + "..."


@dataclass(frozen=True)
class DeviceClass:
    """Classification of a User-Agent string."""

    device_name: str
    device_type: str  # "mobile", "tablet", "desktop", "bot"
    browser_family: str
    browser_version: str
    os_family: str
    os_version: str

    @property
    def browser(self) -> str:
        return f"{self.browser_family} {self.browser_version}".strip()

    @property
    def os(self) -> str:
        return f"{self.os_family} {self.os_version}".strip()


def parse_user_agent(user_agent: str | None) -> DeviceClass:
    """Classify a User-Agent into device type, browser and OS.

    Unknown or empty strings come back as desktop / "Other" rather than
    raising -- classification is informational only.
    """
    ua = _parse_ua(user_agent or "")
    if ua.is_bot:
        device_type = "bot"
    elif ua.is_tablet:
        device_type = "tablet"
    elif ua.is_mobile:
        device_type = "mobile"
    else:
        device_type = "desktop"

    os_family = ua.os.family or "Other"
    model = ua.device.model
    device_name = model if model and model != "Other" else f"{os_family} Device"

    return DeviceClass(
        device_name=device_name,
        device_type=device_type,
        browser_family=ua.browser.family or "Other",
        browser_version=ua.browser.version_string or "",
        os_family=os_family,
        os_version=ua.os.version_string or "",
    )


@dataclass(frozen=True)
class DeviceInfo:
    """Everything the Device Registry needs to know about one login request."""

    user_agent: str
    ip_address: str
    session_fingerprint: str
    device_fingerprint: str
    classification: DeviceClass

    @classmethod
    def from_request(cls, user_agent: str | None, ip_address: str | None) -> "DeviceInfo":
        ua = user_agent or ""
        ip = ip_address or ""
        classification = parse_user_agent(ua)
        return cls(
            user_agent=ua,
            ip_address=ip,
            session_fingerprint=session_fingerprint(ua, ip),
            device_fingerprint=device_fingerprint(ip, classification.browser_family, classification.os_family),
            classification=classification,
        )
