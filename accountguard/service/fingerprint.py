from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional

from accountguard.storage.models import DeviceFingerprint

# Ordered (needles, excludes, label) rules; first match wins.
_BROWSER_RULES: list[tuple[tuple[str, ...], tuple[str, ...], str]] = [
    (("Edg",), (), "Edge"),
    (("OPR",), (), "Opera"),
    (("Opera",), (), "Opera"),
    (("Chrome",), (), "Chrome"),
    (("Firefox",), (), "Firefox"),
    (("Safari",), ("Chrome",), "Safari"),
]

_OS_RULES: list[tuple[str, str]] = [
    ("Windows NT 10.0", "Windows 10"),
    ("Windows NT 6.3", "Windows 8.1"),
    ("Windows NT 6.2", "Windows 8"),
    ("Windows NT 6.1", "Windows 7"),
    ("Android", "Android"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("iOS", "iOS"),
    # iOS agents also say "like Mac OS X"
    ("Mac OS X", "macOS"),
    ("Linux", "Linux"),
]

_DEVICE_RULES: list[tuple[str, str]] = [
    ("Mobile", "Mobile"),
    ("Tablet", "Tablet"),
    ("iPad", "Tablet"),
]

_SIMILARITY_FIELDS = ("browser", "os", "device_class", "screen_signature", "timezone", "language")


@dataclass
class ClientSignals:
    """Raw, caller-supplied device signals. Untrusted input."""

    user_agent: str = ""
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    color_depth: Optional[int] = None
    timezone: Optional[str] = None
    language: Optional[str] = None
    platform: Optional[str] = None
    canvas_hash: Optional[str] = None
    gpu_hash: Optional[str] = None


def parse_user_agent(user_agent: str) -> tuple[str, str, str]:
    """Return coarse ``(browser, os, device_class)`` for a user agent string."""
    ua = user_agent or ""
    browser = "Unknown"
    for needles, excludes, label in _BROWSER_RULES:
        if all(n in ua for n in needles) and not any(x in ua for x in excludes):
            browser = label
            break

    os_name = next((label for needle, label in _OS_RULES if needle in ua), "Unknown")
    device_class = next((label for needle, label in _DEVICE_RULES if needle in ua), "Desktop")
    return browser, os_name, device_class


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def _hash_components(components: list[str]) -> str:
    # Identity key only; blake2b is fast and stable across processes
    return hashlib.blake2b("|".join(components).encode("utf-8"), digest_size=16).hexdigest()


def generate_fingerprint(signals: ClientSignals) -> DeviceFingerprint:
    browser, os_name, device_class = parse_user_agent(signals.user_agent)
    has_screen = signals.screen_width is not None and signals.screen_height is not None
    screen_full = (
        f"{signals.screen_width}x{signals.screen_height}x{signals.color_depth or 0}"
        if has_screen
        else ""
    )
    timezone = _clean(signals.timezone)
    language = _clean(signals.language).lower()
    platform = _clean(signals.platform)
    canvas = _clean(signals.canvas_hash)
    gpu = _clean(signals.gpu_hash)

    components = [
        _clean(signals.user_agent),
        screen_full,
        timezone,
        language,
        platform,
        canvas,
        gpu,
    ]
    return DeviceFingerprint(
        hash=_hash_components(components),
        browser=browser,
        os=os_name,
        device_class=device_class,
        screen_signature=(
            f"{signals.screen_width}x{signals.screen_height}" if has_screen else "unknown"
        ),
        timezone=timezone or "unknown",
        language=language or "unknown",
        platform=platform or "unknown",
        canvas_hash=canvas or None,
        gpu_hash=gpu or None,
    )


def compare_fingerprints(first: DeviceFingerprint, second: DeviceFingerprint) -> int:
    """Similarity score 0-100; an exact hash match is always 100."""
    if first.hash == second.hash:
        return 100
    matches = sum(
        1 for name in _SIMILARITY_FIELDS if getattr(first, name) == getattr(second, name)
    )
    return round(matches / len(_SIMILARITY_FIELDS) * 100)


def describe_device(fingerprint: DeviceFingerprint) -> str:
    """Friendly ``deviceClass - os - browser`` label with a generic fallback."""
    parts = [
        part
        for part in (fingerprint.device_class, fingerprint.os, fingerprint.browser)
        if part and part.lower() != "unknown"
    ]
    return " - ".join(parts) if parts else "Unknown device"
