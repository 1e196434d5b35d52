"""Parsers for fail2ban-client text output.

Every parser takes the raw text and returns a structured value or raises
``ValueError``. Callers go through ``safe_parse`` which never raises and
falls back to a default. ``classify_error`` runs before any structural
parsing so that error banners are never mistaken for data.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

logger = logging.getLogger("jailwatch.parsers")

T = TypeVar("T")

_LIST_SPLIT = re.compile(r"[,\s]+")
_INT = re.compile(r"(-?\d+)")


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ErrorClass:
    is_error: bool
    kind: str | None = None
    message: str | None = None


_NO_ERROR = ErrorClass(is_error=False)

_SIGNATURES: list[tuple[str, tuple[str, ...], str]] = [
    (
        "command_not_found",
        ("command not found",),
        "fail2ban-client command not found",
    ),
    (
        "permission_error",
        ("permission denied", "access denied", "a password is required", "not in the sudoers"),
        "Permission denied accessing fail2ban",
    ),
    (
        "connection_error",
        ("connection refused", "failed to connect", "cannot connect"),
        "fail2ban service connection refused",
    ),
    (
        "service_down",
        (
            "failed to access socket",
            "is fail2ban running",
            "service is not running",
            "service not running",
            "socket path",
        ),
        "fail2ban service is not running",
    ),
    (
        "nok",
        ("error nok", "does not exist", "no such jail", "jail not found", "unknown jail"),
        "fail2ban answered NOK",
    ),
]

_NOK_LINE = re.compile(r"\berror\s+nok\b", re.IGNORECASE)


def classify_error(stdout: str | None, stderr: str | None = "") -> ErrorClass:
    """Recognise the daemon's error banners in combined output."""
    out = stdout or ""
    err = stderr or ""
    combined = f"{out}\n{err}"
    lower = combined.lower()

    for kind, needles, message in _SIGNATURES:
        if kind == "nok" and _NOK_LINE.search(combined):
            return ErrorClass(True, kind, message)
        if any(needle in lower for needle in needles):
            return ErrorClass(True, kind, message)

    if not out.strip() and not err.strip():
        return ErrorClass(True, "empty_output", "Empty output from fail2ban command")
    return _NO_ERROR


# ---------------------------------------------------------------------------
# Generic helpers
# ---------------------------------------------------------------------------

def safe_parse(parser: Callable[[str], T], raw: Any, default: T) -> tuple[T, list[str]]:
    """Run ``parser`` on ``raw``; never raises.

    Returns ``(value, errors)``. On any failure ``value`` is ``default`` and
    ``errors`` holds one note describing what went wrong.
    """
    if raw is None:
        return default, ["Parser received no input"]
    if not isinstance(raw, str):
        raw = str(raw)
    if not raw.strip():
        return default, ["Parser received empty input"]
    try:
        return parser(raw), []
    except Exception as exc:  # noqa: BLE001
        logger.warning("Parser %s failed: %s", getattr(parser, "__name__", parser), exc)
        return default, [f"{getattr(parser, '__name__', 'parser')}: {exc}"]


def extract_section(raw: str, start: str | re.Pattern, end: str | re.Pattern | None = None) -> list[str]:
    """Lines strictly between the first ``start`` anchor and the next ``end`` anchor."""

    def _hit(line: str, anchor: str | re.Pattern) -> bool:
        if isinstance(anchor, str):
            return anchor in line
        return bool(anchor.search(line))

    lines = raw.splitlines()
    start_idx = next((i for i, line in enumerate(lines) if _hit(line, start)), -1)
    if start_idx < 0:
        return []
    end_idx = len(lines)
    if end is not None:
        for i in range(start_idx + 1, len(lines)):
            if _hit(lines[i], end):
                end_idx = i
                break
    return lines[start_idx + 1:end_idx]


def extract_ips(text: str | None) -> list[str]:
    """Valid IPv4/IPv6 addresses in ``text``, first-seen order, no duplicates."""
    if not text:
        return []
    seen: dict[str, None] = {}
    for token in _LIST_SPLIT.split(text):
        token = token.strip().strip("[](),;")
        if not token:
            continue
        try:
            addr = str(ipaddress.ip_address(token))
        except ValueError:
            continue
        seen.setdefault(addr, None)
    return list(seen)


def _field(raw: str, label: str) -> str | None:
    pattern = re.compile(rf"^[ \t|`\-]*{re.escape(label)}[ \t]*:[ \t]*(.*)$", re.IGNORECASE | re.MULTILINE)
    match = pattern.search(raw)
    if match is None:
        return None
    return match.group(1).strip()


def _int_field(raw: str, label: str) -> int | None:
    value = _field(raw, label)
    if value is None:
        return None
    match = _INT.search(value)
    return int(match.group(1)) if match else None


# ---------------------------------------------------------------------------
# Structural parsers
# ---------------------------------------------------------------------------

def parse_global_status(raw: str) -> list[str]:
    """Active jail names from ``fail2ban-client status``."""
    value = _field(raw, "Jail list")
    if value is None:
        count = _int_field(raw, "Number of jail")
        if count == 0:
            return []
        raise ValueError("no 'Jail list' line in status output")
    names: dict[str, None] = {}
    for name in _LIST_SPLIT.split(value):
        name = name.strip()
        if name:
            names.setdefault(name, None)
    return list(names)


@dataclass
class JailStatus:
    currently_banned: int = 0
    total_banned: int | None = None
    banned_addresses: list[str] = field(default_factory=list)
    currently_failed: int | None = None
    total_failed: int | None = None
    max_retry: int | None = None
    ban_time: int | None = None
    find_time: int | None = None
    filter_files: list[str] = field(default_factory=list)


def parse_jail_status(raw: str) -> JailStatus:
    """Counts, banned addresses and optional limits from ``fail2ban-client status <jail>``."""
    if "Currently banned" not in raw and "Banned IP list" not in raw:
        raise ValueError("not a jail status block")

    banned_raw = _field(raw, "Banned IP list") or ""
    addresses = extract_ips(banned_raw)
    current = _int_field(raw, "Currently banned")
    if current is None:
        current = len(addresses)

    files_raw = _field(raw, "File list") or ""
    return JailStatus(
        currently_banned=current,
        total_banned=_int_field(raw, "Total banned"),
        banned_addresses=addresses,
        currently_failed=_int_field(raw, "Currently failed"),
        total_failed=_int_field(raw, "Total failed"),
        max_retry=_int_field(raw, "Max retry"),
        ban_time=_int_field(raw, "Ban time"),
        find_time=_int_field(raw, "Find time"),
        filter_files=[f for f in files_raw.split() if f],
    )


_SECTION_HEADER = re.compile(r"^\s*\[([^\]]+)\]\s*$")


def parse_config_section(raw: str, section: str) -> dict[str, str]:
    """``key = value`` pairs of one ``[section]`` of an INI-style file.

    Continuation lines (indented) are appended to the previous value.
    """
    values: dict[str, str] = {}
    inside = False
    last_key: str | None = None
    for line in raw.splitlines():
        header = _SECTION_HEADER.match(line)
        if header:
            inside = header.group(1).strip() == section
            last_key = None
            continue
        if not inside:
            continue
        stripped = line.strip()
        if not stripped or stripped.startswith(("#", ";")):
            continue
        if line[:1].isspace() and last_key is not None:
            values[last_key] = f"{values[last_key]}\n{stripped}"
            continue
        if "=" in stripped:
            key, _, value = stripped.partition("=")
            last_key = key.strip()
            values[last_key] = value.strip()
    return values
