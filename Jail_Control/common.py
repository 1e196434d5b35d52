"""Common helpers: input validation and jail classification."""

from __future__ import annotations

import ipaddress
import re

from Jail_Control.errors import ValidationError

JAIL_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")

_HIGH = {"ssh": 20, "nginx": 30, "http": 30, "system": 15, "other": 20}
_MEDIUM = {"ssh": 5, "nginx": 10, "http": 10, "system": 3, "other": 5}
_SYSTEM_PREFIXES = ("postfix", "dovecot", "recidive", "pam-")


def is_valid_jail_name(name: object) -> bool:
    return isinstance(name, str) and bool(JAIL_NAME_RE.match(name))


def is_valid_ip(value: object) -> bool:
    if not isinstance(value, str):
        return False
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def require_jail_name(name: object) -> str:
    if not is_valid_jail_name(name):
        raise ValidationError("Invalid jail name", {"jail": str(name)[:100]})
    return str(name)


def require_ip(value: object) -> str:
    if not is_valid_ip(value):
        raise ValidationError("Invalid IP address", {"ip": str(value)[:100]})
    return str(ipaddress.ip_address(str(value)))


def infer_category(name: str) -> str:
    lowered = (name or "").lower()
    if "ssh" in lowered:
        return "ssh"
    if "nginx" in lowered:
        return "nginx"
    if lowered.startswith("apache") or "http" in lowered:
        return "http"
    if lowered.startswith(_SYSTEM_PREFIXES) or "system" in lowered:
        return "system"
    return "other"


def infer_severity(name: str, banned: int) -> str:
    category = infer_category(name)
    if banned >= _HIGH[category]:
        return "high"
    if banned >= _MEDIUM[category]:
        return "medium"
    return "low"
