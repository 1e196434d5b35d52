"""Exception types raised by the jail control engine."""

from __future__ import annotations

from typing import Any


class JailControlError(Exception):
    """Base class; carries an optional details mapping for API responses."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(JailControlError):
    pass


class DiscoveryError(ConfigurationError):
    """No configuration source and no daemon list could be read."""


class ValidationError(JailControlError):
    pass


class JailNotConfigured(JailControlError):
    def __init__(self, jail: str) -> None:
        super().__init__(f"Jail '{jail}' is not configured", {"jail": jail})
        self.jail = jail


class EnforcementUnavailable(JailControlError):
    """The daemon binary is missing, not running, or refuses access."""

    def __init__(self, message: str, kind: str = "service_down", details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details)
        self.kind = kind


class DaemonNok(JailControlError):
    """The daemon answered NOK. Ambiguous: a real error or an already-applied state."""

    def __init__(self, message: str, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message, {"stdout": stdout, "stderr": stderr})
        self.stdout = stdout
        self.stderr = stderr


class ProbeTimeout(JailControlError):
    pass


class ProbeKilled(ProbeTimeout):
    """The status command was terminated by a signal before it answered."""


class CommandError(JailControlError):
    """Non-zero exit that is neither NOK nor an availability problem."""


class IdempotentNoOp(JailControlError):
    """Raised only when callers ask for strict mode and the state was already applied."""


class ActionVerificationFailed(JailControlError):
    def __init__(self, jail: str, action: str, target: Any, actual: Any, raw: str = "") -> None:
        super().__init__(
            f"Jail '{jail}' {action} could not be verified: expected {target}, observed {actual}",
            {
                "jail": jail,
                "action": action,
                "expected": target,
                "actual": actual,
                "raw": raw[-2000:],
                "likelyCause": "The daemon accepted the command but the jail did not reach the requested state.",
                "suggestions": [
                    f"fail2ban-client status {jail}",
                    "journalctl -u fail2ban -n 50",
                    "tail -n 50 /var/log/fail2ban.log",
                ],
            },
        )


class PreflightError(JailControlError):
    pass


class AuthenticationError(JailControlError):
    pass


def http_status(exc: JailControlError) -> int:
    """HTTP status code an API layer should answer with for ``exc``."""
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, AuthenticationError):
        return 401
    if isinstance(exc, JailNotConfigured):
        return 404
    if isinstance(exc, (EnforcementUnavailable, DiscoveryError, ProbeTimeout)):
        return 503
    if isinstance(exc, (ConfigurationError, PreflightError)):
        return 409
    return 500
