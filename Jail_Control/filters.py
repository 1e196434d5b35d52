"""Filter file checks run before a jail is started, plus a thin filter writer."""

from __future__ import annotations

import logging
from pathlib import Path

from Jail_Control.common import require_jail_name
from Jail_Control.errors import ConfigurationError, PreflightError, ValidationError
from Jail_Control.jailconf import JailConfig

logger = logging.getLogger("jailwatch.filters")


class FilterManager:
    def __init__(self, config_dir: Path) -> None:
        self.config_dir = config_dir
        self.filter_dir = config_dir / "filter.d"

    def find(self, filter_name: str) -> Path | None:
        for suffix in (".conf", ".local"):
            candidate = self.filter_dir / f"{filter_name}{suffix}"
            if candidate.exists():
                return candidate
        return None

    def preflight(self, config: JailConfig) -> Path:
        """Raise PreflightError when the jail's filter file is missing."""
        filter_name = config.filter_name
        found = self.find(filter_name)
        if found is not None:
            return found

        expected = self.filter_dir / f"{filter_name}.conf"
        logger.warning("Filter %s for jail %s not found at %s", filter_name, config.name, expected)
        raise PreflightError(
            f"Filter '{filter_name}' for jail '{config.name}' does not exist",
            {
                "jail": config.name,
                "filter": filter_name,
                "filterPath": str(expected),
                "configFile": str(config.config_file) if config.config_file else None,
                "likelyCause": "The jail references a filter that is not installed.",
                "suggestions": [
                    f"Create {expected} with a [Definition] section and a failregex",
                    f"Check the 'filter' option of [{config.name}] in {config.config_file or 'jail.local'}",
                    "fail2ban-client -t to test the configuration",
                ],
            },
        )

    def create(self, filter_name: str, failregex: str, ignoreregex: str = "") -> Path:
        require_jail_name(filter_name)
        if not failregex.strip():
            raise ValidationError("failregex is required", {"filter": filter_name})
        path = self.filter_dir / f"{filter_name}.conf"
        if path.exists():
            raise ConfigurationError(f"Filter file already exists: {path.name}", {"filterPath": str(path)})

        fail_lines = [line.strip() for line in failregex.splitlines() if line.strip()]
        ignore_lines = [line.strip() for line in ignoreregex.splitlines() if line.strip()]
        body = ["[Definition]", "", "failregex = " + "\n            ".join(fail_lines)]
        body.append("ignoreregex = " + "\n              ".join(ignore_lines))
        try:
            self.filter_dir.mkdir(parents=True, exist_ok=True)
            with path.open("x", encoding="utf-8") as f:
                f.write("\n".join(body))
                f.write("\n")
        except FileExistsError as exc:
            raise ConfigurationError(f"Filter file already exists: {path.name}", {"filterPath": str(path)}) from exc
        except OSError as exc:
            raise ConfigurationError(f"Could not write filter file: {exc}", {"filterPath": str(path)}) from exc
        logger.info("Created filter %s", path)
        return path
