"""Read effective per-jail options from the fail2ban configuration tree."""

from __future__ import annotations

import configparser
import glob
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from Jail_Control.common import require_jail_name
from Jail_Control.errors import ConfigurationError, ValidationError

logger = logging.getLogger("jailwatch.jailconf")

RESERVED_SECTIONS = {"default", "includes"}
_HEADER = re.compile(r"^\[([^\]]*)\]\s*$")
_ENABLED = re.compile(r"^enabled\s*=\s*(.*)$", re.IGNORECASE)


def config_sources(config_dir: Path) -> list[Path]:
    """jail.conf, then jail.d/*.conf in name order, then jail.local."""
    sources = [config_dir / "jail.conf"]
    jail_d = config_dir / "jail.d"
    if jail_d.is_dir():
        sources.extend(sorted(jail_d.glob("*.conf")))
    sources.append(config_dir / "jail.local")
    return sources


@dataclass
class JailConfig:
    name: str
    options: dict[str, str] = field(default_factory=dict)
    config_file: Path | None = None

    @property
    def filter_name(self) -> str:
        raw = self.options.get("filter", "").strip()
        if not raw:
            return self.name
        raw = raw.replace("%(__name__)s", self.name)
        # "sshd[mode=aggressive]" -> "sshd"
        return raw.split("[", 1)[0].strip() or self.name

    @property
    def log_paths(self) -> list[str]:
        raw = self.options.get("logpath", "")
        return [line.strip() for line in raw.splitlines() if line.strip()]

    def int_option(self, key: str) -> int | None:
        value = self.options.get(key, "").strip()
        try:
            return int(value)
        except ValueError:
            return None


@dataclass
class JailConfigSource:
    """Editable text of one jail and the file it was read from."""

    jail: str
    path: Path
    content: str
    # section comes from jail.conf; saving writes an override to jail.d instead
    inherited: bool = False

    def to_dict(self) -> dict[str, object]:
        return {"jail": self.jail, "path": str(self.path), "content": self.content, "inherited": self.inherited}


def _header(line: str) -> str | None:
    if not line or line[0].isspace():
        return None
    match = _HEADER.match(line.strip())
    return match.group(1).strip() if match else None


def _section_bounds(lines: list[str], name: str) -> tuple[int, int] | None:
    start = None
    for index, line in enumerate(lines):
        header = _header(line)
        if header is None:
            continue
        if start is not None:
            return start, index
        if header == name:
            start = index
    if start is None:
        return None
    return start, len(lines)


def extract_section(text: str, name: str) -> str | None:
    """The ``[name]`` header and its body, or None when the file does not declare it."""
    lines = text.splitlines()
    bounds = _section_bounds(lines, name)
    if bounds is None:
        return None
    start, end = bounds
    return "\n".join(lines[start:end]).rstrip() + "\n"


def replace_section(text: str, name: str, section: str) -> str:
    """Swap the ``[name]`` section of ``text`` for ``section``, appending it if absent."""
    lines = text.splitlines()
    new = section.strip().splitlines()
    bounds = _section_bounds(lines, name)
    if bounds is None:
        kept = "\n".join(lines).rstrip()
        return (kept + "\n\n" if kept else "") + "\n".join(new) + "\n"
    start, end = bounds
    tail = lines[end:]
    merged = lines[:start] + new + ([""] + tail if tail else [])
    return "\n".join(merged) + "\n"


def validate_section(name: str, content: str) -> str:
    """Check edited jail text before it is written and return it normalised.

    The text must hold exactly one section, ``[name]``, at most one
    ``enabled`` line with a boolean value, and parse as an INI section.
    """
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Configuration content is required", {"jail": name})
    errors: list[str] = []
    headers: list[str] = []
    enabled = 0
    for number, line in enumerate(content.splitlines(), 1):
        stripped = line.strip()
        if not stripped or stripped.startswith(("#", ";")):
            continue
        header = _header(line)
        if header is not None:
            headers.append(header)
            continue
        if not headers:
            errors.append(f"Line {number}: option outside the [{name}] section")
            continue
        match = _ENABLED.match(stripped)
        if match:
            enabled += 1
            value = match.group(1).strip()
            if value.lower() not in {"true", "false", "1", "0"}:
                errors.append(f'Line {number}: invalid value "{value}" for enabled (use true or false)')
    if headers != [name]:
        errors.append(f"Content must declare exactly one section, [{name}]")
    if enabled > 1:
        errors.append(f'Multiple "enabled" directives found ({enabled})')
    if not errors:
        parser = configparser.ConfigParser(interpolation=None, strict=False)
        try:
            parser.read_string(content)
        except configparser.Error as exc:
            errors.append(str(exc).splitlines()[0])
    if errors:
        raise ValidationError("Invalid jail configuration", {"jail": name, "errors": errors})
    return content.strip() + "\n"


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise ConfigurationError(f"Could not read {path.name}: {exc}", {"path": str(path)}) from exc


def _atomic_write(path: Path, text: str) -> None:
    tmp: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except OSError as exc:
        if tmp is not None and os.path.exists(tmp):
            os.unlink(tmp)
        raise ConfigurationError(f"Could not write {path.name}: {exc}", {"path": str(path)}) from exc


class JailConfigReader:
    def __init__(self, config_dir: Path) -> None:
        self.config_dir = config_dir

    def _parser(self) -> tuple[configparser.ConfigParser, dict[str, Path], list[str]]:
        parser = configparser.ConfigParser(interpolation=None, strict=False)
        owners: dict[str, Path] = {}
        warnings: list[str] = []
        for path in config_sources(self.config_dir):
            if not path.exists():
                continue
            try:
                text = path.read_text(encoding="utf-8", errors="replace")
                parser.read_string(text, source=str(path))
            except (OSError, configparser.Error) as exc:
                warnings.append(f"Failed to read {path.name}: {exc}")
                continue
            for section in parser.sections():
                if _declares(text, section):
                    owners[section] = path
        return parser, owners, warnings

    def read(self, name: str) -> JailConfig | None:
        """Merged DEFAULT + section options for one jail, or None if no section declares it."""
        parser, owners, warnings = self._parser()
        for warning in warnings:
            logger.warning(warning)
        if not parser.has_section(name):
            return None
        options = {key: value for key, value in parser.items(name)}
        return JailConfig(name=name, options=options, config_file=owners.get(name))

    def read_all(self) -> dict[str, JailConfig]:
        parser, owners, warnings = self._parser()
        for warning in warnings:
            logger.warning(warning)
        configs: dict[str, JailConfig] = {}
        for section in parser.sections():
            if section.lower() in RESERVED_SECTIONS:
                continue
            configs[section] = JailConfig(
                name=section,
                options={key: value for key, value in parser.items(section)},
                config_file=owners.get(section),
            )
        return configs

    def _editable_sources(self, name: str) -> list[Path]:
        jail_d = self.config_dir / "jail.d"
        own = jail_d / f"{name}.conf"
        others = sorted(jail_d.glob("*.conf"), reverse=True) if jail_d.is_dir() else []
        return [own, self.config_dir / "jail.local", *[p for p in others if p != own]]

    def source(self, name: str) -> JailConfigSource | None:
        """Where the jail's editable text lives.

        jail.d/<name>.conf wins, then jail.local, then the other jail.d files.
        A section only found in jail.conf is returned with ``inherited`` set.
        """
        name = require_jail_name(name)
        for path in self._editable_sources(name):
            if not path.is_file():
                continue
            section = extract_section(_read_text(path), name)
            if section is not None:
                return JailConfigSource(name, path, section)
        jail_conf = self.config_dir / "jail.conf"
        if jail_conf.is_file():
            section = extract_section(_read_text(jail_conf), name)
            if section is not None:
                return JailConfigSource(name, jail_conf, section, inherited=True)
        return None

    def write(self, name: str, content: str) -> Path:
        """Replace the jail's section in the file that owns it and return that file.

        jail.conf is never modified: inherited and new jails are written to
        jail.d/<name>.conf.
        """
        name = require_jail_name(name)
        section = validate_section(name, content)
        current = self.source(name)
        if current is None or current.inherited:
            target = self.config_dir / "jail.d" / f"{name}.conf"
        else:
            target = current.path
        existing = _read_text(target) if target.exists() else ""
        _atomic_write(target, replace_section(existing, name, section))
        logger.info("Wrote configuration of jail %s to %s", name, target)
        return target

    def missing_log_paths(self, config: JailConfig) -> list[str]:
        missing: list[str] = []
        for entry in config.log_paths:
            if "%(" in entry or any(ch in entry for ch in "*?["):
                if "%(" not in entry and not glob.glob(entry):
                    missing.append(entry)
                continue
            if not Path(entry).exists():
                missing.append(entry)
        return missing


def _declares(text: str, section: str) -> bool:
    return f"[{section}]" in text
