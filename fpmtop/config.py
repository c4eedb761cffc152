"""Configuration loading for fpmtop.

Profiles live in a TOML file, one table per pool:

    [default]
    listen = "/var/run/php5-fpm.sock"
    status = "/status"

Search order: explicit --config path → ~/.fpmtop.toml → ~/.phpfpmtop.conf.
If neither file exists yet, a starter ~/.fpmtop.toml is written and fpmtop
exits so the user can check it before the first run.
"""

from __future__ import annotations

import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_PROFILE: dict[str, Any] = {
    "listen": "/var/run/php5-fpm.sock",
    "status": "/status",
    "delay": 0.25,
    "timeout": 5.0,
}

DEFAULT_CONFIG: dict[str, Any] = {
    "default": DEFAULT_PROFILE,
}

_PROFILE_COMMENTS: dict[str, str] = {
    "listen": 'The "listen" option of the PHP-FPM pool (socket path or host:port)',
    "status": 'The "pm.status_path" option of the pool',
    "delay": "Seconds between refreshes, adjustable at runtime with + and -",
    "timeout": "Seconds to wait for the pool before giving up on a refresh",
}

_DEFAULT_PATH = Path.home() / ".fpmtop.toml"
# Read when the default file is missing; same TOML layout.
_LEGACY_PATH = Path.home() / ".phpfpmtop.conf"


@dataclass
class Profile:
    """A resolved pool to watch."""

    name: str
    listen: str
    status: str
    delay: float
    timeout: float


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base. Nested dicts are merged at the first level only."""
    merged = dict(base)
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _with_profile_defaults(user_config: dict[str, Any]) -> dict[str, Any]:
    """Merge each profile table over DEFAULT_PROFILE; top-level scalars are ignored."""
    tables = {name: t for name, t in user_config.items() if isinstance(t, dict)}
    return _deep_merge({name: DEFAULT_PROFILE for name in tables}, tables)


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        user_config = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        print(f"fpmtop: invalid TOML in {path}: {e}", file=sys.stderr)
        raise SystemExit(1) from e
    except OSError as e:
        print(f"fpmtop: cannot read {path}: {e}", file=sys.stderr)
        raise SystemExit(1) from e
    return _with_profile_defaults(user_config)


def write_default_config(path: Path) -> None:
    """Write the starter configuration to *path* (mode 0640)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_default_config(), encoding="utf-8")
    path.chmod(0o640)


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load the profile table.

    Args:
        path: Explicit config file path (from --config). If None, uses
              ~/.fpmtop.toml, falling back to ~/.phpfpmtop.conf and
              creating ~/.fpmtop.toml on first run.

    Returns:
        Mapping of profile name to its merged settings.

    Raises:
        SystemExit: If the file is missing, unreadable or not valid TOML.
    """
    if path is not None:
        if not path.is_file():
            print(f"fpmtop: config file not found: {path}", file=sys.stderr)
            raise SystemExit(1)
        return _read_toml(path)

    if not _DEFAULT_PATH.is_file() and _LEGACY_PATH.is_file():
        return _read_toml(_LEGACY_PATH)

    if not _DEFAULT_PATH.is_file():
        try:
            write_default_config(_DEFAULT_PATH)
        except OSError as e:
            print(f"fpmtop: cannot write {_DEFAULT_PATH}: {e}", file=sys.stderr)
            raise SystemExit(1) from e
        print(
            f"fpmtop: new configuration file written to {_DEFAULT_PATH}. "
            "Please verify it and restart fpmtop.\n\n" + dump_default_config(),
            file=sys.stderr,
        )
        raise SystemExit(1)

    return _read_toml(_DEFAULT_PATH)


def select_profile(config: dict[str, Any], name: str) -> Profile:
    """Resolve profile *name* from a loaded config.

    Raises:
        SystemExit: If the profile is missing or its values have the wrong type.
    """
    table = config.get(name)
    if table is None:
        print(f"fpmtop: profile '{name}' not found in config file. Please fix.", file=sys.stderr)
        raise SystemExit(1)

    try:
        return Profile(
            name=name,
            listen=str(table["listen"]),
            status=str(table["status"]),
            delay=float(table["delay"]),
            timeout=float(table["timeout"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        print(f"fpmtop: bad value in profile '{name}': {e}", file=sys.stderr)
        raise SystemExit(1) from e


def _toml_value(value: Any) -> str:
    if isinstance(value, str):
        return f'"{value}"'
    return str(value)


def dump_default_config() -> str:
    """Return the default configuration as a TOML string."""
    lines = [
        "# fpmtop configuration",
        "# The [default] profile is used when fpmtop is started without arguments;",
        "# add more tables and pass their name to watch other pools.",
        "",
    ]

    for profile, settings in DEFAULT_CONFIG.items():
        lines.append(f"[{profile}]")
        for key, value in settings.items():
            comment = _PROFILE_COMMENTS.get(key)
            if comment:
                lines.append(f"# {comment}")
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")

    return "\n".join(lines) + "\n"
