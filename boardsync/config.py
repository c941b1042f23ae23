"""Project configuration for boardsync (boardsync.toml)."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from pathlib import Path

try:
    import tomllib
except ImportError:
    try:
        import tomli as tomllib  # type: ignore[no-redef]
    except ImportError:
        tomllib = None  # type: ignore[assignment]

CONFIG_FILENAME = "boardsync.toml"
STATE_DIRNAME = ".boardsync"


@dataclass
class StorageConfig:
    path: str = f"{STATE_DIRNAME}/state.json"


@dataclass
class DiscoveryConfig:
    cli: str = "arduino-cli"
    poll_interval: float = 2.0
    timeout: float = 10


@dataclass
class LoggingConfig:
    level: str = "WARNING"


@dataclass
class ProjectConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def storage_path(self, project_dir: Path | str) -> Path:
        path = Path(self.storage.path)
        if not path.is_absolute():
            path = Path(project_dir) / path
        return path


def _read_toml(toml_path: Path) -> dict:
    if tomllib is None:
        raise ImportError("No TOML parser available (need Python 3.11+ or tomli)")
    with open(toml_path, "rb") as f:
        return tomllib.load(f)


def load_project_config(project_dir: Path | str) -> ProjectConfig:
    """Parse boardsync.toml and return a typed ProjectConfig."""
    project_dir = Path(project_dir)
    toml_path = project_dir / CONFIG_FILENAME
    if not toml_path.exists():
        raise FileNotFoundError(f"{CONFIG_FILENAME} not found in {project_dir}")

    data = _read_toml(toml_path)
    storage_data = data.get("storage", {})
    discovery_data = data.get("discovery", {})
    logging_data = data.get("logging", {})

    defaults = DiscoveryConfig()
    return ProjectConfig(
        storage=StorageConfig(path=storage_data.get("path", StorageConfig.path)),
        discovery=DiscoveryConfig(
            cli=discovery_data.get("cli", defaults.cli),
            poll_interval=float(discovery_data.get("poll_interval", defaults.poll_interval)),
            timeout=float(discovery_data.get("timeout", defaults.timeout)),
        ),
        logging=LoggingConfig(level=str(logging_data.get("level", LoggingConfig.level)).upper()),
    )


def load_project_config_or_default(project_dir: Path | str) -> ProjectConfig:
    try:
        return load_project_config(project_dir)
    except FileNotFoundError:
        return ProjectConfig()


def get_config_value(project_dir: Path | str, key: str):
    """Dotted key lookup, e.g. 'discovery.poll_interval'."""
    toml_path = Path(project_dir) / CONFIG_FILENAME
    if not toml_path.exists() or tomllib is None:
        return None

    data = _read_toml(toml_path)
    parts = key.split(".", 1)
    if len(parts) == 2:
        section, k = parts
        return data.get(section, {}).get(k)
    return data.get(key)


_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _settable_keys() -> dict[str, str]:
    """Dotted key -> annotated type name, from the ProjectConfig sections."""
    keys = {}
    for section in fields(ProjectConfig):
        for entry in fields(section.default_factory):
            keys[f"{section.name}.{entry.name}"] = entry.type
    return keys


def _coerce(key: str, value) -> str | float:
    kind = _settable_keys().get(key)
    if kind is None:
        raise ValueError(f"Unknown config key: {key}. Known keys: {', '.join(sorted(_settable_keys()))}")
    if kind == "float":
        try:
            return float(value)
        except ValueError as e:
            raise ValueError(f"{key} must be a number, got: {value}") from e
    value = str(value)
    if key == "logging.level":
        value = value.upper()
        if value not in _LOG_LEVELS:
            raise ValueError(f"logging.level must be one of {', '.join(_LOG_LEVELS)}, got: {value}")
    return value


def _format_toml_value(value: str | float) -> str:
    if isinstance(value, float):
        return str(value)
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _find_entry(lines: list[str], section: str, name: str) -> tuple[int | None, int | None, int]:
    """Locate a section header, the key's line within it and the section's end."""
    header = f"[{section}]"
    key_line = re.compile(rf"^{re.escape(name)}\s*=")
    start = entry = None
    end = len(lines)
    for i, current in enumerate(lines):
        stripped = current.strip()
        if start is None:
            if stripped == header:
                start = i
        elif stripped.startswith("[") and stripped.endswith("]"):
            end = i
            break
        elif key_line.match(stripped):
            entry = i
    return start, entry, end


def set_config_value(project_dir: Path | str, key: str, value) -> None:
    """Validate and write one known setting (e.g. discovery.poll_interval) to boardsync.toml.

    Edits lines in place so comments and ordering in the file survive.
    """
    section, _, name = key.partition(".")
    entry = f"{name} = {_format_toml_value(_coerce(key, value))}\n"

    toml_path = Path(project_dir) / CONFIG_FILENAME
    lines = toml_path.read_text().splitlines(keepends=True) if toml_path.exists() else []
    if lines and not lines[-1].endswith("\n"):
        lines[-1] += "\n"

    start, existing, end = _find_entry(lines, section, name)
    if existing is not None:
        lines[existing] = entry
    elif start is not None:
        lines.insert(end, entry)
    else:
        lines += (["\n"] if lines else []) + [f"[{section}]\n", entry]
    toml_path.write_text("".join(lines))


def list_config(project_dir: Path | str) -> dict:
    """Return a flat dotted-key dict of all config values."""
    toml_path = Path(project_dir) / CONFIG_FILENAME
    if not toml_path.exists() or tomllib is None:
        return {}

    result = {}
    for section, values in _read_toml(toml_path).items():
        if isinstance(values, dict):
            for k, v in values.items():
                result[f"{section}.{k}"] = v
        else:
            result[section] = values
    return result


def ensure_state_dir(state_dir: Path | str) -> Path:
    """Create the state directory with a .gitignore containing '*'."""
    state_dir = Path(state_dir)
    state_dir.mkdir(parents=True, exist_ok=True)
    gitignore = state_dir / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text("*\n")
    return state_dir
