"""
Configuration management for aceflow.

Implements fail-fast validation: invalid values raise at load time.
Precedence: CLI overrides > ACEFLOW_* environment > .ace-flow/config.yaml > defaults.
"""

from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping
import os

import yaml

from .errors import ConfigurationError

STATE_DIR_NAME = ".ace-flow"
CONFIG_FILE_NAME = "config.yaml"
ENV_PREFIX = "ACEFLOW_"

DEFAULT_EXCLUDES = (
    ".git",
    ".ace-flow/checkpoints",
    "node_modules",
    "__pycache__",
    ".venv",
)


@dataclass(frozen=True)
class TimeoutPolicy:
    """Adaptive timeout and retry policy.

    timeout(attempt) = min(base + score * multiplier + (attempt - 1) * increment, max)

    max_retries is the maximum number of attempts an operation gets, including
    the first one. Between attempts the executor sleeps attempt * backoff_unit.
    """
    base_seconds: float = 30.0
    complexity_multiplier: float = 2.0
    max_seconds: float = 180.0
    max_retries: int = 3
    retry_increment_seconds: float = 30.0
    backoff_unit_seconds: float = 5.0
    terminate_grace_seconds: float = 5.0
    retry_unclassified_failures: bool = False

    def __post_init__(self):
        if self.base_seconds <= 0:
            raise ConfigurationError(f"base_seconds must be > 0, got {self.base_seconds}")
        if self.complexity_multiplier < 0:
            raise ConfigurationError(f"complexity_multiplier must be >= 0, got {self.complexity_multiplier}")
        if self.max_seconds < self.base_seconds:
            raise ConfigurationError(
                f"max_seconds ({self.max_seconds}) must be >= base_seconds ({self.base_seconds})"
            )
        if self.max_retries < 1:
            raise ConfigurationError(f"max_retries must be >= 1, got {self.max_retries}")
        if self.retry_increment_seconds < 0:
            raise ConfigurationError(f"retry_increment_seconds must be >= 0, got {self.retry_increment_seconds}")
        if self.backoff_unit_seconds < 0:
            raise ConfigurationError(f"backoff_unit_seconds must be >= 0, got {self.backoff_unit_seconds}")
        if self.terminate_grace_seconds < 0:
            raise ConfigurationError(f"terminate_grace_seconds must be >= 0, got {self.terminate_grace_seconds}")


@dataclass
class CheckpointConfig:
    """Checkpoint store settings.

    components maps a component name to the project-relative paths that make
    it up. Directories are captured recursively, minus `exclude` entries.
    """
    components: dict[str, list[str]] = field(default_factory=lambda: {"project": ["."]})
    exclude: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDES))
    retention_days: float = 7.0
    max_auto_checkpoints: int = 10  # keeps last 10 automatic checkpoints

    def __post_init__(self):
        if not self.components:
            raise ConfigurationError("At least one checkpoint component must be configured")
        for name, paths in self.components.items():
            if not paths:
                raise ConfigurationError(f"Checkpoint component '{name}' has no paths")
            for path in paths:
                if Path(path).is_absolute() or ".." in Path(path).parts:
                    raise ConfigurationError(
                        f"Checkpoint component '{name}' path must be project-relative: {path}"
                    )
        if self.retention_days < 0:
            raise ConfigurationError(f"retention_days must be >= 0, got {self.retention_days}")
        if self.max_auto_checkpoints < 1:
            raise ConfigurationError(f"max_auto_checkpoints must be >= 1, got {self.max_auto_checkpoints}")

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)


@dataclass
class RecoveryConfig:
    """
    Main configuration for aceflow.

    All state lives under <project_root>/.ace-flow unless overridden:
    checkpoints in checkpoints/, the performance ledger in performance.jsonl.
    """
    project_root: Path
    state_dir: Path | None = None
    checkpoints_dir: Path | None = None
    ledger_path: Path | None = None

    timeouts: TimeoutPolicy = field(default_factory=TimeoutPolicy)
    checkpoints: CheckpointConfig = field(default_factory=CheckpointConfig)

    # Observability
    verbose: bool = False

    def __post_init__(self):
        """Validate and resolve paths after initialization."""
        self.project_root = Path(self.project_root).resolve()

        if not self.project_root.is_dir():
            raise ConfigurationError(f"Project root does not exist: {self.project_root}")

        self.state_dir = self._resolve(self.state_dir, self.project_root / STATE_DIR_NAME)
        self.checkpoints_dir = self._resolve(self.checkpoints_dir, self.state_dir / "checkpoints")
        self.ledger_path = self._resolve(self.ledger_path, self.state_dir / "performance.jsonl")

    def _resolve(self, value: Path | str | None, default: Path) -> Path:
        if value is None:
            return default
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = self.project_root / path
        return path

    def ensure_directories(self) -> None:
        """Ensure required directories exist."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.checkpoints_dir.mkdir(parents=True, exist_ok=True)


# Environment variable -> (section, field, type)
_ENV_BINDINGS: dict[str, tuple[str, str, type]] = {
    "BASE_SECONDS": ("timeouts", "base_seconds", float),
    "COMPLEXITY_MULTIPLIER": ("timeouts", "complexity_multiplier", float),
    "MAX_SECONDS": ("timeouts", "max_seconds", float),
    "MAX_RETRIES": ("timeouts", "max_retries", int),
    "RETRY_INCREMENT_SECONDS": ("timeouts", "retry_increment_seconds", float),
    "BACKOFF_UNIT_SECONDS": ("timeouts", "backoff_unit_seconds", float),
    "TERMINATE_GRACE_SECONDS": ("timeouts", "terminate_grace_seconds", float),
    "RETRY_UNCLASSIFIED_FAILURES": ("timeouts", "retry_unclassified_failures", bool),
    "RETENTION_DAYS": ("checkpoints", "retention_days", float),
    "MAX_AUTO_CHECKPOINTS": ("checkpoints", "max_auto_checkpoints", int),
    "STATE_DIR": ("", "state_dir", str),
    "CHECKPOINTS_DIR": ("", "checkpoints_dir", str),
    "LEDGER_PATH": ("", "ledger_path", str),
    "VERBOSE": ("", "verbose", bool),
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _coerce(name: str, raw: str, value_type: type) -> Any:
    if value_type is bool:
        lowered = raw.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")
    try:
        return value_type(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be {value_type.__name__}, got {raw!r}") from e


def _read_config_file(path: Path, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Config section '{name}' must be a mapping")
    return dict(section)


def _check_keys(section_name: str, values: Mapping[str, Any], cls: type) -> None:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{section_name}': {', '.join(unknown)}")


def load_config(
    project_root: str | Path,
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> RecoveryConfig:
    """Load the effective configuration.

    `overrides` uses dotted keys ("timeouts.max_seconds", "verbose") and is
    applied last; None values are ignored so CLI defaults do not shadow the file.
    """
    root = Path(project_root).resolve()
    env = os.environ if environ is None else environ

    explicit = config_path is not None
    if config_path is None:
        path = root / STATE_DIR_NAME / CONFIG_FILE_NAME
    else:
        path = Path(config_path)
        if not path.is_absolute():
            path = root / path

    data = _read_config_file(path, required=explicit)
    timeouts = _section(data, "timeouts")
    checkpoints = _section(data, "checkpoints")
    top: dict[str, Any] = {
        key: data[key] for key in ("state_dir", "checkpoints_dir", "ledger_path", "verbose") if key in data
    }

    for suffix, (section, name, value_type) in _ENV_BINDINGS.items():
        raw = env.get(f"{ENV_PREFIX}{suffix}")
        if raw is None or raw == "":
            continue
        value = _coerce(f"{ENV_PREFIX}{suffix}", raw, value_type)
        target = {"timeouts": timeouts, "checkpoints": checkpoints}.get(section, top)
        target[name] = value

    for dotted, value in (overrides or {}).items():
        if value is None:
            continue
        section, _, name = dotted.rpartition(".")
        target = {"timeouts": timeouts, "checkpoints": checkpoints}.get(section, top)
        target[name] = value

    _check_keys("timeouts", timeouts, TimeoutPolicy)
    _check_keys("checkpoints", checkpoints, CheckpointConfig)

    try:
        policy = TimeoutPolicy(**timeouts)
        checkpoint_config = CheckpointConfig(**checkpoints)
    except TypeError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    return RecoveryConfig(
        project_root=root,
        state_dir=top.get("state_dir"),
        checkpoints_dir=top.get("checkpoints_dir"),
        ledger_path=top.get("ledger_path"),
        timeouts=policy,
        checkpoints=checkpoint_config,
        verbose=bool(top.get("verbose", False)),
    )
