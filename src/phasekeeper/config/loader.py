"""
Configuration Loader.

Finds the configuration file, expands ${VAR} references, layers the
PHASEKEEPER_* overrides on top and validates the result with Pydantic.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from phasekeeper.config.environment import load_environment
from phasekeeper.config.models import PhasekeeperConfig, StorageConfig

# Searched in order when PHASEKEEPER_CONFIG is unset
SEARCH_PATHS = (
    "phasekeeper.yaml",
    "phasekeeper.yml",
    ".phasekeeper.yaml",
    "config/phasekeeper.yaml",
)

CONFIG_ENV_VAR = "PHASEKEEPER_CONFIG"

# Env var name -> dotted config path
ENV_VAR_OVERRIDES = {
    "PHASEKEEPER_STATE_DIR": "storage.state_dir",
    "PHASEKEEPER_EVENT_LOG": "storage.event_log",
    "PHASEKEEPER_CHECKPOINT_INTERVAL": "checkpoints.interval_minutes",
    "PHASEKEEPER_CHECKPOINT_RETENTION": "checkpoints.retention",
    "PHASEKEEPER_STALL_THRESHOLD": "monitor.stall_threshold_seconds",
    "PHASEKEEPER_NO_PROGRESS_GRACE": "monitor.no_progress_grace_seconds",
    "PHASEKEEPER_MAX_CONCURRENCY": "coordinator.capacity.slots",
    "PHASEKEEPER_LOG_LEVEL": "logging.level",
    "PHASEKEEPER_LOG_FILE": "logging.file",
    "PHASEKEEPER_DEBUG": "debug",
}

# ${NAME} or ${NAME:-fallback}
_REFERENCE = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")

_MAX_REPORTED_ERRORS = 5


class ConfigurationError(Exception):
    """Raised when a configuration file cannot become a PhasekeeperConfig.

    Attributes:
        errors: Pydantic error dicts, when validation failed
        path: File the configuration came from, if any
    """

    def __init__(
        self,
        message: str,
        errors: list[dict] | None = None,
        path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.errors = list(errors or [])
        self.path = path

    def __str__(self) -> str:
        headline = super().__str__()
        if self.path is not None:
            headline = f"{headline} (file: {self.path})"
        lines = [headline]
        for err in self.errors[:_MAX_REPORTED_ERRORS]:
            where = ".".join(str(part) for part in err.get("loc", ()))
            lines.append(f"  - {where}: {err.get('msg', 'invalid value')}")
        hidden = len(self.errors) - _MAX_REPORTED_ERRORS
        if hidden > 0:
            lines.append(f"  ... and {hidden} more errors")
        return "\n".join(lines)


def expand_references(data: Any) -> Any:
    """Replace ${VAR} references throughout a parsed YAML tree.

    A string that is a single reference takes the coerced value of the
    variable, so `retention: ${KEEP}` yields an int. References inside
    longer strings are substituted as text. Unset variables without a
    fallback are left untouched for validation to report.
    """
    if isinstance(data, dict):
        return {key: expand_references(value) for key, value in data.items()}
    if isinstance(data, list):
        return [expand_references(value) for value in data]
    if not isinstance(data, str):
        return data

    whole = _REFERENCE.fullmatch(data)
    if whole:
        resolved = _resolve(whole)
        return data if resolved is None else _coerce(resolved)

    def substitute(match: re.Match[str]) -> str:
        resolved = _resolve(match)
        return match.group(0) if resolved is None else resolved

    return _REFERENCE.sub(substitute, data)


def _resolve(match: re.Match[str]) -> str | None:
    value = os.environ.get(match.group(1))
    return match.group(2) if value is None else value


def _coerce(value: str) -> Any:
    """Turn an environment string into the YAML scalar it spells."""
    if value == "":
        return None
    lowered = value.lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    for number in (int, float):
        try:
            return number(value)
        except ValueError:
            continue
    return value


def _apply_overrides(tree: dict[str, Any]) -> dict[str, Any]:
    for env_var, dotted in ENV_VAR_OVERRIDES.items():
        raw = os.environ.get(env_var)
        if raw is None:
            continue
        *parents, leaf = dotted.split(".")
        node = tree
        for key in parents:
            if not isinstance(node.get(key), dict):
                node[key] = {}
            node = node[key]
        node[leaf] = _coerce(raw)
    return tree


def _drop_empty(data: Any) -> Any:
    # YAML parses a section with no body as None
    if isinstance(data, dict):
        return {key: _drop_empty(value) for key, value in data.items() if value is not None}
    if isinstance(data, list):
        return [_drop_empty(value) for value in data]
    return data


class ConfigLoader:
    """Loads one PhasekeeperConfig.

    Usage:
        config = ConfigLoader("phasekeeper.yaml").load()

        # PHASEKEEPER_CONFIG, then SEARCH_PATHS, then built-in defaults
        config = ConfigLoader().load_from_env()
    """

    def __init__(
        self,
        config_path: str | Path | None = None,
        env_file: str = ".env",
    ) -> None:
        self._path = Path(config_path) if config_path else None
        self._env_file = env_file
        self._config: PhasekeeperConfig | None = None

    @property
    def config(self) -> PhasekeeperConfig | None:
        """The last configuration loaded, or None."""
        return self._config

    def load(self, path: str | Path | None = None) -> PhasekeeperConfig:
        """Load and validate configuration.

        Without a path (here or in __init__) only the defaults and the
        environment overrides apply.

        Raises:
            ConfigurationError: If the file or the merged values are invalid
            FileNotFoundError: If the config file does not exist
        """
        if path is not None:
            self._path = Path(path)
        load_environment(self._env_file)

        raw = self._read() if self._path else {}
        tree = _drop_empty(_apply_overrides(expand_references(raw)))
        try:
            self._config = PhasekeeperConfig(**tree)
        except ValidationError as e:
            raise ConfigurationError(
                f"Configuration validation failed: {e.error_count()} errors",
                errors=e.errors(),
                path=self._path,
            ) from e
        return self._config

    def load_from_env(self) -> PhasekeeperConfig:
        """Load from PHASEKEEPER_CONFIG or the first file in SEARCH_PATHS.

        Raises:
            ConfigurationError: If config is invalid
            FileNotFoundError: If PHASEKEEPER_CONFIG names a missing file
        """
        load_environment(self._env_file)
        self._path = self._locate()
        return self.load()

    def reload(self) -> PhasekeeperConfig:
        """Load again from the same source.

        Raises:
            RuntimeError: If nothing was loaded yet
        """
        if self._config is None:
            raise RuntimeError("Cannot reload: nothing loaded yet")
        return self.load()

    def save(self, path: str | Path | None = None) -> None:
        """Write the loaded configuration as YAML.

        Raises:
            ValueError: If nothing is loaded or there is nowhere to write
        """
        if self._config is None:
            raise ValueError("No configuration loaded")
        target = Path(path) if path else self._path
        if target is None:
            raise ValueError("No path specified for saving")
        target.write_text(
            yaml.safe_dump(self._config.to_yaml_dict(), default_flow_style=False, sort_keys=False)
        )

    def _locate(self) -> Path | None:
        named = os.environ.get(CONFIG_ENV_VAR)
        if named:
            if not Path(named).exists():
                raise FileNotFoundError(
                    f"Config file specified by {CONFIG_ENV_VAR} not found: {named}"
                )
            return Path(named)
        return next((Path(p) for p in SEARCH_PATHS if Path(p).exists()), None)

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            raise FileNotFoundError(f"Config file not found: {self._path}")
        try:
            data = yaml.safe_load(self._path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML: {e}", path=self._path) from e
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration root must be a mapping", path=self._path)
        return data


# Loader behind get_config() and reload_config()
_active: ConfigLoader | None = None


def load_config(
    config_path: str | Path | None = None,
    env_file: str = ".env",
) -> PhasekeeperConfig:
    """Load configuration from a file and make it the global one."""
    global _active
    _active = ConfigLoader(config_path, env_file)
    return _active.load()


def load_config_from_env(env_file: str = ".env") -> PhasekeeperConfig:
    """Locate, load and globally cache the configuration."""
    global _active
    _active = ConfigLoader(env_file=env_file)
    return _active.load_from_env()


def get_config() -> PhasekeeperConfig:
    """Return the global configuration.

    Raises:
        RuntimeError: If configuration not loaded
    """
    if _active is None or _active.config is None:
        raise RuntimeError(
            "Configuration not loaded. Call load_config() or load_config_from_env() first."
        )
    return _active.config


def reload_config() -> PhasekeeperConfig:
    """Reload the global configuration from its source.

    Raises:
        RuntimeError: If no configuration was previously loaded
    """
    if _active is None:
        raise RuntimeError("Cannot reload: no configuration loaded")
    return _active.reload()


def reset_config() -> None:
    """Forget the global configuration."""
    global _active
    _active = None


def create_default_config(state_dir: str | None = None) -> PhasekeeperConfig:
    """Build a configuration from defaults, optionally with another state dir."""
    if state_dir is None:
        return PhasekeeperConfig()
    return PhasekeeperConfig(storage=StorageConfig(state_dir=state_dir))
