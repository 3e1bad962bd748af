"""
Environment Handling.

Reads a .env file with python-dotenv before configuration is resolved,
so that PHASEKEEPER_* values kept there reach the config overrides and
the CLI's default workflow.
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

_dotenv_loaded: bool = False
_cached: "EnvironmentConfig | None" = None


def ensure_dotenv_loaded(env_file: str = ".env") -> bool:
    """Load env_file into os.environ once per process.

    Variables already set in the environment keep their values.

    Returns:
        False if this call found no file to load, True otherwise
    """
    global _dotenv_loaded

    if _dotenv_loaded:
        return True
    _dotenv_loaded = True

    path = Path(env_file)
    if not path.is_file():
        return False
    load_dotenv(path, override=False)
    return True


class EnvironmentConfig(BaseModel):
    """Settings read directly from the environment.

    Attributes:
        workflow_id: Workflow the CLI acts on when --workflow is omitted
        env_file: The .env file consulted
    """

    workflow_id: str | None = None
    env_file: str = ".env"

    @classmethod
    def from_environ(cls, env_file: str = ".env") -> "EnvironmentConfig":
        return cls(
            workflow_id=os.environ.get("PHASEKEEPER_WORKFLOW_ID") or None,
            env_file=env_file,
        )


def load_environment(env_file: str = ".env") -> EnvironmentConfig:
    """Load the .env file if needed and return the cached environment settings."""
    global _cached

    ensure_dotenv_loaded(env_file)
    if _cached is None or _cached.env_file != env_file:
        _cached = EnvironmentConfig.from_environ(env_file)
    return _cached


def reset_environment() -> None:
    """Forget cached settings so the next load re-reads .env and os.environ."""
    global _cached, _dotenv_loaded
    _cached = None
    _dotenv_loaded = False
