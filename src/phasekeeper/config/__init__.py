"""
Phasekeeper - Configuration Management

This module provides configuration management including:
- YAML configuration loading and validation
- Environment variable handling
- Workflow, checkpoint, monitor, coordinator and retry defaults
"""

from phasekeeper.config.environment import (
    EnvironmentConfig,
    ensure_dotenv_loaded,
    load_environment,
    reset_environment,
)
from phasekeeper.config.loader import (
    CONFIG_ENV_VAR,
    ENV_VAR_OVERRIDES,
    SEARCH_PATHS,
    ConfigLoader,
    ConfigurationError,
    create_default_config,
    get_config,
    load_config,
    load_config_from_env,
    reload_config,
    reset_config,
)
from phasekeeper.config.models import (
    CheckpointConfig,
    CoordinatorConfig,
    GateDefinition,
    LoggingConfig,
    LogLevel,
    MonitorConfig,
    PhasekeeperConfig,
    RetryConfig,
    RetryPolicyConfig,
    StorageConfig,
    WorkflowDefinition,
    default_workflows,
)

__all__ = [
    # Config models
    "CheckpointConfig",
    "CoordinatorConfig",
    "GateDefinition",
    "LogLevel",
    "LoggingConfig",
    "MonitorConfig",
    "PhasekeeperConfig",
    "RetryConfig",
    "RetryPolicyConfig",
    "StorageConfig",
    "WorkflowDefinition",
    "default_workflows",
    # Loader
    "ConfigLoader",
    "ConfigurationError",
    "load_config",
    "load_config_from_env",
    "get_config",
    "reload_config",
    "reset_config",
    "create_default_config",
    "CONFIG_ENV_VAR",
    "SEARCH_PATHS",
    "ENV_VAR_OVERRIDES",
    # Environment
    "EnvironmentConfig",
    "load_environment",
    "ensure_dotenv_loaded",
    "reset_environment",
]
