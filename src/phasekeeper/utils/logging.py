"""
Logging setup for command-line use.

Library modules only create loggers; handlers are installed here, once, by
the driver.
"""

import logging

from phasekeeper.config.models import LoggingConfig

ROOT_LOGGER = "phasekeeper"


def configure_logging(config: LoggingConfig | None = None, verbose: bool = False) -> None:
    """Install handlers and levels for the phasekeeper loggers.

    Args:
        config: Logging configuration (defaults apply when None)
        verbose: Force DEBUG level
    """
    config = config or LoggingConfig()
    level = logging.DEBUG if verbose else getattr(logging, config.level.value)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.file:
        handlers.append(logging.FileHandler(config.file, encoding="utf-8"))

    logging.basicConfig(
        level=logging.WARNING,
        format=config.format,
        handlers=handlers,
        force=True,
    )
    logging.getLogger(ROOT_LOGGER).setLevel(level)
