"""
Loguru sinks for recall runs.

Every module logs through ``get_logger(__name__)``, which tags records with
the module name. ``setup_logging`` installs the console sink and, when
enabled, a rotating file sink whose records are JSON so that metrics
reports can be grepped per conversation.
"""

import sys
from pathlib import Path

from loguru import logger

from story_recall.config import LoggingConfig

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <7}</level> | "
    "<cyan>{extra[module]}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {extra[module]}:{function}:{line} - {message}"


def _tag_module(record) -> bool:
    # Records logged through the bare loguru logger carry no module tag
    record["extra"].setdefault("module", record["name"])
    return True


def setup_logging(config: LoggingConfig | None = None, **overrides) -> Path | None:
    """
    Replace loguru's default sink with the recall sinks.

    Args:
        config: Logging settings; defaults to ``LoggingConfig()``
        **overrides: Field overrides applied on top of ``config``

    Returns:
        Directory holding the log files, or None when file logging is off
    """
    settings = (config or LoggingConfig()).model_copy(update=overrides)
    logger.remove()

    logger.add(
        sys.stderr,
        level=settings.level,
        format=CONSOLE_FORMAT,
        colorize=True,
        filter=_tag_module,
    )

    if not settings.log_to_file:
        return None

    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_dir / "story_recall_{time:YYYY-MM-DD}.log",
        level=settings.level,
        format=FILE_FORMAT,
        filter=_tag_module,
        rotation=settings.file_rotation,
        retention=settings.file_retention,
        compression=settings.compression,
        serialize=settings.serialize,
        enqueue=True,
    )
    return log_dir


def get_logger(name: str):
    """Logger bound to ``name``; pass ``__name__``."""
    return logger.bind(module=name)
