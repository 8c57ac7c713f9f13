import os
import sys

from loguru import logger

from config.config_loader import get_project_dir, load_config

DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "{level:<8} | {extra[tag]} | {message}"
)

_logger_configured = False


def setup_logging():
    """Configure loguru from the `log` section of the config, once."""
    global _logger_configured
    if _logger_configured:
        return logger

    config = load_config()
    log_config = config.get("log", {})
    log_format = log_config.get("log_format", DEFAULT_FORMAT)
    log_level = log_config.get("log_level", "INFO")

    logger.remove()
    logger.configure(extra={"tag": "-"})
    logger.add(sys.stdout, format=log_format, level=log_level)

    log_file = log_config.get("log_file")
    if log_file:
        log_dir = os.path.join(get_project_dir(), log_config.get("log_dir", "tmp"))
        logger.add(
            os.path.join(log_dir, log_file),
            format=log_config.get("log_format_file", log_format),
            level=log_level,
            rotation=log_config.get("rotation", "10 MB"),
            retention=log_config.get("retention", "7 days"),
            encoding="utf-8",
            enqueue=True,
        )

    _logger_configured = True
    return logger
