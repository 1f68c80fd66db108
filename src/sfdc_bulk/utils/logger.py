# src/sfdc_bulk/utils/logger.py
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from sfdc_bulk.core.config import Settings, settings


def setup_logging(config: Optional[Settings] = None) -> logging.Logger:
    """
    Configures logging for the client.
    Logs to console and optionally to a rotating file.
    """
    config = config or settings
    log_level_name = config.LOG_LEVEL.upper()
    log_level = getattr(logging, log_level_name, logging.INFO)

    logger = logging.getLogger(config.APP_NAME)
    logger.setLevel(log_level)

    # Prevent duplicate handlers if called multiple times
    if logger.hasHandlers():
        logger.handlers.clear()

    log_formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(process)d - %(threadName)s - %(levelname)s - %(module)s.%(funcName)s:%(lineno)d - %(message)s"
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(log_formatter)
    logger.addHandler(console_handler)

    if config.LOG_FILENAME:
        try:
            file_handler = RotatingFileHandler(
                config.LOG_FILENAME,
                maxBytes=config.LOG_MAX_BYTES,
                backupCount=config.LOG_BACKUP_COUNT,
                encoding='utf-8'
            )
            file_handler.setFormatter(log_formatter)
            logger.addHandler(file_handler)
            logger.info(f"Logging to file: {config.LOG_FILENAME}")
        except OSError as e:
            logger.error(f"Failed to configure file logger for {config.LOG_FILENAME}: {e}", exc_info=True)

    # Quieting overly verbose libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger.info(f"Logging setup complete. Client log level set to: {log_level_name}")
    return logger
