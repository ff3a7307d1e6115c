# services/logger_config.py
import logging
from logging.handlers import RotatingFileHandler
import os
from config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'

# Chatty third-party loggers that would drown out job and provider messages
NOISY_LOGGERS = ("chromadb", "httpx", "urllib3", "sentence_transformers", "aiosqlite")


def setup_logging():
    """
    Configure the application logger once at startup.
    Logs go to a rotating file under log/ and to the console.
    """
    logger = logging.getLogger(settings.LOGGER_NAME)

    # Avoid adding duplicate handlers if this function is called multiple times
    if logger.hasHandlers():
        logger.handlers.clear()

    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    try:
        log_dir = os.path.dirname(settings.LOG_FILE_PATH)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            settings.LOG_FILE_PATH,
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=5
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as e:
        print(f"Error setting up file logger: {e}")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(f"Logging configured at {logging.getLevelName(level)}")
