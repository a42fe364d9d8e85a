# Centralized logging configuration
import os
import logging
from logging.handlers import RotatingFileHandler

LOGGER_NAMES = ("wallet", "payments")

FILE_FORMAT = "%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]"
CONSOLE_FORMAT = "%(name)s - %(levelname)s - %(message)s"

app_logger = logging.getLogger("wallet")
payments_logger = logging.getLogger("payments")


def setup_logger(name, settings, log_file=None):
    """Attach a rotating file handler (and a console handler outside production) to a named logger.

    Handlers from an earlier call are replaced, so a service built with new
    settings logs where those settings say.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logger = logging.getLogger(name)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)

    os.makedirs(settings.log_dir, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_file or os.path.join(settings.log_dir, f"{name}.log"),
        maxBytes=1024 * 1024,
        backupCount=10
    )
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    file_handler.setLevel(level)
    logger.addHandler(file_handler)

    if not settings.is_production:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        logger.addHandler(console_handler)

    return logger


def configure_logging(settings):
    for name in LOGGER_NAMES:
        setup_logger(name, settings)
