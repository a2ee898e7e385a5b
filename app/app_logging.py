import logging
import sys

import app_config


def configure_logging() -> None:
    """Console-only logging setup, one stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, app_config.LOG_LEVEL.upper(), logging.INFO))

    formatter = logging.Formatter(app_config.LOG_FORMAT)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    # Remove any pre-existing handlers to avoid duplicates
    if root.hasHandlers():
        root.handlers.clear()

    root.addHandler(console_handler)
