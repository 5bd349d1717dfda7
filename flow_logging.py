# flow_logging.py

import logging
import time

LOGGER_NAME = "FlowRunner"

# --- Logging Setup ---
logger = logging.getLogger(LOGGER_NAME)
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    logger.setLevel(logging.INFO)
logger.propagate = False # Prevent duplicate logs if root logger is configured


def get_logger(component: str) -> logging.Logger:
    """Child logger of the FlowRunner logger, e.g. 'FlowRunner.executor'."""
    return logger.getChild(component)


def configure_logging(debug: bool) -> None:
    """Configures the FlowRunner logger level based on the debug flag."""
    log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)
    for handler in logger.handlers:
        handler.setLevel(log_level)
    logger.info(f"FlowRunner logging level set to {logging.getLevelName(log_level)}")


def mask_headers(headers: dict) -> dict:
    """Copy of headers with credentials replaced, for debug output."""
    masked = {}
    for key, value in (headers or {}).items():
        if isinstance(value, str) and value and key.lower() in ('authorization', 'cookie', 'set-cookie'):
            masked[key] = '********'
        else:
            masked[key] = value
    return masked


def preview(value, limit: int = 200) -> str:
    text = repr(value)
    return f"{text[:limit]}{'...' if len(text) > limit else ''}"
