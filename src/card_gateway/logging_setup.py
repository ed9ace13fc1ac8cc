from __future__ import annotations

import logging
from pathlib import Path

import colorlog

from .config import GatewayConfig

LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def configure_logging(config: GatewayConfig, level: int = logging.INFO) -> logging.Logger:
    """Log to ``config.log_file`` always, and to a coloured console in development."""

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    log_path = Path(config.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(file_handler)

    if config.is_development:
        console = colorlog.StreamHandler()
        console.setFormatter(
            colorlog.ColoredFormatter(
                "%(log_color)s" + LOG_FORMAT,
                datefmt=DATE_FORMAT,
                log_colors=LOG_COLORS,
            )
        )
        root.addHandler(console)

    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    return root
