"""Logging setup shared by every harness module."""

import logging

from rich.logging import RichHandler

from .config import LOG_LEVEL

_NOISY_LOGGERS = ("libp2p", "multiaddr", "urllib3", "trio", "async_service")


def setup_logging(log_topic: str, level: str = LOG_LEVEL) -> logging.Logger:
    root = logging.getLogger()
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        logging.basicConfig(
            level="WARNING",
            format="%(message)s",
            handlers=[
                RichHandler(
                    rich_tracebacks=True,
                    show_time=True,
                    show_path=False,
                )
            ],
        )
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("interop").setLevel(level)
    return logging.getLogger(f"interop.{log_topic}")
