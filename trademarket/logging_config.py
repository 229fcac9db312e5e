# trademarket/logging_config.py
import logging
import sys

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_configured = False


def configure_logging(level: str = "INFO") -> None:
    """Install a single stderr handler on the ``trademarket`` logger tree."""
    global _configured
    root = logging.getLogger("trademarket")
    root.setLevel(level.upper())
    if _configured:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    if not name.startswith("trademarket"):
        name = f"trademarket.{name}"
    return logging.getLogger(name)
