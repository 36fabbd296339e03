import logging
from logging.handlers import RotatingFileHandler
import os

# Log location is overridable so tests and containers can redirect output
# without touching the repository tree.
LOG_FILE = os.getenv("LOG_FILE", os.path.join("logs", "neuroliquid.log"))

# Substrings of records that add nothing but volume (websocket keepalives).
_NOISY_FRAGMENTS = ("Sending ping frame", "Received pong", "keepalive ping")


class _NoiseFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except Exception:
            return True
        return not any(fragment in message for fragment in _NOISY_FRAGMENTS)


_NOISE_FILTER = _NoiseFilter()


def setup_logger(name: str) -> logging.Logger:
    """Configure and return a module-level logger.

    Logs are written to both console and a rotating file. Subsequent calls
    with the same name return the already configured logger.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    directory = os.path.dirname(LOG_FILE)
    if directory:
        os.makedirs(directory, exist_ok=True)
    # Rotating file handler keeps last 5 logs of ~1MB each
    file_handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(_NOISE_FILTER)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(_NOISE_FILTER)
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)
    return logger


def read_logs(tail: int = 100) -> str:
    """Return the last ``tail`` lines from the log file.

    An empty string is returned when the log file does not exist yet. A
    non-positive ``tail`` returns the whole file.
    """
    if not os.path.exists(LOG_FILE):
        return ""
    with open(LOG_FILE, "r") as f:
        lines = f.readlines()
    if tail <= 0:
        return "".join(lines)
    return "".join(lines[-tail:])
