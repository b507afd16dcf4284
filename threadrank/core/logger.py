"""Application logging: console plus rotating file, with credential masking."""

import logging
import logging.handlers
import re
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
LOG_DIR = PROJECT_ROOT / "logs"

LOGGER_NAME = "threadrank"
LOG_FILE = "threadrank.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"

MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3


class SensitiveDataFilter(logging.Filter):
    """Masks store URLs, bearer tokens and API keys before a record is emitted."""

    PATTERNS = (
        (re.compile(r'https?://[^\s]+'), '[URL_MASKED]'),
        (re.compile(r'(?i)bearer\s+[A-Za-z0-9._\-]+'), 'Bearer [TOKEN_MASKED]'),
        (re.compile(r'(?i)(apikey["\']?\s*[:=]\s*["\']?)[A-Za-z0-9._\-]+'), r'\1[KEY_MASKED]'),
    )

    @classmethod
    def mask(cls, text: str) -> str:
        for pattern, replacement in cls.PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.mask(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(self.mask(a) if isinstance(a, str) else a for a in record.args)
        return True


def _build_handlers(log_level: str, log_dir: Path) -> list[logging.Handler]:
    console = logging.StreamHandler()
    rotating = logging.handlers.RotatingFileHandler(
        log_dir / LOG_FILE,
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUPS,
        encoding="utf-8",
    )
    formatter = logging.Formatter(LOG_FORMAT)
    for handler in (console, rotating):
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
    return [console, rotating]


def setup_logger(log_level: str = "INFO", mask_logs: bool = True,
                 log_dir: Path = LOG_DIR) -> logging.Logger:
    """Configure the "threadrank" logger once at startup.

    Modules log through logging.getLogger("threadrank"). Calling this
    again after handlers exist returns the logger unchanged.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    log_dir.mkdir(parents=True, exist_ok=True)
    logger.setLevel(log_level)

    masking = SensitiveDataFilter() if mask_logs else None
    for handler in _build_handlers(log_level, log_dir):
        if masking is not None:
            handler.addFilter(masking)
        logger.addHandler(handler)

    return logger
