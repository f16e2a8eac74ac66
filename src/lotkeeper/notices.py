"""User-visible notices raised by the engine."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .models import utcnow

logger = logging.getLogger(__name__)


class NoticeLevel(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS = {
    NoticeLevel.SUCCESS: logging.INFO,
    NoticeLevel.INFO: logging.INFO,
    NoticeLevel.WARNING: logging.WARNING,
    NoticeLevel.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class Notice:
    level: NoticeLevel
    message: str
    created_at: datetime = field(default_factory=utcnow)


class NoticeBoard:
    """Collects notices for the presentation layer to display."""

    def __init__(self) -> None:
        self._notices: list[Notice] = []

    def post(self, level: NoticeLevel, message: str) -> Notice:
        notice = Notice(level=level, message=message)
        self._notices.append(notice)
        logger.log(_LOG_LEVELS[level], f"[{level.value}] {message}")
        return notice

    def success(self, message: str) -> Notice:
        return self.post(NoticeLevel.SUCCESS, message)

    def info(self, message: str) -> Notice:
        return self.post(NoticeLevel.INFO, message)

    def warning(self, message: str) -> Notice:
        return self.post(NoticeLevel.WARNING, message)

    def error(self, message: str) -> Notice:
        return self.post(NoticeLevel.ERROR, message)

    @property
    def notices(self) -> list[Notice]:
        return list(self._notices)

    def drain(self) -> list[Notice]:
        """Return and clear all pending notices."""
        pending, self._notices = self._notices, []
        return pending
