from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Protocol

from supply_desk.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestChanged:
    request_id: int
    action: str
    status: str
    actor_staff_id: int | None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))


class ChangeSink(Protocol):
    def publish(self, event: RequestChanged) -> None: ...


class NullChangeSink:
    def publish(self, event: RequestChanged) -> None:
        return None


class LoggingChangeSink:
    def publish(self, event: RequestChanged) -> None:
        logger.info(
            'Supply request %s changed: %s -> %s (actor=%s)',
            event.request_id,
            event.action,
            event.status,
            event.actor_staff_id,
        )


def publish_safely(sink: ChangeSink, event: RequestChanged) -> None:
    try:
        sink.publish(event)
    except Exception:
        logger.exception('Change sink failed for supply request %s (%s)', event.request_id, event.action)


@lru_cache(maxsize=1)
def get_change_sink() -> ChangeSink:
    if settings.change_events_enabled:
        return LoggingChangeSink()
    return NullChangeSink()
