"""
In-process change notifications for report datasets.
Observers (dashboards, metrics) subscribe; a failing observer never breaks a write.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatasetChangeEvent:
    uid: str
    account_id: str
    country_code: str
    period_start: datetime
    aggregation: str
    entity_type: str
    status: str
    refreshing: bool
    report_id: Optional[str]
    error: Optional[str]
    next_refresh_at: Optional[datetime]

    @classmethod
    def from_row(cls, row) -> "DatasetChangeEvent":
        return cls(
            uid=str(row.uid),
            account_id=row.account_id,
            country_code=row.country_code,
            period_start=row.period_start,
            aggregation=row.aggregation,
            entity_type=row.entity_type,
            status=row.status,
            refreshing=row.refreshing,
            report_id=row.report_id,
            error=row.error,
            next_refresh_at=row.next_refresh_at,
        )

    def to_dict(self) -> dict:
        return asdict(self)


Subscriber = Callable[[DatasetChangeEvent], None]


class DatasetEventBus:
    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register an observer. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, event: DatasetChangeEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Dataset change subscriber failed for {event.uid}")


dataset_events = DatasetEventBus()
