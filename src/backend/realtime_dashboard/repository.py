from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, Row
from sqlalchemy.exc import SQLAlchemyError

from .config import DashboardConfig
from .errors import RecordSourceError, UnknownCollectionError
from .models import (
    CLIENTS,
    COLLECTIONS,
    REQUESTS,
    ChangeEvent,
    ClientRecord,
    ServiceRequest,
    client_from_mapping,
    request_from_mapping,
)

logger = logging.getLogger(__name__)

Record = Union[ServiceRequest, ClientRecord]
ChangeCallback = Callable[[ChangeEvent], None]


@dataclass(frozen=True)
class SubscriptionHandle:
    id: int
    collection: str


def _check_collection(collection: str) -> None:
    if collection not in COLLECTIONS:
        raise UnknownCollectionError(collection)


class ChangeFeed:
    """
    In-process fan-out of change notifications, one channel per collection.

    Safe to use from several threads. Callbacks run on the publishing thread;
    a failing callback is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscribers: Dict[int, tuple] = {}

    def subscribe(self, collection: str, on_change: ChangeCallback) -> SubscriptionHandle:
        _check_collection(collection)
        with self._lock:
            handle = SubscriptionHandle(id=next(self._ids), collection=collection)
            self._subscribers[handle.id] = (collection, on_change)
        logger.debug("Opened %s subscription #%s", collection, handle.id)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        with self._lock:
            removed = self._subscribers.pop(handle.id, None)
        if removed is not None:
            logger.debug("Closed %s subscription #%s", handle.collection, handle.id)

    def publish(self, event: ChangeEvent) -> int:
        _check_collection(event.collection)
        with self._lock:
            callbacks = [callback for collection, callback in self._subscribers.values() if collection == event.collection]
        for callback in callbacks:
            try:
                callback(event)
            except Exception as exc:
                logger.warning("Change subscriber failed for %s: %s", event.collection, exc)
        return len(callbacks)

    def subscriber_count(self, collection: Optional[str] = None) -> int:
        with self._lock:
            if collection is None:
                return len(self._subscribers)
            return sum(1 for name, _ in self._subscribers.values() if name == collection)


class RecordSource:
    """
    Interface for the hosted backend that owns the two record collections.

    ``fetch_all`` returns the full collection ordered by creation time
    ascending and raises ``RecordSourceError`` on transport or query
    failures. ``unsubscribe`` must be idempotent.
    """

    def fetch_all(self, collection: str) -> Sequence[Record]:
        raise NotImplementedError

    def subscribe(self, collection: str, on_change: ChangeCallback) -> SubscriptionHandle:
        raise NotImplementedError

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        raise NotImplementedError


class FeedRecordSource(RecordSource):
    """Record source whose notifications are delivered through a ``ChangeFeed``."""

    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.feed = feed or ChangeFeed()

    def subscribe(self, collection: str, on_change: ChangeCallback) -> SubscriptionHandle:
        return self.feed.subscribe(collection, on_change)

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self.feed.unsubscribe(handle)


class InMemoryRecordSource(FeedRecordSource):
    """
    Keeps both collections in memory and notifies subscribers on every write.
    """

    def __init__(
        self,
        requests: Sequence[ServiceRequest] = (),
        clients: Sequence[ClientRecord] = (),
        feed: Optional[ChangeFeed] = None,
    ):
        super().__init__(feed)
        self._lock = threading.Lock()
        self._records: Dict[str, List[Record]] = {REQUESTS: list(requests), CLIENTS: list(clients)}

    def fetch_all(self, collection: str) -> Sequence[Record]:
        _check_collection(collection)
        with self._lock:
            return tuple(self._records[collection])

    def insert(self, collection: str, record: Record) -> None:
        _check_collection(collection)
        with self._lock:
            self._records[collection].append(record)
        self.feed.publish(ChangeEvent(collection=collection, event_type="INSERT", record_id=record.id))

    def update(self, collection: str, record_id: str, **changes) -> bool:
        _check_collection(collection)
        with self._lock:
            rows = self._records[collection]
            for index, record in enumerate(rows):
                if record.id == record_id:
                    rows[index] = replace(record, **changes)
                    break
            else:
                return False
        self.feed.publish(ChangeEvent(collection=collection, event_type="UPDATE", record_id=record_id))
        return True

    def delete(self, collection: str, record_id: str) -> bool:
        _check_collection(collection)
        with self._lock:
            rows = self._records[collection]
            remaining = [record for record in rows if record.id != record_id]
            if len(remaining) == len(rows):
                return False
            self._records[collection] = remaining
        self.feed.publish(ChangeEvent(collection=collection, event_type="DELETE", record_id=record_id))
        return True


class SQLRecordSource(FeedRecordSource):
    """
    Load requests/clients from the hosted relational database.

    Expected tables:
      - service_requests(id, created_at, status, service_type, name, email, phone, message)
      - clients(id, created_at, company_name, contact_person, email, status, service_type)

    The database has no change stream of its own here; row-change webhooks
    posted to the server are republished on ``feed``.
    """

    def __init__(
        self,
        engine: Engine,
        requests_table: str = "service_requests",
        clients_table: str = "clients",
        feed: Optional[ChangeFeed] = None,
    ):
        super().__init__(feed)
        self.engine = engine
        self.tables = {REQUESTS: requests_table, CLIENTS: clients_table}

    def fetch_all(self, collection: str) -> Sequence[Record]:
        _check_collection(collection)
        query = text(f"SELECT * FROM {self.tables[collection]} ORDER BY created_at ASC")
        try:
            with self.engine.connect() as connection:
                rows = connection.execute(query).fetchall()
        except SQLAlchemyError as exc:
            raise RecordSourceError(f"Failed to fetch {collection}: {exc}") from exc
        if collection == REQUESTS:
            return tuple(self._row_to_request(row) for row in rows)
        return tuple(self._row_to_client(row) for row in rows)

    @staticmethod
    def _row_to_request(row: Row) -> ServiceRequest:
        return request_from_mapping(row._mapping)

    @staticmethod
    def _row_to_client(row: Row) -> ClientRecord:
        return client_from_mapping(row._mapping)


def build_record_source_from_env(config: Optional[DashboardConfig] = None) -> Optional[FeedRecordSource]:
    cfg = config or DashboardConfig.from_env()
    if cfg.database_url:
        engine = create_engine(cfg.database_url)
        return SQLRecordSource(engine, requests_table=cfg.requests_table, clients_table=cfg.clients_table)
    return None
