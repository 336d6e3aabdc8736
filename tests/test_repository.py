"""
Tests for the change feed and the record sources.
"""

from __future__ import annotations

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from backend.realtime_dashboard.config import DashboardConfig
from backend.realtime_dashboard.errors import RecordSourceError, UnknownCollectionError
from backend.realtime_dashboard.models import CLIENTS, REQUESTS, ChangeEvent, ClientRecord, ServiceRequest
from backend.realtime_dashboard.repository import (
    ChangeFeed,
    InMemoryRecordSource,
    SQLRecordSource,
    build_record_source_from_env,
)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    with engine.begin() as connection:
        connection.execute(
            text(
                """
                CREATE TABLE service_requests (
                    id TEXT PRIMARY KEY, created_at TEXT, status TEXT, service_type TEXT,
                    name TEXT, email TEXT, phone TEXT, message TEXT
                )
                """
            )
        )
        connection.execute(
            text(
                """
                CREATE TABLE clients (
                    id TEXT PRIMARY KEY, created_at TEXT, company_name TEXT, contact_person TEXT,
                    email TEXT, status TEXT, service_type TEXT
                )
                """
            )
        )
        connection.execute(
            text(
                "INSERT INTO service_requests (id, created_at, status, service_type, name) VALUES "
                "('r2', '2024-02-01T10:00:00+00:00', 'pending', 'POS', 'Bea'), "
                "('r1', '2024-01-05T09:00:00+00:00', 'done', 'CCTV', 'Ann')"
            )
        )
        connection.execute(
            text(
                "INSERT INTO clients (id, created_at, company_name) VALUES "
                "(1, '2024-01-03T09:00:00+00:00', 'Acme Corp')"
            )
        )
    yield engine
    engine.dispose()


class TestChangeFeed:
    def test_publish_reaches_only_matching_collection(self) -> None:
        feed = ChangeFeed()
        seen_requests, seen_clients = [], []
        feed.subscribe(REQUESTS, seen_requests.append)
        feed.subscribe(CLIENTS, seen_clients.append)

        event = ChangeEvent(collection=REQUESTS, event_type="INSERT", record_id="r9")
        assert feed.publish(event) == 1
        assert seen_requests == [event]
        assert seen_clients == []

    def test_failing_subscriber_does_not_block_others(self) -> None:
        feed = ChangeFeed()
        received = []

        def broken(_event):
            raise RuntimeError("boom")

        feed.subscribe(CLIENTS, broken)
        feed.subscribe(CLIENTS, received.append)

        assert feed.publish(ChangeEvent(collection=CLIENTS)) == 2
        assert len(received) == 1

    def test_unsubscribe_is_idempotent(self) -> None:
        feed = ChangeFeed()
        handle = feed.subscribe(REQUESTS, lambda event: None)

        feed.unsubscribe(handle)
        feed.unsubscribe(handle)
        assert feed.subscriber_count() == 0

    def test_unknown_collection(self) -> None:
        feed = ChangeFeed()
        with pytest.raises(UnknownCollectionError):
            feed.subscribe("services", lambda event: None)
        with pytest.raises(UnknownCollectionError):
            feed.publish(ChangeEvent(collection="services"))


class TestInMemoryRecordSource:
    def test_writes_notify_subscribers(self) -> None:
        source = InMemoryRecordSource()
        events = []
        source.subscribe(REQUESTS, events.append)

        source.insert(REQUESTS, ServiceRequest(id="r1", created_at="2024-01-01", status="pending"))
        assert source.update(REQUESTS, "r1", status="done") is True
        assert source.delete(REQUESTS, "r1") is True

        assert [event.event_type for event in events] == ["INSERT", "UPDATE", "DELETE"]
        assert source.fetch_all(REQUESTS) == ()

    def test_missing_record_is_not_announced(self) -> None:
        source = InMemoryRecordSource(clients=[ClientRecord(id="c1", created_at="2024-01-01")])
        events = []
        source.subscribe(CLIENTS, events.append)

        assert source.update(CLIENTS, "nope", status="inactive") is False
        assert source.delete(CLIENTS, "nope") is False
        assert events == []
        assert len(source.fetch_all(CLIENTS)) == 1

    def test_unknown_collection(self) -> None:
        with pytest.raises(UnknownCollectionError):
            InMemoryRecordSource().fetch_all("services")


class TestSQLRecordSource:
    def test_fetch_all_orders_by_creation(self, engine) -> None:
        source = SQLRecordSource(engine)
        requests = source.fetch_all(REQUESTS)

        assert [request.id for request in requests] == ["r1", "r2"]
        assert requests[0].status == "done"
        assert requests[0].name == "Ann"

    def test_client_ids_are_strings(self, engine) -> None:
        clients = SQLRecordSource(engine).fetch_all(CLIENTS)
        assert clients == (ClientRecord(id="1", created_at="2024-01-03T09:00:00+00:00", company_name="Acme Corp"),)

    def test_query_failure_raises_record_source_error(self, engine) -> None:
        source = SQLRecordSource(engine, clients_table="missing_clients")
        with pytest.raises(RecordSourceError):
            source.fetch_all(CLIENTS)


class TestBuildRecordSource:
    def test_without_url(self) -> None:
        assert build_record_source_from_env(DashboardConfig()) is None

    def test_with_url(self) -> None:
        source = build_record_source_from_env(DashboardConfig(database_url="sqlite://", clients_table="customers"))
        assert isinstance(source, SQLRecordSource)
        assert source.tables[CLIENTS] == "customers"

    def test_reads_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("DASHBOARD_DATABASE_URL", "sqlite://")
        monkeypatch.setenv("DASHBOARD_SORT_SNAPSHOTS", "off")
        monkeypatch.setenv("DASHBOARD_TIMEZONE", "Europe/Berlin")

        config = DashboardConfig.from_env()
        assert config.database_url == "sqlite://"
        assert config.sort_snapshots is False
        assert config.timezone == "Europe/Berlin"
        assert isinstance(build_record_source_from_env(), SQLRecordSource)
