"""Shared pytest fixtures for the dashboard analytics tests.

Fixture overview
----------------
sample_requests   — three requests across Jan/Feb 2024 (pending/done, CCTV/POS)
sample_clients    — two clients created in Jan 2024 and one in Feb 2024
admin_context     — admin session context for controller activation
source            — in-memory record source seeded with the samples
gated_source      — same data, but fetches block until ``gate`` is set
"""

from __future__ import annotations

import threading
from typing import List

import pytest

from backend.realtime_dashboard.errors import RecordSourceError
from backend.realtime_dashboard.models import (
    AdminContext,
    ClientRecord,
    ServiceRequest,
    client_from_mapping,
    request_from_mapping,
)
from backend.realtime_dashboard.repository import InMemoryRecordSource


class GatedRecordSource(InMemoryRecordSource):
    """
    In-memory source whose fetches wait on ``gate`` and can be made to fail.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = threading.Event()
        self.gate.set()
        self.fail = False
        self.fetches = 0
        self._count_lock = threading.Lock()

    def fetch_all(self, collection: str):
        with self._count_lock:
            self.fetches += 1
        if not self.gate.wait(timeout=5):
            raise RecordSourceError("gate was never released")
        if self.fail:
            raise RecordSourceError(f"connection refused while fetching {collection}")
        return super().fetch_all(collection)


# ── Records ──────────────────────────────────────────────────────────────────


@pytest.fixture
def sample_requests() -> List[ServiceRequest]:
    rows = [
        {"id": "r1", "status": "pending", "service_type": "CCTV", "created_at": "2024-01-05"},
        {"id": "r2", "status": "done", "service_type": "CCTV", "created_at": "2024-01-20"},
        {"id": "r3", "status": "pending", "service_type": "POS", "created_at": "2024-02-01"},
    ]
    return [request_from_mapping(row) for row in rows]


@pytest.fixture
def sample_clients() -> List[ClientRecord]:
    rows = [
        {"id": "c1", "company_name": "Acme Corp", "created_at": "2024-01-03T09:00:00Z"},
        {"id": "c2", "company_name": "TechStart Solutions", "created_at": "2024-01-28T16:45:00Z"},
        {"id": "c3", "company_name": "Retail Plus", "created_at": "2024-02-11T11:15:00Z"},
    ]
    return [client_from_mapping(row) for row in rows]


# ── Sessions / sources ───────────────────────────────────────────────────────


@pytest.fixture
def admin_context() -> AdminContext:
    return AdminContext(session_id="session-1", user_id="admin-1", is_admin=True)


@pytest.fixture
def source(sample_requests, sample_clients) -> InMemoryRecordSource:
    return InMemoryRecordSource(requests=sample_requests, clients=sample_clients)


@pytest.fixture
def gated_source(sample_requests, sample_clients) -> GatedRecordSource:
    return GatedRecordSource(requests=sample_requests, clients=sample_clients)
