from __future__ import annotations


class DashboardError(Exception):
    """Base class for errors raised by the dashboard backend."""


class RecordSourceError(DashboardError):
    """A fetch or query against the record source failed."""


class UnknownCollectionError(RecordSourceError):
    def __init__(self, collection: str):
        super().__init__(f"Unknown record collection: {collection!r}")
        self.collection = collection
