"""
Runtime configuration for the realtime dashboard backend.
"""

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel


class DashboardConfig(BaseModel):
    database_url: Optional[str] = None
    """SQLAlchemy URL of the hosted database; in-memory source when unset"""

    requests_table: str = "service_requests"
    clients_table: str = "clients"

    timezone: str = "UTC"
    """Timezone used to render month labels"""

    sort_snapshots: bool = True
    """Sort fetched records by creation time before grouping"""

    webhook_secret: Optional[str] = None
    """Shared secret expected in ``x-webhook-secret`` on change webhooks"""

    @classmethod
    def from_env(cls) -> "DashboardConfig":
        defaults = cls()
        return cls(
            database_url=os.getenv("DASHBOARD_DATABASE_URL", defaults.database_url),
            requests_table=os.getenv("DASHBOARD_REQUESTS_TABLE", defaults.requests_table),
            clients_table=os.getenv("DASHBOARD_CLIENTS_TABLE", defaults.clients_table),
            timezone=os.getenv("DASHBOARD_TIMEZONE", defaults.timezone),
            sort_snapshots=_env_bool("DASHBOARD_SORT_SNAPSHOTS", defaults.sort_snapshots),
            webhook_secret=os.getenv("DASHBOARD_WEBHOOK_SECRET", defaults.webhook_secret),
        )


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}
