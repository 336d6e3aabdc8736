"""
Realtime analytics for the admin dashboard.

Subscribes to change notifications for service requests and clients,
recomputes the chart aggregates from full snapshots and publishes them as
one immutable unit.
"""

from .aggregator import (  # noqa: F401
    aggregate_client_growth,
    aggregate_requests,
    build_views,
    month_label,
)
from .config import DashboardConfig  # noqa: F401
from .controller import AggregateStore, AggregationController, ControllerState  # noqa: F401
from .errors import DashboardError, RecordSourceError, UnknownCollectionError  # noqa: F401
from .models import (  # noqa: F401
    AdminContext,
    AggregateViews,
    ChangeEvent,
    ClientRecord,
    LabelCount,
    ServiceRequest,
)
from .repository import (  # noqa: F401
    ChangeFeed,
    InMemoryRecordSource,
    RecordSource,
    SQLRecordSource,
    SubscriptionHandle,
    build_record_source_from_env,
)
from .sessions import SessionRegistry  # noqa: F401
