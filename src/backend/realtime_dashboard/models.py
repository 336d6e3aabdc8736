from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union


REQUESTS = "requests"
CLIENTS = "clients"
COLLECTIONS = (REQUESTS, CLIENTS)

Timestamp = Union[datetime, date, str, int, float, None]


@dataclass(frozen=True)
class ServiceRequest:
    """
    Service request submitted through the public intake form.

    ``status`` and ``service_type`` are open-ended labels and are kept exactly
    as stored, including ``None``. ``created_at`` may be a ``datetime`` or the
    raw value returned by the backend (usually an ISO string).
    """

    id: str
    created_at: Timestamp
    status: Optional[str] = None
    service_type: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class ClientRecord:
    """
    Client row maintained through the admin CRUD forms.
    """

    id: str
    created_at: Timestamp
    company_name: Optional[str] = None
    contact_person: Optional[str] = None
    email: Optional[str] = None
    status: Optional[str] = None
    service_type: Optional[str] = None


@dataclass(frozen=True)
class LabelCount:
    label: Optional[str]
    count: int


@dataclass(frozen=True)
class ChangeEvent:
    collection: str
    event_type: str = "UPDATE"
    record_id: Optional[str] = None


@dataclass(frozen=True)
class AdminContext:
    """
    Session/role context handed to a controller on activation.

    Only ``is_admin`` gates aggregation; the ids are carried for logging and
    session bookkeeping.
    """

    session_id: str
    user_id: str
    is_admin: bool = False


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AggregateViews:
    """
    The four derived views, always published together.

    ``client_growth`` carries cumulative counts; every other view carries
    plain tallies.
    """

    monthly_requests: Tuple[LabelCount, ...] = ()
    status_distribution: Tuple[LabelCount, ...] = ()
    service_type_distribution: Tuple[LabelCount, ...] = ()
    client_growth: Tuple[LabelCount, ...] = ()
    computed_at: datetime = field(default_factory=_now, compare=False)

    @classmethod
    def empty(cls) -> "AggregateViews":
        return cls()

    @property
    def total_requests(self) -> int:
        return sum(item.count for item in self.status_distribution)

    @property
    def total_clients(self) -> int:
        if not self.client_growth:
            return 0
        return self.client_growth[-1].count

    def status_counts(self) -> Dict[Optional[str], int]:
        return _as_mapping(self.status_distribution)

    def service_type_counts(self) -> Dict[Optional[str], int]:
        return _as_mapping(self.service_type_distribution)

    def as_dict(self) -> Dict[str, Any]:
        """
        Convert the views into a JSON-serialisable structure for the charts.

        Labels stay ``None`` when the source field was empty so the frontend
        can decide how to present the missing group.
        """

        def _serialize(items: Iterable[LabelCount], value_key: str) -> list:
            return [{"label": item.label, value_key: item.count} for item in items]

        return {
            "monthlyRequests": _serialize(self.monthly_requests, "count"),
            "statusDistribution": _serialize(self.status_distribution, "count"),
            "serviceTypeDistribution": _serialize(self.service_type_distribution, "count"),
            "clientGrowth": _serialize(self.client_growth, "total"),
            "totals": {"requests": self.total_requests, "clients": self.total_clients},
            "computedAt": self.computed_at.isoformat(),
        }


def _as_mapping(items: Iterable[LabelCount]) -> Dict[Optional[str], int]:
    return {item.label: item.count for item in items}


def request_from_mapping(data: Mapping[str, Any]) -> ServiceRequest:
    return ServiceRequest(
        id=str(data.get("id", "")),
        created_at=data.get("created_at"),
        status=data.get("status"),
        service_type=data.get("service_type"),
        name=data.get("name"),
        email=data.get("email"),
        phone=data.get("phone"),
        message=data.get("message"),
    )


def client_from_mapping(data: Mapping[str, Any]) -> ClientRecord:
    return ClientRecord(
        id=str(data.get("id", "")),
        created_at=data.get("created_at"),
        company_name=data.get("company_name"),
        contact_person=data.get("contact_person"),
        email=data.get("email"),
        status=data.get("status"),
        service_type=data.get("service_type"),
    )
