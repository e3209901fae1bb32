"""Record shapes, closed value sets and seed data for the admin panel."""

from __future__ import annotations

import datetime as dt
import uuid
from enum import Enum
from typing import Any, Callable, Mapping

from .errors import ValidationError


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"


class PrincipalStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class DispensaryCategory(str, Enum):
    MEDICAL = "medical"
    RECREATIONAL = "recreational"
    BOTH = "both"


class DispensaryStatus(str, Enum):
    OPEN = "open"
    UNDER_MAINTENANCE = "under-maintenance"
    CLOSED = "closed"


class RequestStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    CASH = "cash"


class PaymentStatus(str, Enum):
    PROCESSED = "processed"
    FAILED = "failed"
    REFUNDED = "refunded"


class AgreementStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    EXPIRED = "expired"
    TERMINATED = "terminated"


class KnowledgeBaseCategory(str, Enum):
    SERVICES = "Services"
    CASE_STUDIES = "Case Studies"
    TESTIMONIALS = "Testimonials"


class EntryStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ThemeMode(str, Enum):
    LIGHT = "light"
    DARK = "dark"


# entity -> (required fields, enum-valued fields)
SCHEMAS: dict[str, tuple[tuple[str, ...], dict[str, type[Enum]]]] = {
    "user": (
        ("id", "name", "email", "role", "status", "createdAt"),
        {"role": Role, "status": PrincipalStatus},
    ),
    "dispensary": (
        ("id", "name", "address", "category", "status", "createdAt"),
        {"category": DispensaryCategory, "status": DispensaryStatus},
    ),
    "service_request": (
        ("id", "title", "description", "status", "priority", "createdAt", "dispensaryId"),
        {"status": RequestStatus, "priority": Priority},
    ),
    "invoice": (
        ("id", "dispensaryId", "amount", "dueDate", "status", "createdAt"),
        {"status": InvoiceStatus},
    ),
    "payment": (
        ("id", "dispensaryId", "invoiceId", "amount", "method", "status", "createdAt"),
        {"method": PaymentMethod, "status": PaymentStatus},
    ),
    "service_agreement": (
        ("id", "dispensaryId", "startDate", "endDate", "status", "createdAt"),
        {"status": AgreementStatus},
    ),
    "knowledge_base": (
        ("id", "title", "category", "description", "status", "createdAt"),
        {"category": KnowledgeBaseCategory, "status": EntryStatus},
    ),
}

TIMESTAMP_FIELDS = ("createdAt", "resolvedAt", "dueDate", "startDate", "endDate")

LABELS = {
    "user": "User",
    "engineer": "Support engineer",
    "dispensary": "Dispensary",
    "service_request": "Service request",
    "invoice": "Invoice",
    "payment": "Payment",
    "service_agreement": "Service agreement",
    "knowledge_base": "Knowledge base entry",
}


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def format_timestamp(moment: dt.datetime) -> str:
    """Render a timestamp the way the stored snapshots expect (UTC, ``Z`` suffix)."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt.timezone.utc)
    moment = moment.astimezone(dt.timezone.utc)
    return moment.isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> dt.datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    moment = dt.datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt.timezone.utc)
    return moment


def coerce_enum(enum_cls: type[Enum], value: Any, field: str) -> str:
    """Return the canonical string for ``value`` or raise ``ValidationError``."""

    try:
        return enum_cls(value).value
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field} {value!r}; expected one of: {allowed}") from None


def _check_timestamp(value: Any, field: str) -> None:
    if not isinstance(value, str):
        raise ValidationError(f"Invalid {field}: {value!r}")
    try:
        parse_timestamp(value)
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value!r}") from None


def _check_list(record: Mapping[str, Any], field: str) -> list:
    value = record.get(field)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{field} must be a list")
    return value


def check_record(entity: str, record: Mapping[str, Any]) -> dict:
    """Validate a record against its entity schema and return a plain dict copy."""

    required, enum_fields = SCHEMAS[entity]
    missing = [field for field in required if record.get(field) in (None, "")]
    if missing:
        raise ValidationError(f"{LABELS[entity]} is missing: {', '.join(missing)}")
    for field in required:
        if field != "amount" and not isinstance(record[field], str):
            raise ValidationError(f"{field} must be a string")
    for field in TIMESTAMP_FIELDS:
        if record.get(field) is not None:
            _check_timestamp(record[field], field)
    if entity == "dispensary" and not all(
        isinstance(engineer, str) for engineer in _check_list(record, "engineers")
    ):
        raise ValidationError("engineers must be principal ids")
    if entity == "invoice" and not all(
        isinstance(item, Mapping) for item in _check_list(record, "items")
    ):
        raise ValidationError("Invoice items must be objects")
    checked = dict(record)
    for field, enum_cls in enum_fields.items():
        checked[field] = coerce_enum(enum_cls, record[field], field)
    if "amount" in checked:
        amount = checked["amount"]
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount < 0:
            raise ValidationError("Amount must be a non-negative number")
    if entity == "service_request":
        has_resolved_at = bool(checked.get("resolvedAt"))
        if has_resolved_at != (checked["status"] == RequestStatus.RESOLVED.value):
            raise ValidationError("resolvedAt must be set exactly when a request is resolved")
        for note in _check_list(checked, "responseNotes"):
            if not isinstance(note, Mapping):
                raise ValidationError("Response notes must be objects")
            if not all(note.get(field) for field in ("id", "text", "createdAt", "createdBy")):
                raise ValidationError("Response notes need id, text, createdAt and createdBy")
            _check_timestamp(note["createdAt"], "createdAt")
    return checked


def validator_for(entity: str) -> Callable[[Mapping[str, Any]], bool]:
    """Predicate used when deserializing a slot; rejects unknown shapes."""

    def is_valid(record: Mapping[str, Any]) -> bool:
        if not isinstance(record, Mapping):
            return False
        try:
            check_record(entity, record)
        except Exception:
            return False
        return True

    return is_valid


# ----------------------------------------------------------------------
# Seed data
# ----------------------------------------------------------------------
def initial_users() -> list[dict]:
    return [
        {
            "id": "user-001",
            "name": "Admin User",
            "email": "admin@myerssecurity.com",
            "role": "admin",
            "status": "active",
            "createdAt": "2023-01-01T00:00:00Z",
        },
        {
            "id": "user-002",
            "name": "Manager User",
            "email": "manager@myerssecurity.com",
            "role": "manager",
            "status": "active",
            "createdAt": "2023-01-02T00:00:00Z",
        },
        {
            "id": "user-003",
            "name": "Regular User",
            "email": "user@myerssecurity.com",
            "role": "user",
            "status": "active",
            "createdAt": "2023-01-03T00:00:00Z",
        },
    ]


def initial_dispensaries() -> list[dict]:
    return [
        {
            "id": "disp-001",
            "name": "Green Leaf Dispensary",
            "address": "123 Main St, Anytown",
            "phone": "555-1234",
            "email": "info@greenleaf.com",
            "category": "medical",
            "status": "open",
            "engineers": [],
            "createdAt": "2023-02-15T00:00:00Z",
        },
        {
            "id": "disp-002",
            "name": "Herbal Wellness",
            "address": "456 Elm St, Anytown",
            "phone": "555-5678",
            "email": "contact@herbalwellness.com",
            "category": "recreational",
            "status": "closed",
            "engineers": [],
            "createdAt": "2023-03-01T00:00:00Z",
        },
        {
            "id": "disp-003",
            "name": "MediGreen",
            "address": "789 Oak St, Anytown",
            "phone": "555-9012",
            "email": "hello@medigreen.com",
            "category": "both",
            "status": "open",
            "engineers": [],
            "createdAt": "2023-03-15T00:00:00Z",
        },
    ]


def initial_service_requests() -> list[dict]:
    return [
        {
            "id": "sr-001",
            "title": "Security System Malfunction",
            "description": "Main entrance security camera is not recording properly.",
            "status": "pending",
            "priority": "high",
            "createdAt": "2023-04-15T08:30:00Z",
            "dispensaryId": "disp-001",
            "responseNotes": [],
        },
        {
            "id": "sr-002",
            "title": "Alarm System False Triggers",
            "description": "The alarm system has been triggering without apparent reason during closing hours.",
            "status": "in-progress",
            "priority": "medium",
            "createdAt": "2023-04-10T14:15:00Z",
            "dispensaryId": "disp-002",
            "responseNotes": [
                {
                    "id": "note-001",
                    "text": "Initial investigation shows sensor malfunction. Replacement ordered.",
                    "createdAt": "2023-04-11T09:22:00Z",
                    "createdBy": "user-002",
                }
            ],
        },
        {
            "id": "sr-003",
            "title": "Access Control Issue",
            "description": "Staff are having trouble with their access cards at the storage room door.",
            "status": "resolved",
            "priority": "low",
            "createdAt": "2023-04-05T11:45:00Z",
            "resolvedAt": "2023-04-07T16:30:00Z",
            "dispensaryId": "disp-003",
            "responseNotes": [
                {
                    "id": "note-002",
                    "text": "Reader was recalibrated and cards were reprogrammed successfully.",
                    "createdAt": "2023-04-06T13:40:00Z",
                    "createdBy": "user-003",
                },
                {
                    "id": "note-003",
                    "text": "Issue resolved, no further action needed.",
                    "createdAt": "2023-04-07T16:28:00Z",
                    "createdBy": "user-003",
                },
            ],
        },
        {
            "id": "sr-004",
            "title": "Emergency Exit Door Alarm",
            "description": "Emergency exit door alarm is not sounding when the door is opened",
            "status": "pending",
            "priority": "high",
            "createdAt": "2023-04-16T10:20:00Z",
            "dispensaryId": "disp-001",
            "responseNotes": [],
        },
        {
            "id": "sr-005",
            "title": "Security System Training Request",
            "description": "New staff members need training on the security systems",
            "status": "resolved",
            "priority": "medium",
            "createdAt": "2023-04-01T09:00:00Z",
            "resolvedAt": "2023-04-03T15:00:00Z",
            "dispensaryId": "disp-002",
            "responseNotes": [
                {
                    "id": "note-004",
                    "text": "Training session scheduled for April 3rd.",
                    "createdAt": "2023-04-01T15:10:00Z",
                    "createdBy": "user-002",
                },
                {
                    "id": "note-005",
                    "text": "Training completed successfully with 5 staff members.",
                    "createdAt": "2023-04-03T15:00:00Z",
                    "createdBy": "user-003",
                },
            ],
        },
    ]


def initial_invoices() -> list[dict]:
    return [
        {
            "id": "inv-001",
            "dispensaryId": "disp-001",
            "amount": 500.0,
            "dueDate": "2023-04-30T00:00:00Z",
            "status": "paid",
            "items": [],
            "createdAt": "2023-04-01T00:00:00Z",
        },
        {
            "id": "inv-002",
            "dispensaryId": "disp-002",
            "amount": 750.0,
            "dueDate": "2023-05-15T00:00:00Z",
            "status": "pending",
            "items": [],
            "createdAt": "2023-04-15T00:00:00Z",
        },
        {
            "id": "inv-003",
            "dispensaryId": "disp-003",
            "amount": 1000.0,
            "dueDate": "2023-05-31T00:00:00Z",
            "status": "paid",
            "items": [],
            "createdAt": "2023-05-01T00:00:00Z",
        },
    ]


def initial_payments() -> list[dict]:
    return [
        {
            "id": "pay-001",
            "dispensaryId": "disp-001",
            "invoiceId": "inv-001",
            "amount": 500.0,
            "method": "credit_card",
            "status": "processed",
            "createdAt": "2023-04-28T00:00:00Z",
        },
        {
            "id": "pay-002",
            "dispensaryId": "disp-003",
            "invoiceId": "inv-003",
            "amount": 1000.0,
            "method": "bank_transfer",
            "status": "processed",
            "createdAt": "2023-05-29T00:00:00Z",
        },
    ]


def initial_service_agreements() -> list[dict]:
    return [
        {
            "id": "sa-001",
            "dispensaryId": "disp-001",
            "startDate": "2023-01-01T00:00:00Z",
            "endDate": "2023-12-31T00:00:00Z",
            "terms": "Standard security services agreement.",
            "status": "active",
            "createdAt": "2023-01-01T00:00:00Z",
        },
        {
            "id": "sa-002",
            "dispensaryId": "disp-002",
            "startDate": "2023-02-01T00:00:00Z",
            "endDate": "2024-01-31T00:00:00Z",
            "terms": "Enhanced security services agreement.",
            "status": "active",
            "createdAt": "2023-02-01T00:00:00Z",
        },
        {
            "id": "sa-003",
            "dispensaryId": "disp-003",
            "startDate": "2023-03-01T00:00:00Z",
            "endDate": "2024-02-29T00:00:00Z",
            "terms": "Premium security services agreement.",
            "status": "active",
            "createdAt": "2023-03-01T00:00:00Z",
        },
    ]
