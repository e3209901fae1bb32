"""Core orchestration logic for the Myers Security admin panel."""

from __future__ import annotations

import datetime as dt
import logging
from collections import Counter
from typing import Any, Callable, Iterable, Mapping

from . import policy
from .database import SlotStorage
from .errors import AuthorizationError, NotFoundError, StorageError, ValidationError
from .records import (
    LABELS,
    AgreementStatus,
    DispensaryStatus,
    InvoiceStatus,
    PaymentStatus,
    PrincipalStatus,
    RequestStatus,
    Role,
    ThemeMode,
    check_record,
    coerce_enum,
    format_timestamp,
    initial_dispensaries,
    initial_invoices,
    initial_payments,
    initial_service_agreements,
    initial_service_requests,
    initial_users,
    new_id,
    parse_timestamp,
    utcnow,
    validator_for,
)
from .store import CollectionStore, all_of, field_matches, find_by_id, load_value, save_value, text_search

logger = logging.getLogger(__name__)

AUTH_KEY = "myers-admin-auth"
USERS_KEY = "myers-admin-users"
DISPENSARIES_KEY = "myers-admin-dispensaries"
SERVICE_REQUESTS_KEY = "myers-admin-service-requests"
INVOICES_KEY = "myers-admin-invoices"
PAYMENTS_KEY = "myers-admin-payments"
SERVICE_AGREEMENTS_KEY = "myers-admin-service-agreements"
KNOWLEDGE_BASE_KEY = "myers-admin-knowledge-base"
THEME_KEY = "myers-admin-theme"

REQUEST_TRANSITIONS: dict[str, frozenset[str]] = {
    RequestStatus.PENDING.value: frozenset(
        {RequestStatus.IN_PROGRESS.value, RequestStatus.RESOLVED.value}
    ),
    RequestStatus.IN_PROGRESS.value: frozenset({RequestStatus.RESOLVED.value}),
    RequestStatus.RESOLVED.value: frozenset(),
}

TERMINAL_AGREEMENT_STATUSES = frozenset(
    {AgreementStatus.EXPIRED.value, AgreementStatus.TERMINATED.value}
)

__all__ = [
    "AdminSystem",
    "AuthorizationError",
    "NotFoundError",
    "StorageError",
    "ValidationError",
    "transition_request",
]


def _newest_first(record: Mapping[str, Any]) -> dt.datetime:
    return parse_timestamp(record["createdAt"])


def _normalize_date(value: str | dt.date, field: str) -> str:
    if isinstance(value, dt.datetime):
        return format_timestamp(value)
    if isinstance(value, dt.date):
        return format_timestamp(dt.datetime.combine(value, dt.time()))
    try:
        return format_timestamp(parse_timestamp(str(value).strip()))
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value!r}") from None


def _required(value: str | None, message: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(message)
    return cleaned


def _changes(**fields: Any) -> dict[str, Any]:
    return {field: value for field, value in fields.items() if value is not None}


def transition_request(request: Mapping[str, Any], new_status: str, now: str) -> dict:
    """Return a copy of ``request`` moved to ``new_status``.

    Resolved is terminal. Entering resolved stamps ``resolvedAt``; entering
    in-progress leaves timestamps alone.
    """

    target = coerce_enum(RequestStatus, new_status, "status")
    current = request["status"]
    if target not in REQUEST_TRANSITIONS[current]:
        raise ValidationError(f"Cannot move a {current} request to {target}")
    updated = dict(request)
    updated["status"] = target
    if target == RequestStatus.RESOLVED.value:
        updated["resolvedAt"] = now
    return updated


class AdminSystem:
    """High level façade that exposes application level behaviours."""

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        seed_demo_data: bool = False,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self.slots = SlotStorage(db_path)
        self._clock = clock or utcnow

        def demo(factory: Callable[[], list[dict]]) -> Callable[[], list[dict]]:
            return factory if seed_demo_data else list

        self.users = CollectionStore(
            self.slots, USERS_KEY, initial_users, validator_for("user"), LABELS["user"]
        )
        self.dispensaries = CollectionStore(
            self.slots,
            DISPENSARIES_KEY,
            demo(initial_dispensaries),
            validator_for("dispensary"),
            LABELS["dispensary"],
        )
        self.service_requests = CollectionStore(
            self.slots,
            SERVICE_REQUESTS_KEY,
            demo(initial_service_requests),
            validator_for("service_request"),
            LABELS["service_request"],
        )
        self.invoices = CollectionStore(
            self.slots,
            INVOICES_KEY,
            demo(initial_invoices),
            validator_for("invoice"),
            LABELS["invoice"],
        )
        self.payments = CollectionStore(
            self.slots,
            PAYMENTS_KEY,
            demo(initial_payments),
            validator_for("payment"),
            LABELS["payment"],
        )
        self.service_agreements = CollectionStore(
            self.slots,
            SERVICE_AGREEMENTS_KEY,
            demo(initial_service_agreements),
            validator_for("service_agreement"),
            LABELS["service_agreement"],
        )
        self.knowledge_base = CollectionStore(
            self.slots,
            KNOWLEDGE_BASE_KEY,
            (),
            validator_for("knowledge_base"),
            LABELS["knowledge_base"],
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _now(self) -> str:
        return format_timestamp(self._clock())

    def _actor(self, actor_id: str | None) -> dict:
        actor = find_by_id(self.users.all(), actor_id) if actor_id else None
        if not actor or actor["status"] != PrincipalStatus.ACTIVE.value:
            raise AuthorizationError("You must be signed in to perform this action")
        return actor

    def _require(self, actor_id: str | None, entity: str, action: str) -> dict:
        actor = self._actor(actor_id)
        if not policy.can(actor["role"], entity, action):
            logger.warning(
                "Denied %s on %s for %s (%s)", action, entity, actor["id"], actor["role"]
            )
            raise AuthorizationError("You do not have permission to perform this action")
        return actor

    def _require_dispensary(self, dispensary_id: str | None) -> dict:
        dispensary = find_by_id(self.dispensaries.all(), dispensary_id) if dispensary_id else None
        if not dispensary:
            raise ValidationError("Please select a valid dispensary")
        return dispensary

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    def login(self, *, email: str) -> dict:
        """Mock sign-in: any active principal with a matching email is accepted."""

        wanted = (email or "").strip().lower()
        for user in self.users.all():
            if user["email"].lower() == wanted and user["status"] == PrincipalStatus.ACTIVE.value:
                save_value(self.slots, AUTH_KEY, {"isAuthenticated": True, "userId": user["id"]})
                logger.info("Principal %s signed in", user["id"])
                return user
        raise AuthorizationError("Invalid email or password")

    def logout(self) -> None:
        save_value(self.slots, AUTH_KEY, {"isAuthenticated": False, "userId": None})

    def principal_for(self, user_id: str | None) -> dict | None:
        """Return the active principal with ``user_id``, or None."""

        if not user_id:
            return None
        user = find_by_id(self.users.all(), user_id)
        if not user or user["status"] != PrincipalStatus.ACTIVE.value:
            return None
        return user

    def current_principal(self) -> dict | None:
        state = load_value(self.slots, AUTH_KEY)
        if not state.get("isAuthenticated") or not state.get("userId"):
            return None
        return self.principal_for(state["userId"])

    # ------------------------------------------------------------------
    # Users & support engineers
    # ------------------------------------------------------------------
    def list_users(
        self,
        *,
        actor_id: str,
        search: str | None = None,
        role: str | None = None,
        status: str | None = None,
    ) -> list[dict]:
        self._require(actor_id, "user", "view")
        return self.users.query(
            all_of(text_search(search, "name", "email"), field_matches(role=role, status=status))
        )

    def list_engineers(self, *, actor_id: str, search: str | None = None) -> list[dict]:
        """Support engineers are principals holding the plain ``user`` role."""

        self._require(actor_id, "engineer", "view")
        return self.users.query(
            all_of(text_search(search, "name", "email"), field_matches(role=Role.USER.value))
        )

    def get_user(self, user_id: str) -> dict:
        return self.users.get(user_id)

    def _email_taken(self, email: str, *, exclude_id: str | None = None) -> bool:
        wanted = email.lower()
        return any(
            user["email"].lower() == wanted and user["id"] != exclude_id
            for user in self.users.all()
        )

    def _create_principal(
        self, actor: dict, *, name: str, email: str, role: str, status: str
    ) -> dict:
        name = _required(name, "Name is required")
        email = _required(email, "Email is required").lower()
        if "@" not in email:
            raise ValidationError("Please enter a valid email address")
        role = coerce_enum(Role, role, "role")
        status = coerce_enum(PrincipalStatus, status, "status")
        if not policy.may_grant_role(actor["role"], role):
            raise AuthorizationError("Only administrators can grant the admin role")
        if self._email_taken(email):
            raise ValidationError("A user with this email already exists")
        record = check_record(
            "user",
            {
                "id": new_id(),
                "name": name,
                "email": email,
                "role": role,
                "status": status,
                "createdAt": self._now(),
            },
        )
        self.users.upsert(record)
        logger.info("Principal %s created by %s", record["id"], actor["id"])
        return record

    def add_user(
        self,
        *,
        actor_id: str,
        name: str,
        email: str,
        role: str = Role.USER.value,
        status: str = PrincipalStatus.ACTIVE.value,
    ) -> dict:
        actor = self._require(actor_id, "user", "add")
        return self._create_principal(actor, name=name, email=email, role=role, status=status)

    def add_engineer(
        self,
        *,
        actor_id: str,
        name: str,
        email: str,
        status: str = PrincipalStatus.ACTIVE.value,
    ) -> dict:
        actor = self._require(actor_id, "engineer", "add")
        return self._create_principal(
            actor, name=name, email=email, role=Role.USER.value, status=status
        )

    def update_user(
        self,
        *,
        actor_id: str,
        user_id: str,
        name: str | None = None,
        email: str | None = None,
        role: str | None = None,
        status: str | None = None,
    ) -> dict:
        actor = self._require(actor_id, "user", "edit")
        target = self.users.get(user_id)
        updated = dict(target)
        if name is not None:
            updated["name"] = _required(name, "Name is required")
        if email is not None:
            updated["email"] = _required(email, "Email is required").lower()
            if "@" not in updated["email"]:
                raise ValidationError("Please enter a valid email address")
            if self._email_taken(updated["email"], exclude_id=user_id):
                raise ValidationError("Another user with this email already exists")
        if role is not None:
            updated["role"] = coerce_enum(Role, role, "role")
        if status is not None:
            updated["status"] = coerce_enum(PrincipalStatus, status, "status")
        role_changed = updated["role"] != target["role"]
        status_changed = updated["status"] != target["status"]
        if role_changed or status_changed:
            if policy.is_self_target(actor["id"], target):
                what = "role" if role_changed else "status"
                raise AuthorizationError(f"You cannot change your own {what}")
            if not policy.may_change_role_or_status(actor, target):
                raise AuthorizationError("You do not have permission to perform this action")
        if role_changed and not (
            policy.may_grant_role(actor["role"], updated["role"])
            and policy.may_grant_role(actor["role"], target["role"])
        ):
            raise AuthorizationError("Only administrators can grant or revoke the admin role")
        record = check_record("user", updated)
        self.users.upsert(record)
        logger.info("Principal %s updated by %s", user_id, actor["id"])
        return record

    def delete_user(self, *, actor_id: str, user_id: str) -> None:
        actor = self._require(actor_id, "user", "delete")
        if user_id == actor["id"]:
            raise AuthorizationError("You cannot delete your own account")
        self.users.get(user_id)
        self.users.remove(user_id)
        logger.info("Principal %s deleted by %s", user_id, actor["id"])

    # ------------------------------------------------------------------
    # Dispensaries
    # ------------------------------------------------------------------
    def list_dispensaries(
        self,
        *,
        actor_id: str,
        search: str | None = None,
        category: str | None = None,
        status: str | None = None,
    ) -> list[dict]:
        self._require(actor_id, "dispensary", "view")
        return self.dispensaries.query(
            all_of(
                text_search(search, "name", "address"),
                field_matches(category=category, status=status),
            )
        )

    def get_dispensary(self, dispensary_id: str) -> dict:
        return self.dispensaries.get(dispensary_id)

    def add_dispensary(
        self,
        *,
        actor_id: str,
        name: str,
        address: str,
        category: str = "medical",
        status: str = DispensaryStatus.OPEN.value,
        phone: str | None = None,
        email: str | None = None,
    ) -> dict:
        actor = self._require(actor_id, "dispensary", "add")
        record = check_record(
            "dispensary",
            {
                "id": new_id(),
                "name": _required(name, "Dispensary name is required"),
                "address": _required(address, "Address is required"),
                "category": category,
                "status": status,
                "phone": phone,
                "email": email,
                "engineers": [],
                "createdAt": self._now(),
            },
        )
        self.dispensaries.upsert(record)
        logger.info("Dispensary %s created by %s", record["id"], actor["id"])
        return record

    def update_dispensary(
        self,
        *,
        actor_id: str,
        dispensary_id: str,
        name: str | None = None,
        address: str | None = None,
        category: str | None = None,
        status: str | None = None,
        phone: str | None = None,
        email: str | None = None,
    ) -> dict:
        actor = self._require(actor_id, "dispensary", "edit")
        updated = dict(self.dispensaries.get(dispensary_id))
        updated.update(
            _changes(
                name=name, address=address, category=category, status=status, phone=phone, email=email
            )
        )
        record = check_record("dispensary", updated)
        self.dispensaries.upsert(record)
        logger.info("Dispensary %s updated by %s", dispensary_id, actor["id"])
        return record

    def delete_dispensary(self, *, actor_id: str, dispensary_id: str) -> None:
        """Remove a dispensary and the service requests filed against it."""

        actor = self._require(actor_id, "dispensary", "delete")
        self.dispensaries.get(dispensary_id)
        self.service_requests.mutate(
            lambda items: [item for item in items if item["dispensaryId"] != dispensary_id]
        )
        self.dispensaries.remove(dispensary_id)
        logger.info("Dispensary %s deleted by %s", dispensary_id, actor["id"])

    def assign_engineer(self, *, actor_id: str, dispensary_id: str, engineer_id: str) -> dict:
        self._require(actor_id, "dispensary", "edit")
        engineer = find_by_id(self.users.all(), engineer_id)
        if not engineer or engineer["role"] != Role.USER.value:
            raise ValidationError("Please select a valid support engineer")
        dispensary = dict(self.dispensaries.get(dispensary_id))
        engineers = list(dispensary.get("engineers") or [])
        if engineer_id not in engineers:
            engineers.append(engineer_id)
        dispensary["engineers"] = engineers
        return self.dispensaries.upsert(dispensary)

    def unassign_engineer(self, *, actor_id: str, dispensary_id: str, engineer_id: str) -> dict:
        self._require(actor_id, "dispensary", "edit")
        dispensary = dict(self.dispensaries.get(dispensary_id))
        dispensary["engineers"] = [
            assigned for assigned in dispensary.get("engineers") or [] if assigned != engineer_id
        ]
        return self.dispensaries.upsert(dispensary)

    # ------------------------------------------------------------------
    # Service requests
    # ------------------------------------------------------------------
    def list_service_requests(
        self,
        *,
        actor_id: str,
        search: str | None = None,
        status: str | None = None,
        priority: str | None = None,
        dispensary_id: str | None = None,
    ) -> list[dict]:
        """Return matching requests, newest first."""

        self._require(actor_id, "service_request", "view")
        return self.service_requests.query(
            all_of(
                text_search(search, "title", "description"),
                field_matches(status=status, priority=priority, dispensaryId=dispensary_id),
            ),
            sort_key=_newest_first,
            reverse=True,
        )

    def get_service_request(self, request_id: str) -> dict:
        return self.service_requests.get(request_id)

    def add_service_request(
        self,
        *,
        actor_id: str,
        dispensary_id: str,
        title: str,
        description: str,
        priority: str = "medium",
    ) -> dict:
        actor = self._require(actor_id, "service_request", "add")
        self._require_dispensary(dispensary_id)
        record = check_record(
            "service_request",
            {
                "id": new_id(),
                "title": _required(title, "Title is required"),
                "description": _required(description, "Description is required"),
                "status": RequestStatus.PENDING.value,
                "priority": priority,
                "createdAt": self._now(),
                "dispensaryId": dispensary_id,
                "responseNotes": [],
            },
        )
        self.service_requests.upsert(record)
        logger.info("Service request %s filed by %s", record["id"], actor["id"])
        return record

    def add_response_note(self, *, actor_id: str, request_id: str, text: str) -> dict:
        """Append a note; a pending request moves to in-progress as a result."""

        actor = self._require(actor_id, "service_request", "respond")
        text = _required(text, "Response text is required")
        request = self.service_requests.get(request_id)
        if request["status"] == RequestStatus.RESOLVED.value:
            raise ValidationError("Resolved requests cannot receive new responses")
        now = self._now()
        updated = dict(request)
        updated["responseNotes"] = list(request.get("responseNotes") or []) + [
            {"id": new_id(), "text": text, "createdAt": now, "createdBy": actor["id"]}
        ]
        if request["status"] == RequestStatus.PENDING.value:
            updated = transition_request(updated, RequestStatus.IN_PROGRESS.value, now)
        record = check_record("service_request", updated)
        self.service_requests.upsert(record)
        logger.info("Response added to service request %s by %s", request_id, actor["id"])
        return record

    def update_service_request_status(
        self, *, actor_id: str, request_id: str, status: str
    ) -> dict:
        actor = self._require(actor_id, "service_request", "update_status")
        request = self.service_requests.get(request_id)
        record = check_record("service_request", transition_request(request, status, self._now()))
        self.service_requests.upsert(record)
        logger.info(
            "Service request %s moved to %s by %s", request_id, record["status"], actor["id"]
        )
        return record

    def delete_service_request(self, *, actor_id: str, request_id: str) -> None:
        self._require(actor_id, "service_request", "delete")
        self.service_requests.get(request_id)
        self.service_requests.remove(request_id)

    # ------------------------------------------------------------------
    # Invoices & payments
    # ------------------------------------------------------------------
    def list_invoices(
        self,
        *,
        actor_id: str,
        dispensary_id: str | None = None,
        status: str | None = None,
    ) -> list[dict]:
        self._require(actor_id, "invoice", "view")
        return self.invoices.query(
            field_matches(dispensaryId=dispensary_id, status=status),
            sort_key=_newest_first,
            reverse=True,
        )

    def get_invoice(self, invoice_id: str) -> dict:
        return self.invoices.get(invoice_id)

    def add_invoice(
        self,
        *,
        actor_id: str,
        dispensary_id: str,
        due_date: str | dt.date,
        amount: float | None = None,
        items: Iterable[Mapping[str, Any]] | None = None,
    ) -> dict:
        """Raise an invoice; when line items are given the amount is their total."""

        actor = self._require(actor_id, "invoice", "add")
        self._require_dispensary(dispensary_id)
        line_items = []
        for item in items or []:
            quantity = int(item.get("quantity", 1))
            unit_price = float(item.get("unitPrice", 0))
            if quantity <= 0 or unit_price < 0:
                raise ValidationError("Line items need a positive quantity and price")
            line_items.append(
                {
                    "description": _required(item.get("description"), "Line items need a description"),
                    "quantity": quantity,
                    "unitPrice": round(unit_price, 2),
                }
            )
        if line_items:
            amount = sum(item["quantity"] * item["unitPrice"] for item in line_items)
        if amount is None:
            raise ValidationError("Invoice amount is required")
        record = check_record(
            "invoice",
            {
                "id": new_id(),
                "dispensaryId": dispensary_id,
                "amount": round(float(amount), 2),
                "dueDate": _normalize_date(due_date, "due date"),
                "status": InvoiceStatus.PENDING.value,
                "items": line_items,
                "createdAt": self._now(),
            },
        )
        self.invoices.upsert(record)
        logger.info("Invoice %s raised by %s", record["id"], actor["id"])
        return record

    def update_invoice_status(self, *, actor_id: str, invoice_id: str, status: str) -> dict:
        self._require(actor_id, "invoice", "edit")
        updated = dict(self.invoices.get(invoice_id))
        updated["status"] = coerce_enum(InvoiceStatus, status, "status")
        return self.invoices.upsert(check_record("invoice", updated))

    def mark_overdue_invoices(self, *, actor_id: str, today: dt.date | None = None) -> list[dict]:
        """Flag pending invoices whose due date has passed. Returns the flagged invoices."""

        self._require(actor_id, "invoice", "edit")
        cutoff = today or self._clock().date()
        flagged: list[dict] = []

        def flag(items: list[dict]) -> list[dict]:
            result = []
            for invoice in items:
                if (
                    invoice["status"] == InvoiceStatus.PENDING.value
                    and parse_timestamp(invoice["dueDate"]).date() < cutoff
                ):
                    invoice = dict(invoice, status=InvoiceStatus.OVERDUE.value)
                    flagged.append(invoice)
                result.append(invoice)
            return result

        self.invoices.mutate(flag)
        if flagged:
            logger.info("Marked %d invoice(s) overdue", len(flagged))
        return flagged

    def delete_invoice(self, *, actor_id: str, invoice_id: str) -> None:
        self._require(actor_id, "invoice", "delete")
        self.invoices.get(invoice_id)
        self.invoices.remove(invoice_id)

    def list_payments(
        self,
        *,
        actor_id: str,
        invoice_id: str | None = None,
        dispensary_id: str | None = None,
    ) -> list[dict]:
        self._require(actor_id, "payment", "view")
        return self.payments.query(
            field_matches(invoiceId=invoice_id, dispensaryId=dispensary_id),
            sort_key=_newest_first,
            reverse=True,
        )

    def _amount_paid(self, invoice_id: str) -> float:
        return round(
            sum(
                payment["amount"]
                for payment in self.payments.all()
                if payment["invoiceId"] == invoice_id
                and payment["status"] == PaymentStatus.PROCESSED.value
            ),
            2,
        )

    def record_payment(
        self,
        *,
        actor_id: str,
        invoice_id: str,
        amount: float,
        method: str,
        status: str = PaymentStatus.PROCESSED.value,
    ) -> dict:
        """Record a payment; once processed payments cover the invoice it is marked paid."""

        actor = self._require(actor_id, "payment", "add")
        invoice = self.invoices.get(invoice_id)
        if amount is None or amount <= 0:
            raise ValidationError("Payment amount must be greater than zero")
        record = check_record(
            "payment",
            {
                "id": new_id(),
                "dispensaryId": invoice["dispensaryId"],
                "invoiceId": invoice_id,
                "amount": round(float(amount), 2),
                "method": method,
                "status": status,
                "createdAt": self._now(),
            },
        )
        self.payments.upsert(record)
        if (
            invoice["status"] != InvoiceStatus.PAID.value
            and self._amount_paid(invoice_id) >= invoice["amount"]
        ):
            self.invoices.upsert(dict(invoice, status=InvoiceStatus.PAID.value))
        logger.info("Payment %s recorded against %s by %s", record["id"], invoice_id, actor["id"])
        return record

    def refund_payment(self, *, actor_id: str, payment_id: str) -> dict:
        """Refund a processed payment, re-opening its invoice if no longer covered."""

        self._require(actor_id, "payment", "edit")
        payment = self.payments.get(payment_id)
        if payment["status"] != PaymentStatus.PROCESSED.value:
            raise ValidationError("Only processed payments can be refunded")
        refunded = self.payments.upsert(dict(payment, status=PaymentStatus.REFUNDED.value))
        invoice = find_by_id(self.invoices.all(), payment["invoiceId"])
        if (
            invoice
            and invoice["status"] == InvoiceStatus.PAID.value
            and self._amount_paid(invoice["id"]) < invoice["amount"]
        ):
            self.invoices.upsert(dict(invoice, status=InvoiceStatus.PENDING.value))
        return refunded

    # ------------------------------------------------------------------
    # Service agreements
    # ------------------------------------------------------------------
    def list_service_agreements(
        self,
        *,
        actor_id: str,
        dispensary_id: str | None = None,
        status: str | None = None,
    ) -> list[dict]:
        self._require(actor_id, "service_agreement", "view")
        return self.service_agreements.query(
            field_matches(dispensaryId=dispensary_id, status=status),
            sort_key=_newest_first,
            reverse=True,
        )

    def add_service_agreement(
        self,
        *,
        actor_id: str,
        dispensary_id: str,
        start_date: str | dt.date,
        end_date: str | dt.date,
        terms: str = "",
        status: str = AgreementStatus.PENDING.value,
    ) -> dict:
        self._require(actor_id, "service_agreement", "add")
        self._require_dispensary(dispensary_id)
        start = _normalize_date(start_date, "start date")
        end = _normalize_date(end_date, "end date")
        if parse_timestamp(end) <= parse_timestamp(start):
            raise ValidationError("End date must be after the start date")
        record = check_record(
            "service_agreement",
            {
                "id": new_id(),
                "dispensaryId": dispensary_id,
                "startDate": start,
                "endDate": end,
                "terms": (terms or "").strip(),
                "status": status,
                "createdAt": self._now(),
            },
        )
        return self.service_agreements.upsert(record)

    def update_service_agreement_status(
        self, *, actor_id: str, agreement_id: str, status: str
    ) -> dict:
        self._require(actor_id, "service_agreement", "edit")
        agreement = self.service_agreements.get(agreement_id)
        target = coerce_enum(AgreementStatus, status, "status")
        if agreement["status"] in TERMINAL_AGREEMENT_STATUSES:
            raise ValidationError(f"A {agreement['status']} agreement cannot change status")
        return self.service_agreements.upsert(dict(agreement, status=target))

    def delete_service_agreement(self, *, actor_id: str, agreement_id: str) -> None:
        self._require(actor_id, "service_agreement", "delete")
        self.service_agreements.get(agreement_id)
        self.service_agreements.remove(agreement_id)

    # ------------------------------------------------------------------
    # Knowledge base
    # ------------------------------------------------------------------
    def list_knowledge_base(
        self,
        *,
        actor_id: str,
        search: str | None = None,
        category: str | None = None,
        status: str | None = None,
    ) -> list[dict]:
        self._require(actor_id, "knowledge_base", "view")
        return self.knowledge_base.query(
            all_of(
                text_search(search, "title", "description"),
                field_matches(category=category, status=status),
            )
        )

    def get_knowledge_base_entry(self, entry_id: str) -> dict:
        return self.knowledge_base.get(entry_id)

    def add_knowledge_base_entry(
        self,
        *,
        actor_id: str,
        title: str,
        description: str,
        category: str = "Services",
        status: str = "active",
        video_url: str | None = None,
        blog_url: str | None = None,
        file_url: str | None = None,
    ) -> dict:
        actor = self._require(actor_id, "knowledge_base", "add")
        if not (title or "").strip() or not (description or "").strip():
            raise ValidationError("Please fill in all required fields")
        record = {
            "id": new_id(),
            "title": title.strip(),
            "category": category,
            "description": description.strip(),
            "status": status,
            "createdAt": self._now(),
        }
        record.update(
            _changes(videoUrl=video_url or None, blogUrl=blog_url or None, fileUrl=file_url or None)
        )
        record = check_record("knowledge_base", record)
        self.knowledge_base.upsert(record)
        logger.info("Knowledge base entry %s created by %s", record["id"], actor["id"])
        return record

    def update_knowledge_base_entry(
        self,
        *,
        actor_id: str,
        entry_id: str,
        title: str | None = None,
        description: str | None = None,
        category: str | None = None,
        status: str | None = None,
        video_url: str | None = None,
        blog_url: str | None = None,
        file_url: str | None = None,
    ) -> dict:
        self._require(actor_id, "knowledge_base", "edit")
        updated = dict(self.knowledge_base.get(entry_id))
        updated.update(_changes(title=title, description=description, category=category, status=status))
        for field, value in (("videoUrl", video_url), ("blogUrl", blog_url), ("fileUrl", file_url)):
            if value == "":
                updated.pop(field, None)
            elif value is not None:
                updated[field] = value
        if not str(updated["title"]).strip() or not str(updated["description"]).strip():
            raise ValidationError("Please fill in all required fields")
        return self.knowledge_base.upsert(check_record("knowledge_base", updated))

    def delete_knowledge_base_entry(self, *, actor_id: str, entry_id: str) -> None:
        self._require(actor_id, "knowledge_base", "delete")
        self.knowledge_base.get(entry_id)
        self.knowledge_base.remove(entry_id)

    # ------------------------------------------------------------------
    # Dashboard & preferences
    # ------------------------------------------------------------------
    def dashboard_summary(self, *, today: dt.date | None = None) -> dict:
        today = today or self._clock().date()
        users = self.users.all()
        requests = self.service_requests.all()
        request_days = Counter(parse_timestamp(item["createdAt"]).date() for item in requests)
        last_7_days = [today - dt.timedelta(days=offset) for offset in range(6, -1, -1)]
        return {
            "total_users": len(users),
            "active_users": sum(1 for user in users if user["status"] == PrincipalStatus.ACTIVE.value),
            "total_dispensaries": len(self.dispensaries.all()),
            "dispensaries_by_status": {
                status.value: sum(
                    1 for item in self.dispensaries.all() if item["status"] == status.value
                )
                for status in DispensaryStatus
            },
            "requests_by_status": {
                status.value: sum(1 for item in requests if item["status"] == status.value)
                for status in RequestStatus
            },
            "requests_last_7_days": [
                {"date": day.isoformat(), "count": request_days.get(day, 0)} for day in last_7_days
            ],
            "outstanding_invoice_total": round(
                sum(
                    invoice["amount"]
                    for invoice in self.invoices.all()
                    if invoice["status"] != InvoiceStatus.PAID.value
                ),
                2,
            ),
        }

    def seed_defaults(self) -> dict[str, int]:
        """Fill empty collections with the demo data set. Returns records added per slot."""

        seeds = (
            (self.users, initial_users),
            (self.dispensaries, initial_dispensaries),
            (self.service_requests, initial_service_requests),
            (self.invoices, initial_invoices),
            (self.payments, initial_payments),
            (self.service_agreements, initial_service_agreements),
        )
        added = {}
        for store, factory in seeds:
            if store.all():
                added[store.key] = 0
                continue
            added[store.key] = len(store.replace(factory()))
        logger.info("Seeded demo data: %s", added)
        return added

    def get_theme(self) -> str:
        mode = load_value(self.slots, THEME_KEY).get("mode", ThemeMode.LIGHT.value)
        try:
            return ThemeMode(mode).value
        except ValueError:
            return ThemeMode.LIGHT.value

    def set_theme(self, mode: str) -> str:
        mode = coerce_enum(ThemeMode, mode, "theme")
        save_value(self.slots, THEME_KEY, {"mode": mode})
        return mode

    def close(self) -> None:
        self.slots.close()
