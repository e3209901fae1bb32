"""Flask application providing the Myers Security admin panel UI."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Mapping

from flask import (
    Flask,
    flash,
    g,
    redirect,
    render_template,
    request,
    session,
    url_for,
)

from myersadmin.admin import policy
from myersadmin.admin.records import (
    AgreementStatus,
    DispensaryCategory,
    DispensaryStatus,
    EntryStatus,
    InvoiceStatus,
    KnowledgeBaseCategory,
    PaymentMethod,
    PrincipalStatus,
    Priority,
    RequestStatus,
    Role,
)
from myersadmin.admin.store import clamp_page, paginate
from myersadmin.admin.system import (
    REQUEST_TRANSITIONS,
    AdminSystem,
    AuthorizationError,
    NotFoundError,
    ValidationError,
)

from .cli import register_commands
from .config import Config

PUBLIC_ENDPOINTS = {"login", "static"}

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def create_app(
    database_path: str | None = None, overrides: Mapping[str, Any] | None = None
) -> Flask:
    """Create and configure the Flask application."""

    app = Flask(
        __name__,
        template_folder="templates",
        static_folder="static",
    )
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)
    if database_path is not None:
        app.config["DATABASE_PATH"] = database_path

    logging.basicConfig(level=app.config["LOG_LEVEL"], format=LOG_FORMAT)

    system = AdminSystem(
        app.config["DATABASE_PATH"], seed_demo_data=app.config["SEED_DEMO_DATA"]
    )
    app.extensions["myersadmin"] = system
    register_commands(app)

    def notify(title: str, description: str, variant: str = "default") -> None:
        flash({"title": title, "description": description}, variant)

    def notify_error(exc: Exception) -> None:
        title = "Access denied" if isinstance(exc, AuthorizationError) else "Error"
        app.logger.info("%s: %s", title, exc)
        notify(title, str(exc), "destructive")

    def actor_id() -> str:
        return g.principal["id"]

    def paginate_view(items: list[dict]) -> Any:
        page = request.args.get("page", 1, type=int)
        page_size = request.args.get("per_page", app.config["PAGE_SIZE"], type=int)
        if page_size not in app.config["PAGE_SIZE_CHOICES"]:
            page_size = app.config["PAGE_SIZE"]
        total_pages = paginate(items, 1, page_size).total_pages
        return paginate(items, clamp_page(page, total_pages), page_size)

    def form_value(name: str) -> str | None:
        value = request.form.get(name)
        return value.strip() if value is not None else None

    @app.before_request
    def load_principal() -> Any:
        g.principal = system.principal_for(session.get("principal_id"))
        if request.endpoint is None or request.endpoint in PUBLIC_ENDPOINTS:
            return None
        if g.principal is None:
            return redirect(url_for("login"))
        return None

    @app.context_processor
    def inject_navigation() -> dict[str, Any]:
        role = g.principal["role"] if g.get("principal") else None
        return {
            "principal": g.get("principal"),
            "menu": policy.visible_menu(role),
            "theme": system.get_theme(),
            "perms": lambda entity: policy.permissions_for(role, entity),
            "current_year": dt.date.today().year,
        }

    @app.errorhandler(404)
    def not_found(_exc: Exception) -> Any:
        return render_template("not_found.html"), 404

    @app.get("/")
    def index() -> Any:
        return redirect(url_for("dashboard"))

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------
    @app.route("/login", methods=["GET", "POST"])
    def login() -> Any:
        if request.method == "POST":
            try:
                user = system.login(email=request.form.get("email", ""))
            except AuthorizationError:
                notify("Login failed", "Invalid email or password", "destructive")
            else:
                session.clear()
                session["principal_id"] = user["id"]
                notify("Login successful", f"Welcome back, {user['name']}!")
                return redirect(url_for("dashboard"))
        elif g.principal is not None:
            return redirect(url_for("dashboard"))
        return render_template("login.html")

    @app.post("/logout")
    def logout() -> Any:
        system.logout()
        session.pop("principal_id", None)
        notify("Logged out", "You have been logged out successfully")
        return redirect(url_for("login"))

    @app.post("/theme")
    def toggle_theme() -> Any:
        mode = "dark" if system.get_theme() == "light" else "light"
        system.set_theme(request.form.get("mode") or mode)
        return redirect(request.referrer or url_for("dashboard"))

    @app.route("/dashboard")
    def dashboard() -> Any:
        return render_template("dashboard.html", summary=system.dashboard_summary())

    @app.route("/settings")
    def settings() -> Any:
        if not policy.can_view(g.principal["role"], "settings"):
            notify_error(AuthorizationError("You do not have permission to view settings"))
            return redirect(url_for("dashboard"))
        return render_template("settings.html", slots=system.slots.keys())

    # ------------------------------------------------------------------
    # Users & support engineers
    # ------------------------------------------------------------------
    @app.route("/users", methods=["GET", "POST"])
    def users() -> Any:
        if request.method == "POST":
            try:
                system.add_user(
                    actor_id=actor_id(),
                    name=request.form.get("name", ""),
                    email=request.form.get("email", ""),
                    role=request.form.get("role", Role.USER.value),
                    status=request.form.get("status", PrincipalStatus.ACTIVE.value),
                )
                notify("Success", "User added successfully", "success")
                return redirect(url_for("users"))
            except (AuthorizationError, ValidationError) as exc:
                notify_error(exc)
        filters = {
            "search": request.args.get("search", ""),
            "role": request.args.get("role", ""),
            "status": request.args.get("status", ""),
        }
        try:
            matches = system.list_users(actor_id=actor_id(), **filters)
        except AuthorizationError as exc:
            notify_error(exc)
            return redirect(url_for("dashboard"))
        return render_template(
            "users.html",
            page=paginate_view(matches),
            filters=filters,
            roles=list(Role),
            statuses=list(PrincipalStatus),
        )

    @app.route("/users/edit/<user_id>", methods=["GET", "POST"])
    def edit_user(user_id: str) -> Any:
        try:
            user = system.get_user(user_id)
        except NotFoundError as exc:
            notify_error(exc)
            return redirect(url_for("users"))
        if request.method == "POST":
            try:
                system.update_user(
                    actor_id=actor_id(),
                    user_id=user_id,
                    name=form_value("name"),
                    email=form_value("email"),
                    role=form_value("role"),
                    status=form_value("status"),
                )
                notify("Success", "User updated successfully", "success")
                return redirect(url_for("users"))
            except (AuthorizationError, ValidationError) as exc:
                notify_error(exc)
        return render_template(
            "user_form.html",
            user=user,
            is_self=policy.is_self_target(actor_id(), user),
            roles=list(Role),
            statuses=list(PrincipalStatus),
        )

    @app.post("/users/<user_id>/delete")
    def delete_user(user_id: str) -> Any:
        try:
            system.delete_user(actor_id=actor_id(), user_id=user_id)
            notify("Success", "User deleted successfully", "success")
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("users"))

    @app.route("/engineers", methods=["GET", "POST"])
    def engineers() -> Any:
        if request.method == "POST":
            try:
                system.add_engineer(
                    actor_id=actor_id(),
                    name=request.form.get("name", ""),
                    email=request.form.get("email", ""),
                    status=request.form.get("status", PrincipalStatus.ACTIVE.value),
                )
                notify("Success", "Support engineer added successfully", "success")
                return redirect(url_for("engineers"))
            except (AuthorizationError, ValidationError) as exc:
                notify_error(exc)
        search = request.args.get("search", "")
        try:
            matches = system.list_engineers(actor_id=actor_id(), search=search)
        except AuthorizationError as exc:
            notify_error(exc)
            return redirect(url_for("dashboard"))
        return render_template(
            "engineers.html",
            page=paginate_view(matches),
            search=search,
            statuses=list(PrincipalStatus),
        )

    # ------------------------------------------------------------------
    # Dispensaries
    # ------------------------------------------------------------------
    @app.route("/dispensaries", methods=["GET", "POST"])
    def dispensaries() -> Any:
        if request.method == "POST":
            try:
                dispensary = system.add_dispensary(
                    actor_id=actor_id(),
                    name=request.form.get("name", ""),
                    address=request.form.get("address", ""),
                    category=request.form.get("category", DispensaryCategory.MEDICAL.value),
                    status=request.form.get("status", DispensaryStatus.OPEN.value),
                    phone=request.form.get("phone") or None,
                    email=request.form.get("email") or None,
                )
                notify(
                    "Dispensary added",
                    f"Dispensary {dispensary['name']} added successfully",
                    "success",
                )
                return redirect(url_for("dispensaries"))
            except (AuthorizationError, ValidationError) as exc:
                notify_error(exc)
        filters = {
            "search": request.args.get("search", ""),
            "category": request.args.get("category", ""),
            "status": request.args.get("status", ""),
        }
        matches = system.list_dispensaries(actor_id=actor_id(), **filters)
        return render_template(
            "dispensaries.html",
            page=paginate_view(matches),
            filters=filters,
            categories=list(DispensaryCategory),
            statuses=list(DispensaryStatus),
        )

    @app.route("/dispensaries/edit/<dispensary_id>", methods=["GET", "POST"])
    def edit_dispensary(dispensary_id: str) -> Any:
        try:
            dispensary = system.get_dispensary(dispensary_id)
        except NotFoundError as exc:
            notify_error(exc)
            return redirect(url_for("dispensaries"))
        if request.method == "POST":
            try:
                system.update_dispensary(
                    actor_id=actor_id(),
                    dispensary_id=dispensary_id,
                    name=form_value("name"),
                    address=form_value("address"),
                    category=form_value("category"),
                    status=form_value("status"),
                    phone=form_value("phone"),
                    email=form_value("email"),
                )
                notify("Success", "Dispensary updated successfully", "success")
                return redirect(url_for("dispensaries"))
            except (AuthorizationError, ValidationError) as exc:
                notify_error(exc)
        engineers_by_id = {user["id"]: user for user in system.users.all()}
        return render_template(
            "dispensary_form.html",
            dispensary=dispensary,
            engineers_by_id=engineers_by_id,
            available_engineers=[
                user for user in engineers_by_id.values() if user["role"] == Role.USER.value
            ],
            categories=list(DispensaryCategory),
            statuses=list(DispensaryStatus),
        )

    @app.post("/dispensaries/<dispensary_id>/delete")
    def delete_dispensary(dispensary_id: str) -> Any:
        try:
            system.delete_dispensary(actor_id=actor_id(), dispensary_id=dispensary_id)
            notify("Success", "Dispensary deleted successfully", "success")
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("dispensaries"))

    @app.post("/dispensaries/<dispensary_id>/engineers")
    def assign_engineer(dispensary_id: str) -> Any:
        try:
            system.assign_engineer(
                actor_id=actor_id(),
                dispensary_id=dispensary_id,
                engineer_id=request.form.get("engineer_id", ""),
            )
            notify("Success", "Support engineer assigned", "success")
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("edit_dispensary", dispensary_id=dispensary_id))

    @app.post("/dispensaries/<dispensary_id>/engineers/<engineer_id>/remove")
    def unassign_engineer(dispensary_id: str, engineer_id: str) -> Any:
        try:
            system.unassign_engineer(
                actor_id=actor_id(), dispensary_id=dispensary_id, engineer_id=engineer_id
            )
            notify("Success", "Support engineer removed", "success")
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("edit_dispensary", dispensary_id=dispensary_id))

    # ------------------------------------------------------------------
    # Service requests
    # ------------------------------------------------------------------
    @app.route("/service-requests", methods=["GET", "POST"])
    def service_requests() -> Any:
        if request.method == "POST":
            try:
                system.add_service_request(
                    actor_id=actor_id(),
                    dispensary_id=request.form.get("dispensary_id", ""),
                    title=request.form.get("title", ""),
                    description=request.form.get("description", ""),
                    priority=request.form.get("priority", Priority.MEDIUM.value),
                )
                notify("Service request added", "Your service request has been filed", "success")
                return redirect(url_for("service_requests"))
            except (AuthorizationError, ValidationError) as exc:
                notify_error(exc)
        filters = {
            "search": request.args.get("search", ""),
            "status": request.args.get("status", ""),
            "priority": request.args.get("priority", ""),
            "dispensary_id": request.args.get("dispensary_id", ""),
        }
        matches = system.list_service_requests(actor_id=actor_id(), **filters)
        return render_template(
            "service_requests.html",
            page=paginate_view(matches),
            filters=filters,
            dispensaries={item["id"]: item for item in system.dispensaries.all()},
            statuses=list(RequestStatus),
            priorities=list(Priority),
        )

    @app.get("/service-requests/<request_id>")
    def service_request_detail(request_id: str) -> Any:
        try:
            service_request = system.get_service_request(request_id)
        except NotFoundError as exc:
            notify_error(exc)
            return redirect(url_for("service_requests"))
        return render_template(
            "service_request_detail.html",
            service_request=service_request,
            dispensaries={item["id"]: item for item in system.dispensaries.all()},
            users={user["id"]: user for user in system.users.all()},
            next_statuses=sorted(
                status.value
                for status in RequestStatus
                if status.value in REQUEST_TRANSITIONS[service_request["status"]]
            ),
        )

    @app.post("/service-requests/<request_id>/responses")
    def respond_to_request(request_id: str) -> Any:
        try:
            system.add_response_note(
                actor_id=actor_id(), request_id=request_id, text=request.form.get("text", "")
            )
            notify("Response Added", "Your response has been added to the service request", "success")
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("service_request_detail", request_id=request_id))

    @app.post("/service-requests/<request_id>/status")
    def update_request_status(request_id: str) -> Any:
        try:
            record = system.update_service_request_status(
                actor_id=actor_id(), request_id=request_id, status=request.form.get("status", "")
            )
            notify(
                "Status Updated",
                f"Service request status updated to {record['status'].replace('-', ' ')}",
                "success",
            )
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("service_request_detail", request_id=request_id))

    @app.post("/service-requests/<request_id>/delete")
    def delete_service_request(request_id: str) -> Any:
        try:
            system.delete_service_request(actor_id=actor_id(), request_id=request_id)
            notify("Success", "Service request deleted successfully", "success")
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("service_requests"))

    # ------------------------------------------------------------------
    # Knowledge base
    # ------------------------------------------------------------------
    @app.get("/knowledge-base")
    def knowledge_base() -> Any:
        filters = {
            "search": request.args.get("search", ""),
            "category": request.args.get("category", ""),
            "status": request.args.get("status", ""),
        }
        matches = system.list_knowledge_base(actor_id=actor_id(), **filters)
        return render_template(
            "knowledge_base.html",
            page=paginate_view(matches),
            filters=filters,
            categories=list(KnowledgeBaseCategory),
            statuses=list(EntryStatus),
        )

    @app.route("/knowledge-base/add", methods=["GET", "POST"])
    def add_knowledge_base_entry() -> Any:
        if request.method == "POST":
            try:
                system.add_knowledge_base_entry(
                    actor_id=actor_id(),
                    title=request.form.get("title", ""),
                    description=request.form.get("description", ""),
                    category=request.form.get("category", KnowledgeBaseCategory.SERVICES.value),
                    status=request.form.get("status", EntryStatus.ACTIVE.value),
                    video_url=request.form.get("video_url") or None,
                    blog_url=request.form.get("blog_url") or None,
                    file_url=request.form.get("file_url") or None,
                )
                notify("Success", "Knowledge base entry added successfully", "success")
                return redirect(url_for("knowledge_base"))
            except (AuthorizationError, ValidationError) as exc:
                notify_error(exc)
        return render_template(
            "knowledge_base_form.html",
            entry=None,
            categories=list(KnowledgeBaseCategory),
            statuses=list(EntryStatus),
        )

    @app.get("/knowledge-base/<entry_id>")
    def view_knowledge_base_entry(entry_id: str) -> Any:
        try:
            entry = system.get_knowledge_base_entry(entry_id)
        except NotFoundError as exc:
            notify_error(exc)
            return redirect(url_for("knowledge_base"))
        return render_template("knowledge_base_detail.html", entry=entry)

    @app.route("/knowledge-base/edit/<entry_id>", methods=["GET", "POST"])
    def edit_knowledge_base_entry(entry_id: str) -> Any:
        try:
            entry = system.get_knowledge_base_entry(entry_id)
        except NotFoundError as exc:
            notify_error(exc)
            return redirect(url_for("knowledge_base"))
        if request.method == "POST":
            try:
                system.update_knowledge_base_entry(
                    actor_id=actor_id(),
                    entry_id=entry_id,
                    title=form_value("title"),
                    description=form_value("description"),
                    category=form_value("category"),
                    status=form_value("status"),
                    video_url=form_value("video_url"),
                    blog_url=form_value("blog_url"),
                    file_url=form_value("file_url"),
                )
                notify("Success", "Knowledge base entry updated successfully", "success")
                return redirect(url_for("view_knowledge_base_entry", entry_id=entry_id))
            except (AuthorizationError, ValidationError) as exc:
                notify_error(exc)
        return render_template(
            "knowledge_base_form.html",
            entry=entry,
            categories=list(KnowledgeBaseCategory),
            statuses=list(EntryStatus),
        )

    @app.post("/knowledge-base/<entry_id>/delete")
    def delete_knowledge_base_entry(entry_id: str) -> Any:
        try:
            system.delete_knowledge_base_entry(actor_id=actor_id(), entry_id=entry_id)
            notify("Success", "Knowledge base entry deleted successfully", "success")
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("knowledge_base"))

    # ------------------------------------------------------------------
    # Billing: invoices, payments, service agreements
    # ------------------------------------------------------------------
    @app.route("/billing")
    def billing() -> Any:
        status = request.args.get("status", "")
        try:
            invoices = system.list_invoices(actor_id=actor_id(), status=status)
            payments = system.list_payments(actor_id=actor_id())
            agreements = system.list_service_agreements(actor_id=actor_id())
        except AuthorizationError as exc:
            notify_error(exc)
            return redirect(url_for("dashboard"))
        return render_template(
            "billing.html",
            page=paginate_view(invoices),
            status=status,
            payments=payments,
            agreements=agreements,
            dispensaries={item["id"]: item for item in system.dispensaries.all()},
            invoice_statuses=list(InvoiceStatus),
            payment_methods=list(PaymentMethod),
            agreement_statuses=list(AgreementStatus),
        )

    @app.post("/invoices")
    def add_invoice() -> Any:
        description = (request.form.get("item_description") or "").strip()
        items = None
        if description:
            items = [
                {
                    "description": description,
                    "quantity": request.form.get("item_quantity", type=int) or 1,
                    "unitPrice": request.form.get("item_unit_price", type=float) or 0.0,
                }
            ]
        try:
            system.add_invoice(
                actor_id=actor_id(),
                dispensary_id=request.form.get("dispensary_id", ""),
                due_date=request.form.get("due_date", ""),
                amount=request.form.get("amount", type=float),
                items=items,
            )
            notify("Success", "Invoice created successfully", "success")
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("billing"))

    @app.post("/invoices/<invoice_id>/status")
    def update_invoice_status(invoice_id: str) -> Any:
        try:
            system.update_invoice_status(
                actor_id=actor_id(), invoice_id=invoice_id, status=request.form.get("status", "")
            )
            notify("Success", "Invoice status updated", "success")
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("billing"))

    @app.post("/invoices/mark-overdue")
    def mark_overdue_invoices() -> Any:
        try:
            flagged = system.mark_overdue_invoices(actor_id=actor_id())
            notify("Success", f"{len(flagged)} invoice(s) marked overdue", "success")
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("billing"))

    @app.post("/invoices/<invoice_id>/delete")
    def delete_invoice(invoice_id: str) -> Any:
        try:
            system.delete_invoice(actor_id=actor_id(), invoice_id=invoice_id)
            notify("Success", "Invoice deleted successfully", "success")
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("billing"))

    @app.post("/invoices/<invoice_id>/payments")
    def record_payment(invoice_id: str) -> Any:
        try:
            system.record_payment(
                actor_id=actor_id(),
                invoice_id=invoice_id,
                amount=request.form.get("amount", type=float) or 0.0,
                method=request.form.get("method", PaymentMethod.CREDIT_CARD.value),
            )
            notify("Success", "Payment recorded", "success")
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("billing"))

    @app.post("/payments/<payment_id>/refund")
    def refund_payment(payment_id: str) -> Any:
        try:
            system.refund_payment(actor_id=actor_id(), payment_id=payment_id)
            notify("Success", "Payment refunded", "success")
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("billing"))

    @app.post("/agreements")
    def add_service_agreement() -> Any:
        try:
            system.add_service_agreement(
                actor_id=actor_id(),
                dispensary_id=request.form.get("dispensary_id", ""),
                start_date=request.form.get("start_date", ""),
                end_date=request.form.get("end_date", ""),
                terms=request.form.get("terms", ""),
                status=request.form.get("status", AgreementStatus.PENDING.value),
            )
            notify("Success", "Service agreement created", "success")
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("billing"))

    @app.post("/agreements/<agreement_id>/status")
    def update_agreement_status(agreement_id: str) -> Any:
        try:
            system.update_service_agreement_status(
                actor_id=actor_id(),
                agreement_id=agreement_id,
                status=request.form.get("status", ""),
            )
            notify("Success", "Service agreement updated", "success")
        except (AuthorizationError, ValidationError) as exc:
            notify_error(exc)
        return redirect(url_for("billing"))

    return app


__all__ = ["create_app"]
