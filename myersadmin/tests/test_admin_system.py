import datetime as dt
import json
import unittest

from myersadmin.admin.system import (
    DISPENSARIES_KEY,
    INVOICES_KEY,
    SERVICE_REQUESTS_KEY,
    USERS_KEY,
    AdminSystem,
    AuthorizationError,
    NotFoundError,
    ValidationError,
    transition_request,
)

NOW = dt.datetime(2023, 5, 10, 12, 0, tzinfo=dt.timezone.utc)
NOW_STAMP = "2023-05-10T12:00:00Z"

ADMIN = "user-001"
MANAGER = "user-002"
REGULAR = "user-003"


class AdminSystemTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.system = AdminSystem(seed_demo_data=True, clock=lambda: NOW)

    def tearDown(self) -> None:
        self.system.close()

    # Authentication ---------------------------------------------------
    def test_login_is_case_insensitive_and_persisted(self) -> None:
        user = self.system.login(email="  ADMIN@myerssecurity.com ")
        self.assertEqual(user["id"], ADMIN)
        self.assertEqual(self.system.current_principal()["id"], ADMIN)
        self.system.logout()
        self.assertIsNone(self.system.current_principal())

    def test_login_rejects_unknown_and_inactive_principals(self) -> None:
        with self.assertRaises(AuthorizationError):
            self.system.login(email="nobody@example.com")
        self.system.update_user(actor_id=ADMIN, user_id=REGULAR, status="inactive")
        with self.assertRaises(AuthorizationError):
            self.system.login(email="user@myerssecurity.com")

    def test_unauthenticated_actor_is_rejected(self) -> None:
        with self.assertRaises(AuthorizationError):
            self.system.list_dispensaries(actor_id=None)
        with self.assertRaises(AuthorizationError):
            self.system.list_dispensaries(actor_id="ghost")

    # Users ------------------------------------------------------------
    def test_regular_user_cannot_delete_users(self) -> None:
        before = self.system.users.all()
        with self.assertRaises(AuthorizationError):
            self.system.delete_user(actor_id=REGULAR, user_id=MANAGER)
        with self.assertRaises(AuthorizationError):
            self.system.delete_user(actor_id=MANAGER, user_id=REGULAR)
        self.assertEqual(self.system.users.all(), before)

    def test_admin_deletes_user_but_not_self(self) -> None:
        with self.assertRaises(AuthorizationError):
            self.system.delete_user(actor_id=ADMIN, user_id=ADMIN)
        self.system.delete_user(actor_id=ADMIN, user_id=REGULAR)
        self.assertFalse(self.system.users.exists(REGULAR))
        with self.assertRaises(NotFoundError):
            self.system.delete_user(actor_id=ADMIN, user_id=REGULAR)

    def test_add_user_rejects_duplicate_email(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.system.add_user(
                actor_id=MANAGER, name="Copy", email="Manager@MyersSecurity.com"
            )
        self.assertEqual(str(ctx.exception), "A user with this email already exists")
        self.assertEqual(len(self.system.users.all()), 3)

    def test_add_user_assigns_identity_and_timestamp(self) -> None:
        user = self.system.add_user(
            actor_id=MANAGER, name="New Person", email="New@Example.com", role="manager"
        )
        self.assertEqual(user["email"], "new@example.com")
        self.assertEqual(user["createdAt"], NOW_STAMP)
        self.assertTrue(self.system.users.exists(user["id"]))
        with self.assertRaises(ValidationError):
            self.system.add_user(actor_id=MANAGER, name="Bad", email="x@y.com", role="owner")

    def test_nobody_changes_their_own_role_or_status(self) -> None:
        with self.assertRaises(AuthorizationError) as ctx:
            self.system.update_user(actor_id=ADMIN, user_id=ADMIN, role="manager")
        self.assertEqual(str(ctx.exception), "You cannot change your own role")
        with self.assertRaises(AuthorizationError):
            self.system.update_user(actor_id=MANAGER, user_id=MANAGER, status="inactive")
        renamed = self.system.update_user(actor_id=ADMIN, user_id=ADMIN, name="Chief")
        self.assertEqual(renamed["name"], "Chief")
        self.assertEqual(renamed["role"], "admin")

    def test_managers_cannot_grant_or_revoke_admin(self) -> None:
        with self.assertRaises(AuthorizationError):
            self.system.add_user(actor_id=MANAGER, name="Boss", email="boss@x.com", role="admin")
        with self.assertRaises(AuthorizationError):
            self.system.update_user(actor_id=MANAGER, user_id=REGULAR, role="admin")
        with self.assertRaises(AuthorizationError):
            self.system.update_user(actor_id=MANAGER, user_id=ADMIN, role="user")
        promoted = self.system.update_user(actor_id=MANAGER, user_id=REGULAR, role="manager")
        self.assertEqual(promoted["role"], "manager")

    def test_update_user_rejects_taken_email(self) -> None:
        with self.assertRaises(ValidationError):
            self.system.update_user(
                actor_id=ADMIN, user_id=REGULAR, email="admin@myerssecurity.com"
            )

    def test_list_users_filters(self) -> None:
        found = self.system.list_users(actor_id=ADMIN, search="MANAGER")
        self.assertEqual([user["id"] for user in found], [MANAGER])
        self.assertEqual(
            [user["id"] for user in self.system.list_users(actor_id=ADMIN, role="user")], [REGULAR]
        )
        with self.assertRaises(AuthorizationError):
            self.system.list_users(actor_id=REGULAR)

    def test_engineers_are_plain_users(self) -> None:
        engineer = self.system.add_engineer(actor_id=MANAGER, name="Sam Tech", email="sam@x.com")
        self.assertEqual(engineer["role"], "user")
        ids = [user["id"] for user in self.system.list_engineers(actor_id=MANAGER)]
        self.assertEqual(ids, [REGULAR, engineer["id"]])

    # Dispensaries -----------------------------------------------------
    def test_dispensary_crud(self) -> None:
        created = self.system.add_dispensary(
            actor_id=MANAGER, name="North Store", address="1 North Rd", category="both"
        )
        self.assertEqual(created["engineers"], [])
        updated = self.system.update_dispensary(
            actor_id=MANAGER, dispensary_id=created["id"], status="under-maintenance"
        )
        self.assertEqual(updated["status"], "under-maintenance")
        with self.assertRaises(ValidationError):
            self.system.update_dispensary(
                actor_id=MANAGER, dispensary_id=created["id"], category="wholesale"
            )
        with self.assertRaises(AuthorizationError):
            self.system.delete_dispensary(actor_id=MANAGER, dispensary_id=created["id"])
        with self.assertRaises(AuthorizationError):
            self.system.add_dispensary(actor_id=REGULAR, name="X", address="Y")

    def test_deleting_dispensary_removes_its_requests(self) -> None:
        self.system.delete_dispensary(actor_id=ADMIN, dispensary_id="disp-001")
        remaining = [item["id"] for item in self.system.service_requests.all()]
        self.assertEqual(sorted(remaining), ["sr-002", "sr-003", "sr-005"])
        self.assertFalse(self.system.dispensaries.exists("disp-001"))

    def test_engineer_assignment(self) -> None:
        dispensary = self.system.assign_engineer(
            actor_id=MANAGER, dispensary_id="disp-002", engineer_id=REGULAR
        )
        self.assertEqual(dispensary["engineers"], [REGULAR])
        again = self.system.assign_engineer(
            actor_id=MANAGER, dispensary_id="disp-002", engineer_id=REGULAR
        )
        self.assertEqual(again["engineers"], [REGULAR])
        with self.assertRaises(ValidationError):
            self.system.assign_engineer(
                actor_id=MANAGER, dispensary_id="disp-002", engineer_id=MANAGER
            )
        cleared = self.system.unassign_engineer(
            actor_id=MANAGER, dispensary_id="disp-002", engineer_id=REGULAR
        )
        self.assertEqual(cleared["engineers"], [])

    # Service requests -------------------------------------------------
    def test_response_moves_pending_request_in_progress(self) -> None:
        record = self.system.add_response_note(
            actor_id=MANAGER, request_id="sr-001", text="Technician dispatched."
        )
        self.assertEqual(record["status"], "in-progress")
        self.assertNotIn("resolvedAt", record)
        note = record["responseNotes"][-1]
        self.assertEqual(note["createdBy"], MANAGER)
        self.assertEqual(note["createdAt"], NOW_STAMP)
        self.assertEqual(self.system.get_service_request("sr-001")["status"], "in-progress")

    def test_regular_user_cannot_respond_or_change_status(self) -> None:
        with self.assertRaises(AuthorizationError):
            self.system.add_response_note(actor_id=REGULAR, request_id="sr-001", text="Hi")
        with self.assertRaises(AuthorizationError):
            self.system.update_service_request_status(
                actor_id=REGULAR, request_id="sr-001", status="resolved"
            )
        self.assertEqual(self.system.get_service_request("sr-001")["status"], "pending")

    def test_resolved_is_terminal(self) -> None:
        record = self.system.update_service_request_status(
            actor_id=MANAGER, request_id="sr-004", status="resolved"
        )
        self.assertEqual(record["resolvedAt"], NOW_STAMP)
        with self.assertRaises(ValidationError):
            self.system.update_service_request_status(
                actor_id=MANAGER, request_id="sr-004", status="in-progress"
            )
        with self.assertRaises(ValidationError):
            self.system.add_response_note(actor_id=MANAGER, request_id="sr-004", text="More")

    def test_transition_table(self) -> None:
        pending = self.system.get_service_request("sr-001")
        with self.assertRaises(ValidationError):
            transition_request(pending, "pending", NOW_STAMP)
        with self.assertRaises(ValidationError):
            transition_request(pending, "closed", NOW_STAMP)
        moved = transition_request(pending, "in-progress", NOW_STAMP)
        self.assertNotIn("resolvedAt", moved)
        self.assertEqual(pending["status"], "pending")
        with self.assertRaises(ValidationError):
            transition_request(moved, "pending", NOW_STAMP)
        self.assertEqual(transition_request(moved, "resolved", NOW_STAMP)["resolvedAt"], NOW_STAMP)

    def test_new_request_requires_known_dispensary(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.system.add_service_request(
                actor_id=REGULAR, dispensary_id="disp-999", title="Broken", description="Door"
            )
        self.assertEqual(str(ctx.exception), "Please select a valid dispensary")
        with self.assertRaises(ValidationError):
            self.system.add_service_request(
                actor_id=REGULAR, dispensary_id="disp-001", title=" ", description="Door"
            )

    def test_requests_listed_newest_first(self) -> None:
        created = self.system.add_service_request(
            actor_id=REGULAR,
            dispensary_id="disp-003",
            title="Camera offline",
            description="Back office camera is offline",
            priority="low",
        )
        self.assertEqual(created["status"], "pending")
        listed = [item["id"] for item in self.system.list_service_requests(actor_id=REGULAR)]
        self.assertEqual(listed, [created["id"], "sr-004", "sr-001", "sr-002", "sr-003", "sr-005"])
        pending_high = self.system.list_service_requests(
            actor_id=REGULAR, status="pending", priority="high", dispensary_id="disp-001"
        )
        self.assertEqual([item["id"] for item in pending_high], ["sr-004", "sr-001"])

    # Billing ----------------------------------------------------------
    def test_invoice_amount_totals_line_items(self) -> None:
        invoice = self.system.add_invoice(
            actor_id=MANAGER,
            dispensary_id="disp-001",
            due_date=dt.date(2023, 6, 1),
            items=[
                {"description": "Camera", "quantity": 2, "unitPrice": 125.5},
                {"description": "Installation", "quantity": 1, "unitPrice": 99},
            ],
        )
        self.assertEqual(invoice["amount"], 350.0)
        self.assertEqual(invoice["dueDate"], "2023-06-01T00:00:00Z")
        self.assertEqual(invoice["status"], "pending")
        with self.assertRaises(ValidationError):
            self.system.add_invoice(actor_id=MANAGER, dispensary_id="disp-001", due_date="soon", amount=5)
        with self.assertRaises(ValidationError):
            self.system.add_invoice(
                actor_id=MANAGER, dispensary_id="disp-001", due_date="2023-06-01", amount=-5
            )
        with self.assertRaises(AuthorizationError):
            self.system.add_invoice(
                actor_id=REGULAR, dispensary_id="disp-001", due_date="2023-06-01", amount=5
            )

    def test_payments_settle_and_refunds_reopen(self) -> None:
        first = self.system.record_payment(
            actor_id=MANAGER, invoice_id="inv-002", amount=300, method="check"
        )
        self.assertEqual(first["dispensaryId"], "disp-002")
        self.assertEqual(self.system.get_invoice("inv-002")["status"], "pending")
        self.system.record_payment(
            actor_id=MANAGER, invoice_id="inv-002", amount=450, method="cash"
        )
        self.assertEqual(self.system.get_invoice("inv-002")["status"], "paid")
        self.system.refund_payment(actor_id=MANAGER, payment_id=first["id"])
        self.assertEqual(self.system.get_invoice("inv-002")["status"], "pending")
        with self.assertRaises(ValidationError):
            self.system.refund_payment(actor_id=MANAGER, payment_id=first["id"])
        with self.assertRaises(ValidationError):
            self.system.record_payment(
                actor_id=MANAGER, invoice_id="inv-002", amount=0, method="cash"
            )

    def test_mark_overdue_invoices(self) -> None:
        self.assertEqual(self.system.mark_overdue_invoices(actor_id=MANAGER), [])
        flagged = self.system.mark_overdue_invoices(
            actor_id=MANAGER, today=dt.date(2023, 5, 20)
        )
        self.assertEqual([invoice["id"] for invoice in flagged], ["inv-002"])
        self.assertEqual(self.system.get_invoice("inv-002")["status"], "overdue")
        self.assertEqual(self.system.get_invoice("inv-001")["status"], "paid")

    def test_service_agreement_rules(self) -> None:
        with self.assertRaises(ValidationError):
            self.system.add_service_agreement(
                actor_id=MANAGER,
                dispensary_id="disp-001",
                start_date="2024-01-01",
                end_date="2023-12-31",
            )
        agreement = self.system.add_service_agreement(
            actor_id=MANAGER,
            dispensary_id="disp-001",
            start_date="2024-01-01",
            end_date="2024-12-31",
            terms=" Annual monitoring ",
        )
        self.assertEqual(agreement["status"], "pending")
        self.assertEqual(agreement["terms"], "Annual monitoring")
        self.system.update_service_agreement_status(
            actor_id=MANAGER, agreement_id=agreement["id"], status="terminated"
        )
        with self.assertRaises(ValidationError):
            self.system.update_service_agreement_status(
                actor_id=MANAGER, agreement_id=agreement["id"], status="active"
            )

    # Knowledge base ---------------------------------------------------
    def test_knowledge_base_entries(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.system.add_knowledge_base_entry(actor_id=MANAGER, title="", description="Body")
        self.assertEqual(str(ctx.exception), "Please fill in all required fields")
        with self.assertRaises(AuthorizationError):
            self.system.add_knowledge_base_entry(actor_id=REGULAR, title="T", description="D")
        entry = self.system.add_knowledge_base_entry(
            actor_id=MANAGER,
            title="Camera maintenance",
            description="Quarterly checklist",
            category="Case Studies",
            video_url="https://example.com/video",
        )
        self.assertEqual(entry["videoUrl"], "https://example.com/video")
        self.assertNotIn("blogUrl", entry)
        updated = self.system.update_knowledge_base_entry(
            actor_id=MANAGER, entry_id=entry["id"], video_url="", blog_url="https://example.com/b"
        )
        self.assertNotIn("videoUrl", updated)
        self.assertEqual(updated["blogUrl"], "https://example.com/b")
        with self.assertRaises(ValidationError):
            self.system.update_knowledge_base_entry(
                actor_id=MANAGER, entry_id=entry["id"], category="Rumours"
            )
        found = self.system.list_knowledge_base(actor_id=REGULAR, search="checklist")
        self.assertEqual([item["id"] for item in found], [entry["id"]])
        with self.assertRaises(AuthorizationError):
            self.system.delete_knowledge_base_entry(actor_id=MANAGER, entry_id=entry["id"])
        self.system.delete_knowledge_base_entry(actor_id=ADMIN, entry_id=entry["id"])
        self.assertEqual(self.system.knowledge_base.all(), [])

    # Dashboard, preferences, persistence -----------------------------
    def test_dashboard_summary(self) -> None:
        summary = self.system.dashboard_summary(today=dt.date(2023, 4, 16))
        self.assertEqual(summary["total_users"], 3)
        self.assertEqual(summary["active_users"], 3)
        self.assertEqual(summary["total_dispensaries"], 3)
        self.assertEqual(
            summary["dispensaries_by_status"], {"open": 2, "under-maintenance": 0, "closed": 1}
        )
        self.assertEqual(
            summary["requests_by_status"], {"pending": 2, "in-progress": 1, "resolved": 2}
        )
        self.assertEqual(
            [day["count"] for day in summary["requests_last_7_days"]], [1, 0, 0, 0, 0, 1, 1]
        )
        self.assertEqual(summary["requests_last_7_days"][0]["date"], "2023-04-10")
        self.assertEqual(summary["outstanding_invoice_total"], 750.0)

    def test_theme_preference(self) -> None:
        self.assertEqual(self.system.get_theme(), "light")
        self.system.set_theme("dark")
        self.assertEqual(self.system.get_theme(), "dark")
        with self.assertRaises(ValidationError):
            self.system.set_theme("neon")

    def test_corrupt_users_slot_recovers_initial_principals(self) -> None:
        self.system.slots.set(USERS_KEY, "{broken")
        ids = [user["id"] for user in self.system.users.all()]
        self.assertEqual(ids, [ADMIN, MANAGER, REGULAR])
        self.system.login(email="manager@myerssecurity.com")

    def test_invalid_records_are_dropped_on_load(self) -> None:
        users = self.system.users.all()
        users.append({"id": "user-x", "name": "Broken", "role": "wizard"})
        self.system.slots.set(USERS_KEY, json.dumps(users))
        self.assertEqual(len(self.system.users.all()), 3)

    def test_malformed_nested_fields_are_dropped_on_load(self) -> None:
        requests = self.system.service_requests.all()
        requests[0]["responseNotes"] = ["oops"]
        requests[1]["responseNotes"] = "not a list"
        self.system.slots.set(SERVICE_REQUESTS_KEY, json.dumps(requests))
        dispensaries = self.system.dispensaries.all()
        dispensaries[0]["engineers"] = "user-003"
        self.system.slots.set(DISPENSARIES_KEY, json.dumps(dispensaries))
        ids = [item["id"] for item in self.system.service_requests.all()]
        self.assertEqual(ids, ["sr-003", "sr-004", "sr-005"])
        self.assertEqual(len(self.system.dispensaries.all()), 2)
        summary = self.system.dashboard_summary(today=dt.date(2023, 4, 16))
        self.assertEqual(summary["requests_by_status"]["in-progress"], 0)

    def test_unparseable_timestamps_are_dropped_on_load(self) -> None:
        requests = self.system.service_requests.all()
        requests[0]["createdAt"] = "yesterday"
        requests[2]["resolvedAt"] = "soon"
        requests[3]["responseNotes"] = [
            {"id": "n-1", "text": "Hi", "createdAt": "later", "createdBy": MANAGER}
        ]
        self.system.slots.set(SERVICE_REQUESTS_KEY, json.dumps(requests))
        invoices = self.system.invoices.all()
        invoices[1]["dueDate"] = "next month"
        self.system.slots.set(INVOICES_KEY, json.dumps(invoices))
        listed = self.system.list_service_requests(actor_id=ADMIN)
        self.assertEqual([item["id"] for item in listed], ["sr-002", "sr-005"])
        self.assertEqual(
            self.system.mark_overdue_invoices(actor_id=MANAGER, today=dt.date(2024, 1, 1)), []
        )
        self.assertEqual(len(self.system.invoices.all()), 2)
        self.assertEqual(self.system.dashboard_summary()["outstanding_invoice_total"], 0)

    def test_principal_for_resolves_active_principals_only(self) -> None:
        self.assertEqual(self.system.principal_for(REGULAR)["id"], REGULAR)
        self.assertIsNone(self.system.principal_for(None))
        self.assertIsNone(self.system.principal_for("ghost"))
        self.system.update_user(actor_id=ADMIN, user_id=REGULAR, status="inactive")
        self.assertIsNone(self.system.principal_for(REGULAR))


class EmptySystemTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.system = AdminSystem(clock=lambda: NOW)

    def tearDown(self) -> None:
        self.system.close()

    def test_only_principals_exist_without_demo_data(self) -> None:
        self.assertEqual(len(self.system.users.all()), 3)
        self.assertEqual(self.system.dispensaries.all(), [])
        self.assertEqual(self.system.service_requests.all(), [])

    def test_seed_defaults_fills_empty_collections_once(self) -> None:
        added = self.system.seed_defaults()
        self.assertEqual(added[USERS_KEY], 0)
        self.assertEqual(added["myers-admin-dispensaries"], 3)
        self.assertEqual(added["myers-admin-service-requests"], 5)
        self.assertEqual(added["myers-admin-invoices"], 3)
        again = self.system.seed_defaults()
        self.assertTrue(all(count == 0 for count in again.values()))


if __name__ == "__main__":
    unittest.main()
