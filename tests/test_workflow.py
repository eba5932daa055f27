"""
WorkflowCoordinator tests: invoice snapshot, payments, the payment gate on
project creation, project completion and change orders.
"""

import pytest

from bluecrew.core.entities import (
    Actor,
    ChangeOrderStatus,
    InvoiceStatus,
    ManagementApproval,
    ProjectStatus,
    StepStatus,
)
from bluecrew.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PaymentRequiredError,
    PersistenceFailure,
    ValidationError,
)
from bluecrew.services.workflow import (
    INVOICE_STATUS_TRANSITIONS,
    approved_change_orders_total,
    can_mark_project_complete,
    total_with_changes,
)

from fakes import approvals, build_coordinator, child, item, make_project

MANAGER = Actor(id="mgr-1", name="Dana Manager", role="admin")
CUSTOMER = Actor(id="cli-1", name="Casey Client", role="client")


def _approved(coordinator, **kwargs):
    """Create a proposal and run it through both approvals."""
    proposal = coordinator.create_proposal(
        MANAGER, kwargs.get("client_name", "Acme Homes"),
        line_items=kwargs.get("line_items", [
            {"name": "Demolition", "quantity": 1, "unit_price": 1000, "descriptions": ["Strip cabinets", "Haul"]},
            {"name": "Tile", "quantity": 10, "unit_price": 50},
        ]),
        gc_percent=kwargs.get("gc_percent", 10),
    )
    machine = coordinator.approval_machine(proposal)
    machine.approve_by_management(MANAGER)
    invoice = machine.approve_by_client(CUSTOMER).invoice
    return proposal, invoice


# ═════════════════════════════════════════════════════════════════════════════
# Proposals & invoices
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateProposal:
    def test_numbers_and_prices_new_proposal(self):
        coordinator, fakes = build_coordinator()
        proposal = coordinator.create_proposal(
            MANAGER, " Acme ", line_items=[{"name": "Paint", "quantity": 2, "unit_price": 100}],
            gc_percent="",
        )
        assert proposal.proposal_number.startswith("PROP-")
        assert proposal.client_name == "Acme"
        assert proposal.total_cost == pytest.approx(237)
        assert fakes["proposals"].kinds() == ["create_proposal"]

    def test_client_name_required(self):
        coordinator, fakes = build_coordinator()
        with pytest.raises(ValidationError):
            coordinator.create_proposal(MANAGER, "  ")
        assert fakes["proposals"].calls == []

    def test_line_item_needs_name(self):
        coordinator, _ = build_coordinator()
        with pytest.raises(ValidationError):
            coordinator.create_proposal(MANAGER, "Acme", line_items=[{"quantity": 1, "unit_price": 5}])

    def test_get_missing_proposal(self):
        coordinator, _ = build_coordinator()
        with pytest.raises(NotFoundError):
            coordinator.get_proposal("nope")


class TestInvoiceSnapshot:
    def test_invoice_copies_proposal_at_approval_time(self):
        coordinator, _ = build_coordinator()
        proposal, invoice = _approved(coordinator)
        assert invoice.status == InvoiceStatus.PENDING
        assert invoice.invoice_number.startswith("INV-")
        assert invoice.items_total == pytest.approx(1500)
        assert invoice.total_cost == pytest.approx(1650)
        # later edits to the proposal objects do not leak into the snapshot
        proposal.line_items[0].descriptions.append("Extra")
        proposal.line_items[0].quantity = 99
        assert invoice.line_items[0].descriptions == ["Strip cabinets", "Haul"]
        assert invoice.line_items[0].quantity == 1

    def test_listener_requires_both_approvals(self):
        coordinator, fakes = build_coordinator()
        proposal = coordinator.create_proposal(MANAGER, "Acme")
        approvals(proposal, ManagementApproval.APPROVED, "pending")
        with pytest.raises(InvalidTransitionError):
            coordinator.on_both_approvals_approved(proposal, MANAGER)
        assert fakes["invoices"].invoices == {}

    def test_conflict_on_insert_returns_existing_invoice(self):
        coordinator, fakes = build_coordinator()
        proposal, invoice = _approved(coordinator)
        # lookup misses once (another session), insert then hits the unique key
        real_lookup = fakes["invoices"].get_invoice_by_proposal_id
        lookups = []

        def stale_once(proposal_id):
            lookups.append(proposal_id)
            return None if len(lookups) == 1 else real_lookup(proposal_id)

        fakes["invoices"].get_invoice_by_proposal_id = stale_once
        again = coordinator.on_both_approvals_approved(proposal, MANAGER)
        assert again.id == invoice.id
        assert len(fakes["invoices"].invoices) == 1


# ═════════════════════════════════════════════════════════════════════════════
# Payments
# ═════════════════════════════════════════════════════════════════════════════


class TestRecordPayment:
    def test_partial_then_full_payment(self):
        coordinator, fakes = build_coordinator()
        _, invoice = _approved(coordinator)
        coordinator.record_payment(invoice, "650", CUSTOMER)
        assert invoice.status == InvoiceStatus.PARTIAL_PAID
        assert invoice.remaining_balance == pytest.approx(1000)
        coordinator.record_payment(invoice, 1000, CUSTOMER)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.paid_amount == pytest.approx(1650)
        assert len(invoice.payments) == 2
        _, _, fields = fakes["invoices"].calls[-1]
        assert fields["status"] == "paid"
        assert len(fields["payments"]) == 2

    @pytest.mark.parametrize("amount", [0, -5, "abc", None])
    def test_non_positive_amount(self, amount):
        coordinator, _ = build_coordinator()
        _, invoice = _approved(coordinator)
        with pytest.raises(ValidationError):
            coordinator.record_payment(invoice, amount, CUSTOMER)
        assert invoice.payments == []

    def test_overpayment_is_rejected(self):
        coordinator, _ = build_coordinator()
        _, invoice = _approved(coordinator)
        with pytest.raises(ValidationError):
            coordinator.record_payment(invoice, 1650.01, CUSTOMER)
        assert invoice.status == InvoiceStatus.PENDING

    def test_paid_invoice_is_closed(self):
        coordinator, _ = build_coordinator()
        _, invoice = _approved(coordinator)
        coordinator.record_payment(invoice, 1650, CUSTOMER)
        with pytest.raises(InvalidTransitionError):
            coordinator.record_payment(invoice, 1, CUSTOMER)


class TestInvoiceStatus:
    def test_terminal_states_have_no_exits(self):
        assert INVOICE_STATUS_TRANSITIONS[InvoiceStatus.PAID] == set()
        assert INVOICE_STATUS_TRANSITIONS[InvoiceStatus.CANCELLED] == set()

    def test_pending_to_overdue(self):
        coordinator, fakes = build_coordinator()
        _, invoice = _approved(coordinator)
        coordinator.update_invoice_status(invoice, "overdue", MANAGER)
        assert invoice.status == InvoiceStatus.OVERDUE
        assert fakes["invoices"].actors[-1] == "mgr-1"

    def test_cancelled_cannot_reopen(self):
        coordinator, _ = build_coordinator()
        _, invoice = _approved(coordinator)
        coordinator.update_invoice_status(invoice, "cancelled", MANAGER)
        with pytest.raises(InvalidTransitionError):
            coordinator.update_invoice_status(invoice, "pending", MANAGER)

    def test_unknown_status(self):
        coordinator, _ = build_coordinator()
        _, invoice = _approved(coordinator)
        with pytest.raises(ValidationError):
            coordinator.update_invoice_status(invoice, "settled", MANAGER)


# ═════════════════════════════════════════════════════════════════════════════
# Projects
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateProjectFromProposal:
    def test_unpaid_invoice_blocks_project(self):
        coordinator, fakes = build_coordinator()
        proposal, _ = _approved(coordinator)
        assert coordinator.can_create_project(proposal) is False
        with pytest.raises(PaymentRequiredError) as exc_info:
            coordinator.create_project_from_proposal(proposal, MANAGER)
        assert exc_info.value.invoice_status == "pending"
        assert fakes["projects"].projects == {}

    def test_no_invoice_blocks_project(self):
        coordinator, _ = build_coordinator()
        proposal = coordinator.create_proposal(MANAGER, "Acme")
        with pytest.raises(PaymentRequiredError):
            coordinator.create_project_from_proposal(proposal, MANAGER)

    def test_partial_payment_seeds_work_breakdown(self):
        coordinator, fakes = build_coordinator()
        proposal, invoice = _approved(coordinator)
        coordinator.record_payment(invoice, 100, CUSTOMER)
        project = coordinator.create_project_from_proposal(proposal, MANAGER)

        assert project.title == f"Acme Homes - {proposal.proposal_number}"
        assert project.total_budget == pytest.approx(1650)
        assert project.client_budget == pytest.approx(1650)
        assert [i.name for i in project.work_items] == ["Demolition", "Tile"]
        assert [i.order_index for i in project.work_items] == [0, 1]
        assert project.work_items[1].price == pytest.approx(500)
        assert [c.name for c in project.work_items[0].children] == ["Strip cabinets", "Haul"]
        assert project.progress_percentage == 0
        assert invoice.project_id == project.id
        assert fakes["projects"].get_project_by_id(project.id) is project

    def test_second_project_for_same_proposal_conflicts(self):
        coordinator, _ = build_coordinator()
        proposal, invoice = _approved(coordinator)
        coordinator.record_payment(invoice, 1650, CUSTOMER)
        coordinator.create_project_from_proposal(proposal, MANAGER, title="Kitchen")
        with pytest.raises(ConflictError):
            coordinator.create_project_from_proposal(proposal, MANAGER)

    def test_retry_after_failed_invoice_link_reuses_project(self):
        failures = []

        def link_fails_once(kind, target):
            if kind == "update_invoice" and not failures:
                failures.append(target)
                return True
            return False

        coordinator, fakes = build_coordinator()
        proposal, invoice = _approved(coordinator)
        coordinator.record_payment(invoice, 1650, CUSTOMER)
        fakes["invoices"].fail_on = link_fails_once
        with pytest.raises(PersistenceFailure):
            coordinator.create_project_from_proposal(proposal, MANAGER)
        # Reloaded from storage: the link never landed
        invoice.project_id = None

        project = coordinator.create_project_from_proposal(proposal, MANAGER)
        assert len(fakes["projects"].projects) == 1
        assert invoice.project_id == project.id
        assert fakes["projects"].get_project_by_proposal_id(proposal.id) is project
        with pytest.raises(ConflictError):
            coordinator.create_project_from_proposal(proposal, MANAGER)

    def test_project_store_failure_is_reported(self):
        coordinator, _ = build_coordinator(projects=lambda kind, target: kind == "create_project")
        proposal, invoice = _approved(coordinator)
        coordinator.record_payment(invoice, 1650, CUSTOMER)
        with pytest.raises(PersistenceFailure):
            coordinator.create_project_from_proposal(proposal, MANAGER)
        assert invoice.project_id is None


class TestMarkProjectComplete:
    def test_complete_when_everything_finished(self):
        coordinator, fakes = build_coordinator()
        project = make_project(item("a", status="finished",
                                    children=[child("c1", "finished")]), progress=100)
        fakes["projects"].projects[project.id] = project
        assert can_mark_project_complete(project)
        coordinator.mark_project_complete(project, MANAGER)
        assert project.status == ProjectStatus.COMPLETED
        assert project.progress_percentage == 100
        assert project.completed_by == "mgr-1"

    def test_unfinished_step_blocks_completion(self):
        coordinator, _ = build_coordinator()
        project = make_project(item("a", status="finished"), item("b", status="in_progress"))
        with pytest.raises(InvalidTransitionError):
            coordinator.mark_project_complete(project, MANAGER)
        assert project.status == ProjectStatus.ACTIVE

    def test_empty_project_cannot_complete(self):
        coordinator, _ = build_coordinator()
        with pytest.raises(InvalidTransitionError):
            coordinator.mark_project_complete(make_project(), MANAGER)

    def test_completion_is_one_way_and_locks_steps(self):
        coordinator, fakes = build_coordinator()
        project = make_project(item("a", status="finished"))
        fakes["projects"].projects[project.id] = project
        coordinator.mark_project_complete(project, MANAGER)
        with pytest.raises(InvalidTransitionError):
            coordinator.mark_project_complete(project, MANAGER)
        with pytest.raises(InvalidTransitionError):
            coordinator.step_store(project).set_status("a", StepStatus.PENDING)


# ═════════════════════════════════════════════════════════════════════════════
# Change orders
# ═════════════════════════════════════════════════════════════════════════════


class TestChangeOrders:
    def _order(self, coordinator, project, price=300):
        return coordinator.create_change_order(
            project, MANAGER, "Add island",
            work_titles=[{"name": "Island", "price": price, "descriptions": ["Plumb sink", " "]}],
        )

    def test_create_pending_with_breakdown(self):
        coordinator, fakes = build_coordinator()
        project = make_project(item("a"))
        order = self._order(coordinator, project)
        assert order.status == ChangeOrderStatus.PENDING
        assert order.completion_status == StepStatus.PENDING
        assert order.total_price() == pytest.approx(300)
        assert [c.name for c in order.breakdown.items[0].children] == ["Plumb sink"]
        assert fakes["change_orders"].get_change_order_by_id(order.id) is order

    def test_title_required(self):
        coordinator, _ = build_coordinator()
        with pytest.raises(ValidationError):
            coordinator.create_change_order(make_project(), MANAGER, "")

    def test_only_approved_orders_add_to_budget(self):
        coordinator, _ = build_coordinator()
        project = make_project(item("a"))
        approved = self._order(coordinator, project, price=300)
        rejected = self._order(coordinator, project, price=700)
        self._order(coordinator, project, price=50)
        coordinator.approve_change_order(approved, MANAGER)
        coordinator.reject_change_order(rejected, MANAGER, "Not needed")

        totals = coordinator.change_order_totals(project)
        assert totals["approved_change_orders_total"] == pytest.approx(300)
        assert totals["total_with_changes"] == pytest.approx(10300)
        assert len(totals["change_orders"]) == 3
        assert approved_change_orders_total([approved, rejected]) == pytest.approx(300)
        assert total_with_changes(project, []) == pytest.approx(10000)

    def test_decided_order_cannot_be_decided_again(self):
        coordinator, _ = build_coordinator()
        order = self._order(coordinator, make_project())
        coordinator.approve_change_order(order, MANAGER)
        with pytest.raises(InvalidTransitionError):
            coordinator.reject_change_order(order, MANAGER, "Changed mind")

    def test_reject_needs_reason(self):
        coordinator, _ = build_coordinator()
        order = self._order(coordinator, make_project())
        with pytest.raises(ValidationError):
            coordinator.reject_change_order(order, MANAGER, " ")
        assert order.status == ChangeOrderStatus.PENDING

    def test_completion_is_independent_of_approval(self):
        coordinator, fakes = build_coordinator()
        order = self._order(coordinator, make_project())
        coordinator.set_change_order_completion(order, "finished", MANAGER)
        assert order.completion_status == StepStatus.FINISHED
        assert order.status == ChangeOrderStatus.PENDING
        assert fakes["change_orders"].calls[-1] == (
            "update_change_order", order.id, {"completion_status": "finished"},
        )
        assert fakes["change_orders"].actors[-1] == "mgr-1"

    def test_change_order_steps_use_their_own_store(self):
        coordinator, fakes = build_coordinator()
        order = self._order(coordinator, make_project())
        store = coordinator.change_order_store(order)
        store.add_work_item("Pendant lights", price=150)
        assert order.total_price() == pytest.approx(450)
        assert fakes["steps"].calls[0][2]["owner_kind"] == "change_order"
        assert fakes["projects"].calls == []
