"""
Flask-SQLAlchemy adapter tests (in-memory SQLite via the ``session`` fixture).

Covers:
    - PROP / INV numbering
    - proposal → invoice → project flow against real tables
    - one invoice per proposal (unique constraint → ConflictError)
    - step cascade on delete, project deletion
    - audit rows for lifecycle updates
"""

import pytest

from bluecrew.core.entities import (
    Actor,
    ChangeOrderStatus,
    Invoice,
    InvoiceStatus,
    ManagementApproval,
    StepStatus,
)
from bluecrew.core.exceptions import ConflictError, NotFoundError, PersistenceFailure
from bluecrew.models import db
from bluecrew.models.audit import AuditLog
from bluecrew.models.project import ChangeOrderRecord, ProjectRecord, StepRecord
from bluecrew.models.proposal import InvoiceRecord, ProposalRecord
from bluecrew.services.sql_persistence import (
    SqlInvoiceStore,
    SqlProjectStore,
    SqlProposalStore,
    SqlStepStore,
    build_stores,
)
from bluecrew.services.workflow import WorkflowCoordinator
from bluecrew.utils.helpers import utcnow

from fakes import child, item, make_project

MANAGER = Actor(id="mgr-1", name="Dana Manager", role="admin")
CUSTOMER = Actor(id="cli-1", name="Casey Client", role="client")


@pytest.fixture()
def coordinator():
    return WorkflowCoordinator(**build_stores())


def db_progress(project_id):
    return db.session.get(ProjectRecord, project_id).progress_percentage


def db_step(step_id):
    return db.session.get(StepRecord, step_id)


def _approved(coordinator):
    proposal = coordinator.create_proposal(
        MANAGER, "Acme Homes",
        line_items=[
            {"name": "Demolition", "quantity": 1, "unit_price": 1000, "descriptions": ["Strip", "Haul"]},
            {"name": "Tile", "quantity": 10, "unit_price": 50},
        ],
        gc_percent="10",
        supervision={"type": "part-time", "weeks": 2},
    )
    machine = coordinator.approval_machine(proposal)
    machine.send_for_approval(MANAGER)
    machine.approve_by_management(MANAGER)
    invoice = machine.approve_by_client(CUSTOMER).invoice
    return proposal, invoice


# ═════════════════════════════════════════════════════════════════════════════
# Numbering
# ═════════════════════════════════════════════════════════════════════════════


class TestNumbering:
    def test_proposal_numbers_are_sequential_per_year(self, coordinator):
        year = utcnow().year
        first = coordinator.create_proposal(MANAGER, "Acme")
        second = coordinator.create_proposal(MANAGER, "Globex")
        assert first.proposal_number == f"PROP-{year}-0001"
        assert second.proposal_number == f"PROP-{year}-0002"

    def test_invoice_number_format(self, coordinator):
        _, invoice = _approved(coordinator)
        assert invoice.invoice_number == f"INV-{utcnow().year}-0001"

    def test_duplicate_proposal_number_conflicts(self, coordinator):
        proposal = coordinator.create_proposal(MANAGER, "Acme")
        clone = coordinator.get_proposal(proposal.id)
        clone.id = "another-id"
        with pytest.raises(ConflictError):
            SqlProposalStore().create_proposal(clone)


# ═════════════════════════════════════════════════════════════════════════════
# Proposal → invoice → project
# ═════════════════════════════════════════════════════════════════════════════


class TestLifecycle:
    def test_proposal_round_trips(self, coordinator):
        proposal, _ = _approved(coordinator)
        loaded = coordinator.get_proposal(proposal.id)
        assert loaded.management_approval == ManagementApproval.APPROVED
        assert loaded.client_approval == proposal.client_approval
        assert loaded.supervision.weeks == 2
        assert loaded.supervision_fee == pytest.approx(1450)
        assert loaded.total_cost == pytest.approx(proposal.total_cost)
        assert loaded.line_items[0].descriptions == ["Strip", "Haul"]
        assert loaded.sent_for_approval_by == "mgr-1"

    def test_exactly_one_invoice_row(self, coordinator):
        proposal, invoice = _approved(coordinator)
        again = coordinator.on_both_approvals_approved(coordinator.get_proposal(proposal.id), MANAGER)
        assert again.id == invoice.id
        assert InvoiceRecord.query.filter_by(proposal_id=proposal.id).count() == 1

    def test_unique_constraint_rejects_second_invoice(self, coordinator):
        proposal, invoice = _approved(coordinator)
        duplicate = Invoice(
            id="dup-invoice", invoice_number="INV-1999-0001", proposal_id=proposal.id,
            client_name="Acme Homes", total_cost=1.0,
        )
        with pytest.raises(ConflictError):
            SqlInvoiceStore().create_invoice(duplicate)
        assert InvoiceRecord.query.count() == 1

    def test_payments_persist(self, coordinator):
        _, invoice = _approved(coordinator)
        coordinator.record_payment(invoice, 500, CUSTOMER)
        loaded = coordinator.get_invoice(invoice.id)
        assert loaded.status == InvoiceStatus.PARTIAL_PAID
        assert loaded.paid_amount == pytest.approx(500)
        assert loaded.payments[0].paid_by == "cli-1"
        assert loaded.payments[0].paid_at is not None

    def test_project_seeded_from_paid_invoice(self, coordinator):
        proposal, invoice = _approved(coordinator)
        coordinator.record_payment(invoice, invoice.total_cost, CUSTOMER)
        project = coordinator.create_project_from_proposal(proposal, MANAGER)

        loaded = coordinator.get_project(project.id)
        assert loaded.proposal_id == proposal.id
        assert loaded.total_budget == pytest.approx(invoice.total_cost)
        assert [i.name for i in loaded.work_items] == ["Demolition", "Tile"]
        assert [c.name for c in loaded.work_items[0].children] == ["Strip", "Haul"]
        assert coordinator.get_invoice(invoice.id).project_id == project.id

    def test_one_project_row_per_proposal(self, coordinator):
        proposal, invoice = _approved(coordinator)
        coordinator.record_payment(invoice, invoice.total_cost, CUSTOMER)
        coordinator.create_project_from_proposal(proposal, MANAGER)
        duplicate = make_project(item("dup-1"))
        duplicate.proposal_id = proposal.id
        with pytest.raises(ConflictError):
            SqlProjectStore().create_project(duplicate)
        assert ProjectRecord.query.filter_by(proposal_id=proposal.id).count() == 1

    def test_retry_after_failed_invoice_link(self, coordinator, monkeypatch):
        proposal, invoice = _approved(coordinator)
        coordinator.record_payment(invoice, invoice.total_cost, CUSTOMER)
        real_update = SqlInvoiceStore.update_invoice
        dropped = []

        def drop_first_link(store, invoice_id, fields, actor=None):
            if "project_id" in fields and not dropped:
                dropped.append(fields["project_id"])
                raise RuntimeError("connection reset")
            return real_update(store, invoice_id, fields, actor)

        monkeypatch.setattr(SqlInvoiceStore, "update_invoice", drop_first_link)
        with pytest.raises(PersistenceFailure):
            coordinator.create_project_from_proposal(proposal, MANAGER)
        assert coordinator.get_invoice(invoice.id).project_id is None

        project = coordinator.create_project_from_proposal(coordinator.get_proposal(proposal.id), MANAGER)
        assert project.id == dropped[0]
        assert ProjectRecord.query.filter_by(proposal_id=proposal.id).count() == 1
        assert coordinator.get_invoice(invoice.id).project_id == project.id
        with pytest.raises(ConflictError):
            coordinator.create_project_from_proposal(proposal, MANAGER)

    def test_step_mutations_reach_the_database(self, coordinator):
        proposal, invoice = _approved(coordinator)
        coordinator.record_payment(invoice, invoice.total_cost, CUSTOMER)
        project = coordinator.get_project(
            coordinator.create_project_from_proposal(proposal, MANAGER).id,
        )
        demolition = project.work_items[0]
        store = coordinator.step_store(project)
        store.set_status(demolition.children[0].id, "finished", is_child=True, parent_id=demolition.id)
        store.toggle_manual_override(demolition.children[1].id, demolition.id)

        reloaded = coordinator.get_project(project.id)
        assert reloaded.work_items[0].status == StepStatus.FINISHED
        assert reloaded.work_items[0].children[1].manual_override is True
        assert reloaded.progress_percentage == 50
        assert db_progress(project.id) == 50

        added = store.add_work_item("Paint", price=250).step
        assert db_step(added.id).order_index == 2


# ═════════════════════════════════════════════════════════════════════════════
# Steps & deletion
# ═════════════════════════════════════════════════════════════════════════════


class TestSteps:
    def _project(self):
        project = make_project(
            item("t-1", children=[child("d-1"), child("d-2")]),
            item("t-2"),
        )
        SqlProjectStore().create_project(project)
        return project

    def test_update_missing_step(self):
        with pytest.raises(NotFoundError):
            SqlStepStore().update_step("missing", {"status": "finished"})

    def test_update_ignores_unknown_fields(self):
        self._project()
        SqlStepStore().update_step("t-2", {"status": "in_progress", "owner_id": "hijack"})
        record = db_step("t-2")
        assert record.status == "in_progress"
        assert record.owner_id != "hijack"

    def test_delete_work_title_cascades_descriptions(self):
        self._project()
        SqlStepStore().delete_step("t-1")
        assert db_step("t-1") is None
        assert StepRecord.query.filter_by(parent_step_id="t-1").count() == 0
        assert StepRecord.query.count() == 1

    def test_missing_step_in_batch_becomes_persistence_failure(self):
        project = self._project()
        loaded = SqlProjectStore().get_project_by_id(project.id)
        store = WorkflowCoordinator(**build_stores()).step_store(loaded)
        SqlStepStore().delete_step("t-2")
        with pytest.raises(PersistenceFailure) as exc_info:
            store.set_status("t-2", "finished")
        assert exc_info.value.command.target_id == "t-2"

    def test_delete_project_removes_steps_and_change_orders(self, coordinator):
        project = self._project()
        coordinator.create_change_order(
            project, MANAGER, "Island", work_titles=[{"name": "Island", "price": 300, "descriptions": ["Sink"]}],
        )
        SqlProjectStore().delete_project(project.id)
        assert ProjectRecord.query.count() == 0
        assert ChangeOrderRecord.query.count() == 0
        assert StepRecord.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# Change orders & audit
# ═════════════════════════════════════════════════════════════════════════════


class TestChangeOrdersAndAudit:
    def test_change_order_round_trip(self, coordinator):
        project = make_project(item("t-9"))
        SqlProjectStore().create_project(project)
        order = coordinator.create_change_order(
            project, MANAGER, "Island", work_titles=[{"name": "Island", "price": 300}],
        )
        coordinator.approve_change_order(order, MANAGER)
        loaded = coordinator.get_change_order(order.id)
        assert loaded.status == ChangeOrderStatus.APPROVED
        assert loaded.approved_by == "mgr-1"
        assert loaded.total_price() == pytest.approx(300)
        totals = coordinator.change_order_totals(project)
        assert totals["total_with_changes"] == pytest.approx(10300)

    def test_proposal_lifecycle_is_audited(self, coordinator):
        proposal, invoice = _approved(coordinator)
        actions = [
            row.action for row in
            AuditLog.query.filter_by(entity_type="proposal", entity_id=proposal.id)
            .order_by(AuditLog.id).all()
        ]
        assert actions[0] == "proposal.create"
        assert actions.count("proposal.update") == 3
        approval = (
            AuditLog.query.filter_by(entity_type="proposal", entity_id=proposal.id)
            .filter(AuditLog.diff_json.like("%management_approval%")).first()
        )
        assert approval.actor_id == "mgr-1"
        assert approval.diff["management_approval"] == {"old": "pending", "new": "approved"}
        assert AuditLog.query.filter_by(entity_type="invoice", entity_id=invoice.id).count() == 1

    def test_every_decision_is_audited_with_its_actor(self, coordinator):
        proposal = coordinator.create_proposal(MANAGER, "Acme Homes")
        machine = coordinator.approval_machine(proposal)
        machine.approve_by_management(MANAGER)
        machine.request_changes_by_client(CUSTOMER, "Add a pantry")
        machine.send_back_for_review(MANAGER)
        machine.approve_by_management(MANAGER)
        invoice = machine.approve_by_client(CUSTOMER).invoice
        coordinator.update_invoice_status(invoice, "overdue", MANAGER)

        proposal_actors = [
            row.actor_id for row in
            AuditLog.query.filter_by(entity_type="proposal", action="proposal.update")
            .order_by(AuditLog.id).all()
        ]
        assert proposal_actors == ["mgr-1", "cli-1", "mgr-1", "mgr-1", "cli-1"]
        status_row = AuditLog.query.filter_by(entity_type="invoice", action="invoice.update").one()
        assert status_row.actor_id == "mgr-1"
        assert status_row.actor_name == "Dana Manager"

        loaded = coordinator.get_proposal(proposal.id)
        assert loaded.client_change_requested_by == "cli-1"
        assert loaded.client_change_requested_by_name == "Casey Client"
        assert loaded.client_change_requested_at is not None

    def test_change_order_completion_is_audited(self, coordinator):
        project = make_project(item("t-8"))
        SqlProjectStore().create_project(project)
        order = coordinator.create_change_order(project, MANAGER, "Island")
        coordinator.set_change_order_completion(order, "in_progress", MANAGER)
        row = AuditLog.query.filter_by(entity_type="change_order", action="change_order.update").one()
        assert row.actor_id == "mgr-1"
        assert row.diff["completion_status"] == {"old": "pending", "new": "in_progress"}

    def test_project_completion_is_audited(self, coordinator):
        project = make_project(item("t-5", status="finished"))
        SqlProjectStore().create_project(project)
        coordinator.mark_project_complete(project, MANAGER)
        row = AuditLog.query.filter_by(entity_type="project", action="project.update").one()
        assert row.actor_id == "mgr-1"
        assert row.diff["status"] == {"old": "active", "new": "completed"}

    def test_progress_updates_are_not_audited(self):
        project = make_project(item("t-6"))
        SqlProjectStore().create_project(project)
        SqlProjectStore().update_project(project.id, {"progress_percentage": 40})
        assert AuditLog.query.filter_by(entity_type="project", action="project.update").count() == 0
        assert ProposalRecord.query.count() == 0
