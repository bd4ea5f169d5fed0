"""
Approval pipeline tests.

Verifies:
- Fail-fast stages (authorize, load, validate, persist) abort with typed errors
- Fail-soft stages (notify, audit, invalidate) never undo a committed decision
- Double approval and racing approvals cannot double-apply side effects
- Edits reopen review and keep the old decision in the audit log
"""

import pytest
from sqlalchemy import text

from pepi.errors import (
    ConflictError,
    DependencyFailure,
    InvalidState,
    NotFound,
    TypeMismatch,
    Unauthorized,
    ValidationError,
)
from pepi.extensions import db
from pepi.models import AuditLogEntry, PepiBook, Transaction
from pepi.services import approval_service, ledger_service, transaction_service
from pepi.services.approval_service import StagePolicy, process_approval
from pepi.services.transaction_service import SPENDING_REVIEW


@pytest.fixture
def spending(agent_actor, active_book):
    return transaction_service.create_transaction(
        agent_actor, "spending", 15000, description="Buy money", paid_to="CI-12", case_number="24-118"
    )


def _audit_actions(entity_id):
    rows = (
        db.session.query(AuditLogEntry)
        .filter(AuditLogEntry.entity_type == "transaction", AuditLogEntry.entity_id == str(entity_id))
        .order_by(AuditLogEntry.id.asc())
        .all()
    )
    return [row.action for row in rows]


# =============================================================================
# HAPPY PATH
# =============================================================================


class TestApproveSpending:

    def test_approve_sets_review_fields_and_notifies(self, outbox, admin_actor, spending):
        result = transaction_service.approve_spending_transaction(admin_actor, spending.id, "Receipt verified")

        assert result.success
        assert result.status == "approved"
        assert result.warnings == []
        tx = db.session.get(Transaction, spending.id)
        assert tx.status == "approved"
        assert tx.reviewed_by_user_id == "admin-uid"
        assert tx.reviewed_at is not None
        assert tx.review_notes == "Receipt verified"

        assert len(outbox.sent) == 1
        message = outbox.sent[0]
        assert message.to == ("brooks@pepi.test",)
        assert message.subject == "Spending Transaction Approved: $150.00"
        assert message.tags == {"transaction_id": str(spending.id)}
        assert "CI-12" in message.html

        assert "approve" in _audit_actions(spending.id)
        assert "email_sent" in _audit_actions(spending.id)

    def test_reject_records_reason(self, outbox, admin_actor, spending):
        result = transaction_service.reject_spending_transaction(admin_actor, spending.id, "needs receipt")

        tx = result.item
        assert tx.status == "rejected"
        assert tx.review_notes == "needs receipt"
        assert outbox.sent[0].subject == "Spending Transaction Rejected: $150.00"
        assert "needs receipt" in outbox.sent[0].html
        assert "reject" in _audit_actions(spending.id)

    def test_to_dict_shape(self, outbox, admin_actor, spending):
        payload = transaction_service.approve_spending_transaction(admin_actor, spending.id).to_dict()
        assert payload["success"] is True
        assert payload["transaction"]["status"] == "approved"
        assert payload["notification"]["status"] == "sent"


# =============================================================================
# FAIL-FAST STAGES
# =============================================================================


class TestGuards:

    def test_non_admin_is_unauthorized_and_audited(self, outbox, agent_actor, spending):
        with pytest.raises(Unauthorized):
            transaction_service.approve_spending_transaction(agent_actor, spending.id)

        assert db.session.get(Transaction, spending.id).status == "pending"
        denied = db.session.query(AuditLogEntry).filter_by(action="permission_denied").all()
        assert len(denied) == 1
        assert denied[0].user_id == "agent-uid"
        assert outbox.sent == []

    def test_missing_actor_is_unauthorized(self, outbox, spending):
        with pytest.raises(Unauthorized):
            transaction_service.approve_spending_transaction(None, spending.id)

    def test_unknown_transaction(self, outbox, admin_actor, active_book):
        with pytest.raises(NotFound):
            transaction_service.approve_spending_transaction(admin_actor, 9999)

    def test_spending_action_rejects_other_types(self, outbox, admin_actor, agent_actor, active_book):
        issuance = transaction_service.create_transaction(agent_actor, "issuance", 500)
        with pytest.raises(TypeMismatch, match="Only spending"):
            transaction_service.approve_spending_transaction(admin_actor, issuance.id)
        assert db.session.get(Transaction, issuance.id).status == "pending"

    def test_double_approve_is_invalid_state_with_one_notification(self, outbox, admin_actor, active_book, spending):
        transaction_service.approve_spending_transaction(admin_actor, spending.id)
        balance_after_first = ledger_service.get_book_balance(active_book)

        with pytest.raises(InvalidState, match="already been processed"):
            transaction_service.approve_spending_transaction(admin_actor, spending.id)
        with pytest.raises(InvalidState):
            transaction_service.reject_spending_transaction(admin_actor, spending.id, "too late")

        assert len(outbox.sent) == 1
        assert ledger_service.get_book_balance(active_book) == balance_after_first
        assert _audit_actions(spending.id).count("approve") == 1

    def test_racing_approval_gets_conflict(self, outbox, admin_actor, spending):
        tx = db.session.get(Transaction, spending.id)
        assert tx.status == "pending"  # loads the row into the identity map

        # Another reviewer wins between our read and our write.
        db.session.execute(
            text("UPDATE transactions SET status = 'approved' WHERE id = :id"), {"id": spending.id}
        )

        with pytest.raises(ConflictError):
            transaction_service.approve_spending_transaction(admin_actor, spending.id)
        assert outbox.sent == []
        assert "approve" not in _audit_actions(spending.id)

    def test_closed_book_cannot_be_reviewed(self, outbox, admin_actor, active_book, spending):
        from pepi.services import book_service
        book_service.close_book(admin_actor, active_book.id)

        with pytest.raises(InvalidState, match="closed"):
            transaction_service.approve_spending_transaction(admin_actor, spending.id)

    def test_book_closed_just_before_the_write_refuses_approval(
        self, outbox, admin_actor, active_book, spending, monkeypatch
    ):
        real_update = approval_service.conditional_update

        def close_then_update(*args, **kwargs):
            # Another admin closes the book after our checks passed.
            db.session.execute(
                text(
                    "UPDATE pepi_books SET is_closed = 1, is_active = 0, closing_balance_cents = 100000 "
                    "WHERE id = :id"
                ),
                {"id": active_book.id},
            )
            db.session.commit()
            return real_update(*args, **kwargs)

        monkeypatch.setattr(approval_service, "conditional_update", close_then_update)

        with pytest.raises(InvalidState, match="closed"):
            transaction_service.approve_spending_transaction(admin_actor, spending.id)

        book = db.session.get(PepiBook, active_book.id, populate_existing=True)
        assert book.is_closed
        assert db.session.get(Transaction, spending.id).status == "pending"
        assert ledger_service.get_book_balance(book) == book.closing_balance_cents
        assert outbox.sent == []

    def test_edit_between_read_and_approval_gets_conflict(self, outbox, admin_actor, spending):
        tx = db.session.get(Transaction, spending.id)
        assert tx.version == 1  # loads the row into the identity map

        # The agent changes the amount after the admin looked at it.
        db.session.execute(
            text("UPDATE transactions SET amount_cents = 99000, version = version + 1 WHERE id = :id"),
            {"id": spending.id},
        )

        with pytest.raises(ConflictError):
            transaction_service.approve_spending_transaction(admin_actor, spending.id)
        assert db.session.get(Transaction, spending.id, populate_existing=True).status == "pending"
        assert outbox.sent == []

    def test_approval_bumps_version(self, outbox, admin_actor, spending):
        result = transaction_service.approve_spending_transaction(admin_actor, spending.id)
        assert result.item.version == 2


# =============================================================================
# FAIL-SOFT STAGES
# =============================================================================


class TestBestEffortSideEffects:

    def test_email_outage_does_not_fail_approval(self, outbox, admin_actor, spending):
        outbox.fail = True

        result = transaction_service.approve_spending_transaction(admin_actor, spending.id)

        assert result.success
        assert db.session.get(Transaction, spending.id).status == "approved"
        assert result.notification is None
        assert any(w.startswith("notify:") for w in result.warnings)
        assert "email_failed" in _audit_actions(spending.id)
        assert "approve" in _audit_actions(spending.id)

    def test_missing_recipient_email_is_a_warning(self, outbox, admin_actor, agent, spending):
        agent.email = None
        db.session.commit()

        result = transaction_service.approve_spending_transaction(admin_actor, spending.id)

        assert result.status == "approved"
        assert any("No email address" in w for w in result.warnings)
        assert outbox.sent == []

    def test_audit_failure_does_not_fail_approval(self, outbox, admin_actor, spending, monkeypatch):
        def broken_audit(*args, **kwargs):
            raise DependencyFailure("audit table unavailable")

        monkeypatch.setattr(approval_service, "write_entry", broken_audit)

        result = transaction_service.approve_spending_transaction(admin_actor, spending.id)

        assert result.status == "approved"
        assert any(w.startswith("audit:") for w in result.warnings)
        assert len(outbox.sent) == 1

    def test_invalidation_runs(self, outbox, admin_actor, active_book, spending):
        from pepi.services import book_service
        from pepi.services.view_cache import get_view_cache

        before = book_service.get_book_summary(active_book.id)
        assert get_view_cache().is_cached(active_book.id)

        transaction_service.approve_spending_transaction(admin_actor, spending.id)

        assert not get_view_cache().is_cached(active_book.id)
        after = book_service.get_book_summary(active_book.id)
        assert after["balance_cents"] == before["balance_cents"] - 15000


class TestStagePolicy:

    def test_default_policy(self):
        policy = StagePolicy()
        assert not policy.is_fail_soft("persist")
        assert policy.is_fail_soft("notify")
        assert policy.is_fail_soft("audit")

    def test_persist_cannot_be_fail_soft(self):
        with pytest.raises(ValueError):
            StagePolicy(
                fail_fast=frozenset({"authorize", "load", "validate"}),
                fail_soft=frozenset({"persist", "notify", "audit", "invalidate"}),
            )

    def test_every_stage_needs_a_policy(self):
        with pytest.raises(ValueError):
            StagePolicy(fail_fast=frozenset({"authorize"}), fail_soft=frozenset({"notify"}))

    def test_strict_policy_surfaces_notification_failure(self, outbox, admin_actor, spending):
        strict = StagePolicy(
            fail_fast=frozenset({"authorize", "load", "validate", "persist", "notify"}),
            fail_soft=frozenset({"audit", "invalidate"}),
        )
        outbox.fail = True

        with pytest.raises(DependencyFailure):
            process_approval(SPENDING_REVIEW, spending.id, "approve", admin_actor, policy=strict)
        # The decision was committed before the notify stage ran.
        assert db.session.get(Transaction, spending.id).status == "approved"


# =============================================================================
# EDIT / RESUBMIT
# =============================================================================


class TestResubmission:

    def test_rejected_then_edited_returns_to_pending(self, outbox, admin_actor, agent_actor, spending):
        transaction_service.reject_spending_transaction(admin_actor, spending.id, "needs receipt")

        tx = transaction_service.edit_transaction(agent_actor, spending.id, {"receipt_number": "R-77"})

        assert tx.status == "pending"
        assert tx.review_notes is None
        assert tx.reviewed_at is None
        assert tx.reviewed_by_user_id is None
        assert tx.receipt_number == "R-77"

        update_entry = (
            db.session.query(AuditLogEntry)
            .filter_by(action="update", entity_type="transaction", entity_id=str(spending.id))
            .one()
        )
        assert update_entry.details["previous_review"]["status"] == "rejected"
        assert update_entry.details["previous_review"]["review_notes"] == "needs receipt"

    def test_approved_edit_drops_out_of_balance(self, outbox, admin_actor, agent_actor, active_book, spending):
        transaction_service.approve_spending_transaction(admin_actor, spending.id)
        assert ledger_service.get_book_balance(active_book) == 100000 - 15000

        transaction_service.edit_transaction(agent_actor, spending.id, {"amount_cents": 12000})

        assert ledger_service.get_book_balance(active_book) == 100000

    def test_other_agent_cannot_edit(self, outbox, other_actor, spending):
        with pytest.raises(Unauthorized):
            transaction_service.edit_transaction(other_actor, spending.id, {"description": "mine now"})

    def test_agent_cannot_reassign(self, outbox, agent_actor, other_agent, spending):
        with pytest.raises(Unauthorized):
            transaction_service.edit_transaction(agent_actor, spending.id, {"agent_id": other_agent.id})

    def test_edit_in_closed_book_is_invalid(self, outbox, admin_actor, agent_actor, active_book, spending):
        from pepi.services import book_service
        book_service.close_book(admin_actor, active_book.id)

        with pytest.raises(InvalidState):
            transaction_service.edit_transaction(agent_actor, spending.id, {"amount_cents": 1})

    def test_failed_edit_leaves_row_untouched(self, outbox, agent_actor, spending):
        with pytest.raises(ValidationError):
            transaction_service.edit_transaction(
                agent_actor, spending.id, {"receipt_number": "R-99", "amount_cents": -5}
            )

        tx = db.session.get(Transaction, spending.id)
        assert not db.session.is_modified(tx)
        assert tx.receipt_number is None
        assert tx.amount_cents == 15000
        assert tx.version == 1

    def test_edit_after_book_closed_underneath_is_refused(
        self, outbox, agent_actor, active_book, spending, monkeypatch
    ):
        real_update = transaction_service.conditional_update

        def close_then_update(*args, **kwargs):
            db.session.execute(
                text(
                    "UPDATE pepi_books SET is_closed = 1, is_active = 0, closing_balance_cents = 100000 "
                    "WHERE id = :id"
                ),
                {"id": active_book.id},
            )
            db.session.commit()
            return real_update(*args, **kwargs)

        monkeypatch.setattr(transaction_service, "conditional_update", close_then_update)

        with pytest.raises(InvalidState, match="closed"):
            transaction_service.edit_transaction(agent_actor, spending.id, {"amount_cents": 1})

        assert db.session.get(Transaction, spending.id, populate_existing=True).amount_cents == 15000
