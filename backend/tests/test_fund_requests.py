"""
Fund request tests.

Verifies:
- Requests go to the active book and announce themselves to admins
- Approval creates exactly one linked, approved issuance
- Rejection records the reason and never touches the ledger
"""

import pytest

from pepi.errors import InvalidState, Unauthorized, ValidationError
from pepi.extensions import db
from pepi.models import FundRequest, Transaction
from pepi.services import fund_request_service, ledger_service


class TestCreateFundRequest:

    def test_agent_request_is_pending_and_admins_emailed(self, outbox, admin, agent_actor, active_book):
        request = fund_request_service.create_fund_request(agent_actor, 20000, case_number="24-118")

        assert request.status == "pending"
        assert request.pepi_book_id == active_book.id
        assert request.agent_id == agent_actor.agent_id
        assert len(outbox.sent) == 1
        assert outbox.sent[0].to == ("admin@pepi.test",)
        assert outbox.sent[0].subject == "New Fund Request: $200.00 from Agent Brooks"

    def test_request_without_active_book(self, outbox, agent_actor):
        with pytest.raises(InvalidState):
            fund_request_service.create_fund_request(agent_actor, 20000)

    def test_agent_cannot_request_for_someone_else(self, outbox, agent_actor, other_agent, active_book):
        with pytest.raises(Unauthorized):
            fund_request_service.create_fund_request(agent_actor, 20000, agent_id=other_agent.id)

    def test_amount_must_be_positive(self, outbox, agent_actor, active_book):
        with pytest.raises(ValidationError):
            fund_request_service.create_fund_request(agent_actor, 0)

    def test_email_outage_does_not_block_request(self, outbox, admin, agent_actor, active_book):
        outbox.fail = True
        request = fund_request_service.create_fund_request(agent_actor, 20000)
        assert db.session.get(FundRequest, request.id).status == "pending"


class TestReviewFundRequest:

    def test_approve_creates_linked_issuance(self, outbox, admin_actor, agent_actor, active_book):
        request = fund_request_service.create_fund_request(agent_actor, 20000, case_number="24-118")

        result = fund_request_service.approve_fund_request(admin_actor, request.id)

        fr = result.item
        assert fr.status == "approved"
        assert fr.transaction_id is not None
        tx = db.session.get(Transaction, fr.transaction_id)
        assert tx.transaction_type == "issuance"
        assert tx.status == "approved"
        assert tx.amount_cents == 20000
        assert tx.agent_id == agent_actor.agent_id
        assert tx.case_number == "24-118"
        assert ledger_service.get_book_balance(active_book) == 120000
        assert outbox.sent[-1].subject == "Fund Request Approved: $200.00"

    def test_double_approve_creates_one_issuance(self, outbox, admin_actor, agent_actor, active_book):
        request = fund_request_service.create_fund_request(agent_actor, 20000)
        fund_request_service.approve_fund_request(admin_actor, request.id)

        with pytest.raises(InvalidState):
            fund_request_service.approve_fund_request(admin_actor, request.id)

        assert db.session.query(Transaction).count() == 1

    def test_reject_records_reason(self, outbox, admin_actor, agent_actor, active_book):
        request = fund_request_service.create_fund_request(agent_actor, 20000)

        result = fund_request_service.reject_fund_request(admin_actor, request.id, "Use existing advance")

        assert result.item.status == "rejected"
        assert result.item.rejection_reason == "Use existing advance"
        assert result.item.transaction_id is None
        assert db.session.query(Transaction).count() == 0
        assert ledger_service.get_book_balance(active_book) == 100000

    def test_agents_see_only_their_requests(self, outbox, agent_actor, other_actor, admin_actor, active_book):
        fund_request_service.create_fund_request(agent_actor, 1000)
        fund_request_service.create_fund_request(other_actor, 2000)

        mine = fund_request_service.list_fund_requests(agent_actor)
        everything = fund_request_service.list_fund_requests(admin_actor)

        assert [r.amount_cents for r in mine] == [1000]
        assert len(everything) == 2
