"""
Dispute negotiation after delivery.
"""
from datetime import timedelta

import pytest

from tradeflow.extensions import db
from tradeflow.models import (
    DisputeStatus,
    DisputePriority,
    DisputeResolution,
)
from tradeflow.services import dispute_service
from tradeflow.utils import utcnow

EVIDENCE = [{'type': 'photo', 'url': 'https://files.example.com/dent.jpg'}]


def _delivered_days_ago(order, days):
    order.delivered_at = utcnow() - timedelta(days=days)
    db.session.commit()


def _open(order, buyer, **overrides):
    kwargs = dict(
        reason='damaged_goods',
        description='Two pipes arrived dented',
        requested_resolution='partial_refund',
        requested_amount=50,
        evidence=EVIDENCE,
    )
    kwargs.update(overrides)
    return dispute_service.create_dispute(order.id, buyer.id, **kwargs)


@pytest.fixture
def dispute(delivered_order, buyer):
    result = _open(delivered_order, buyer)
    assert result['success'], result
    return result['data']


class TestCreateDispute:

    def test_window_expired_after_fifteen_days(self, delivered_order, buyer):
        _delivered_days_ago(delivered_order, 15)

        result = _open(delivered_order, buyer)

        assert result['success'] is False
        assert result['code'] == 'WINDOW_EXPIRED'
        assert result['error'] == 'Dispute window has expired'

    def test_open_within_window(self, delivered_order, buyer):
        _delivered_days_ago(delivered_order, 13)

        result = _open(delivered_order, buyer)

        assert result['success']
        dispute = result['data']
        assert dispute.status == DisputeStatus.OPEN
        assert dispute.dispute_number.startswith('DSP-')
        assert dispute.priority == DisputePriority.MEDIUM
        assert dispute.response_deadline > utcnow()
        assert dispute.evidence == EVIDENCE

    def test_one_active_dispute_per_order(self, dispute, delivered_order,
                                          buyer):
        result = _open(delivered_order, buyer)

        assert result['code'] == 'DISPUTE_EXISTS'
        assert dispute_service.has_active_dispute(delivered_order.id)

    def test_requires_delivered_order(self, order, buyer):
        assert _open(order, buyer)['code'] == 'INVALID_STATE'

    def test_only_the_buyer_opens(self, delivered_order, other_buyer):
        assert _open(delivered_order, other_buyer)['code'] == 'UNAUTHORIZED'

    def test_evidence_needs_url(self, delivered_order, buyer):
        result = _open(delivered_order, buyer, evidence=[{'type': 'photo'}])

        assert result['code'] == 'VALIDATION_ERROR'
        assert 'evidence[0].url' in result['error']

    def test_requested_amount_capped_by_order(self, delivered_order, buyer):
        result = _open(delivered_order, buyer, requested_amount=900)

        assert result['code'] == 'INVALID_AMOUNT'

    def test_priority_follows_order_value(self):
        assert dispute_service.priority_for(12000) == DisputePriority.URGENT
        assert dispute_service.priority_for(6000) == DisputePriority.HIGH
        assert dispute_service.priority_for(5000) == DisputePriority.MEDIUM


class TestSellerResponse:

    def test_accept_responsibility_resolves_immediately(self, dispute,
                                                        seller):
        """
        Accepting responsibility resolves the dispute in the same call,
        without a buyer step.
        """
        result = dispute_service.seller_respond(
            dispute.id, seller.id, 'accept_responsibility',
            'Our packing failed, refunding in full')

        assert result['success']
        assert dispute.status == DisputeStatus.RESOLVED
        assert dispute.resolved_by == 'seller_accepted'
        assert dispute.resolution == DisputeResolution.FULL_REFUND
        assert dispute.resolved_at is not None

    def test_review_then_propose(self, dispute, seller):
        assert dispute_service.mark_under_review(
            dispute.id, seller.id)['success']
        assert dispute.status == DisputeStatus.UNDER_REVIEW

        result = dispute_service.seller_respond(
            dispute.id, seller.id, 'propose_resolution', 'Refund 40',
            proposed_resolution='partial_refund', proposed_amount=40)

        assert result['success']
        assert dispute.status == DisputeStatus.SELLER_RESPONDED
        assert float(dispute.seller_proposed_amount) == 40.0

    def test_proposal_needs_resolution(self, dispute, seller):
        result = dispute_service.seller_respond(
            dispute.id, seller.id, 'propose_resolution', 'Something')

        assert result['code'] == 'VALIDATION_ERROR'
        assert dispute.status == DisputeStatus.OPEN

    def test_stranger_cannot_respond(self, dispute, other_seller):
        result = dispute_service.seller_respond(
            dispute.id, other_seller.id, 'reject', 'No')

        assert result['code'] == 'UNAUTHORIZED'


class TestBuyerDecision:

    def _propose(self, dispute, seller):
        dispute_service.seller_respond(
            dispute.id, seller.id, 'propose_resolution', 'Refund 40',
            proposed_resolution='partial_refund', proposed_amount=40)

    def test_buyer_accepts_proposal(self, dispute, seller, buyer):
        self._propose(dispute, seller)

        result = dispute_service.buyer_accept_resolution(dispute.id, buyer.id)

        assert result['success']
        assert dispute.status == DisputeStatus.RESOLVED
        assert dispute.resolved_by == 'buyer_accepted'
        assert dispute.resolution == DisputeResolution.PARTIAL_REFUND
        assert float(dispute.resolution_amount) == 40.0

    def test_buyer_rejects_proposal(self, dispute, seller, buyer,
                                    delivered_order):
        self._propose(dispute, seller)

        result = dispute_service.buyer_reject_resolution(
            dispute.id, buyer.id, 'Not enough')

        assert result['success']
        assert dispute.status == DisputeStatus.REJECTED
        assert not dispute_service.has_active_dispute(delivered_order.id)

    def test_nothing_to_accept_after_seller_rejects(self, dispute, seller,
                                                    buyer):
        dispute_service.seller_respond(dispute.id, seller.id, 'reject',
                                       'Goods left intact')

        result = dispute_service.buyer_accept_resolution(dispute.id, buyer.id)

        assert result['code'] == 'INVALID_STATE'
        assert dispute.status == DisputeStatus.SELLER_RESPONDED

    def test_accept_requires_seller_response(self, dispute, buyer):
        result = dispute_service.buyer_accept_resolution(dispute.id, buyer.id)

        assert result['code'] == 'INVALID_STATE'


class TestEscalationAndClosing:

    def test_escalate_after_seller_response(self, dispute, seller, buyer):
        dispute_service.seller_respond(dispute.id, seller.id, 'reject',
                                       'Goods left intact')

        result = dispute_service.escalate_dispute(
            dispute.id, buyer.id, 'Photos prove damage')

        assert result['success']
        assert dispute.status == DisputeStatus.ESCALATED
        assert dispute.is_escalated is True
        assert dispute.escalation_reason == 'Photos prove damage'
        assert dispute.priority == DisputePriority.URGENT

    def test_cannot_escalate_open_dispute(self, dispute, buyer):
        result = dispute_service.escalate_dispute(dispute.id, buyer.id, 'x')

        assert result['code'] == 'INVALID_STATE'

    def _escalate(self, dispute, seller, buyer):
        dispute_service.seller_respond(dispute.id, seller.id, 'reject', 'No')
        dispute_service.escalate_dispute(dispute.id, buyer.id, 'Unfair')

    def test_platform_resolves_escalation(self, dispute, seller, buyer,
                                          admin):
        self._escalate(dispute, seller, buyer)

        result = dispute_service.resolve_dispute(
            dispute.id, admin.id, 'return_and_refund',
            resolution_amount=250, notes='Return then refund',
            actor_role='ADMIN')

        assert result['success']
        assert dispute.status == DisputeStatus.RESOLVED
        assert dispute.resolved_by == 'platform'

    def test_parties_cannot_decide_their_own_dispute(self, dispute, seller,
                                                     buyer):
        self._escalate(dispute, seller, buyer)

        for actor_id, role in ((buyer.id, 'BUYER'), (seller.id, 'SELLER'),
                               (buyer.id, 'ADMIN'), (seller.id, None)):
            result = dispute_service.resolve_dispute(
                dispute.id, actor_id, 'full_refund', resolution_amount=250,
                actor_role=role)
            assert result['code'] == 'UNAUTHORIZED'

        assert dispute.status == DisputeStatus.ESCALATED
        assert dispute.resolved_by is None

    def test_admin_role_needs_an_admin_account(self, dispute, seller, buyer,
                                               other_buyer):
        self._escalate(dispute, seller, buyer)

        result = dispute_service.resolve_dispute(
            dispute.id, other_buyer.id, 'full_refund', actor_role='ADMIN')

        assert result['code'] == 'UNAUTHORIZED'

    def test_close_only_from_resolved(self, dispute, seller, buyer):
        assert dispute_service.close_dispute(
            dispute.id, buyer.id)['code'] == 'INVALID_STATE'

        dispute_service.seller_respond(dispute.id, seller.id,
                                       'accept_responsibility', 'Sorry')
        result = dispute_service.close_dispute(dispute.id, buyer.id)

        assert result['success']
        assert dispute.status == DisputeStatus.CLOSED
        assert dispute_service.escalate_dispute(
            dispute.id, buyer.id, 'late')['code'] == 'INVALID_STATE'

    def test_transitions_are_audited(self, dispute, seller):
        dispute_service.mark_under_review(dispute.id, seller.id)
        dispute_service.seller_respond(dispute.id, seller.id,
                                       'accept_responsibility', 'Sorry')

        history = dispute_service.get_dispute_history(dispute.id)

        assert [(h.from_status, h.to_status) for h in history] == [
            (None, 'open'),
            ('open', 'under_review'),
            ('under_review', 'resolved'),
        ]


class TestEvidenceAndQueries:

    def test_add_evidence_appends(self, dispute, buyer):
        extra = [{'type': 'document', 'url': 'https://files.example.com/a'}]

        result = dispute_service.add_evidence(dispute.id, buyer.id, extra)

        assert result['success']
        assert len(dispute.evidence) == 2

    def test_stats_and_listing(self, dispute, buyer, seller):
        stats = dispute_service.get_dispute_stats(seller_id=seller.id)

        assert stats['open'] == 1
        assert stats['active'] == 1
        assert stats['total'] == 1
        assert len(dispute_service.list_disputes(buyer_id=buyer.id)) == 1
        assert dispute_service.get_dispute(
            dispute.id, seller.id)['success']
