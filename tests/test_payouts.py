"""
Seller payouts built from paid invoices past the hold period.
"""
from datetime import timedelta

import pytest

from tradeflow.extensions import db
from tradeflow.models import (
    InvoiceStatus,
    PayoutStatus,
    SellerBank,
    BankVerificationStatus,
)
from tradeflow.services import (
    dispute_service,
    invoice_service,
    numbering_service,
    payment_service,
    payout_service,
)
from tradeflow.utils import utcnow


def _period():
    now = utcnow()
    return now - timedelta(days=30), now


def _pay_in_full(order, buyer, reference, paid_days_ago=10):
    result = payment_service.record_payment(order.id, buyer.id,
                                            bank_reference=reference)
    assert result['success'], result
    invoice = invoice_service.get_invoice_for_order(order.id)
    assert invoice.status == InvoiceStatus.PAID
    invoice.paid_at = utcnow() - timedelta(days=paid_days_ago)
    db.session.commit()
    return invoice


@pytest.fixture
def paid_invoice(delivered_order, buyer):
    return _pay_in_full(delivered_order, buyer, 'TT-PAYOUT-1')


@pytest.fixture
def payout(paid_invoice, seller, seller_bank):
    result = payout_service.create_payout(seller.id, *_period())
    assert result['success'], result
    return result['data']


class TestCreatePayout:

    def test_payout_aggregates_invoice(self, payout, paid_invoice):
        assert payout.payout_number.startswith('PAY-OUT-')
        assert payout.status == PayoutStatus.PENDING
        assert payout.invoice_count == 1
        assert float(payout.gross_amount) == 250.0
        assert float(payout.platform_fee_amount) == 6.25
        assert float(payout.net_amount) == 243.75
        line = payout.line_items.one()
        assert line.invoice_id == paid_invoice.id

    def test_bank_details_are_copied(self, payout, seller_bank):
        """
        Later bank edits do not touch the payout's bank snapshot.
        """
        assert payout.iban_masked == '*' * 19 + '3456'
        assert payout.account_holder_name == 'Gulf Supply LLC'

        seller_bank.iban = 'AE000000000000000009999'
        seller_bank.bank_name = 'Another Bank'
        db.session.commit()

        assert payout.iban_masked.endswith('3456')
        assert payout.bank_name == 'Emirates NBD'

    def test_numbers_strictly_increase(self, payout, make_order, deliver,
                                       buyer, seller):
        second_order = deliver(make_order())
        _pay_in_full(second_order, buyer, 'TT-PAYOUT-2')

        result = payout_service.create_payout(seller.id, *_period())

        assert result['success'], result
        first_seq = numbering_service.parse_sequence(payout.payout_number)[2]
        second_seq = numbering_service.parse_sequence(
            result['data'].payout_number)[2]
        assert second_seq == first_seq + 1

    def test_requires_approved_bank(self, paid_invoice, seller):
        db.session.add(SellerBank(
            seller_id=seller.id, bank_name='ADCB',
            account_holder_name='Gulf Supply LLC',
            iban='AE460090000000123456789',
            verification_status=BankVerificationStatus.PENDING))
        db.session.commit()

        result = payout_service.create_payout(seller.id, *_period())

        assert result['code'] == 'BANK_NOT_APPROVED'

    def test_hold_period_not_elapsed(self, delivered_order, buyer, seller,
                                     seller_bank):
        _pay_in_full(delivered_order, buyer, 'TT-FRESH', paid_days_ago=2)

        result = payout_service.create_payout(seller.id, *_period())

        assert result['code'] == 'NO_ELIGIBLE_INVOICES'

    def test_invoice_is_paid_out_once(self, payout, seller):
        result = payout_service.create_payout(seller.id, *_period())

        assert result['code'] == 'NO_ELIGIBLE_INVOICES'

    def test_disputed_order_is_held_back(self, paid_invoice, delivered_order,
                                         buyer, seller, seller_bank):
        dispute_service.create_dispute(
            delivered_order.id, buyer.id, 'quality_issue', 'Rusty',
            'partial_refund', requested_amount=20)

        result = payout_service.create_payout(seller.id, *_period())

        assert result['code'] == 'NO_ELIGIBLE_INVOICES'

    def test_below_minimum(self, app, paid_invoice, seller, seller_bank):
        app.config['PAYOUT_MIN_AMOUNT'] = 1000

        result = payout_service.create_payout(seller.id, *_period())

        assert result['code'] == 'BELOW_MINIMUM'
        assert '1000.00' in result['error']

    def test_profile_id_finds_the_same_invoices(self, paid_invoice,
                                                seller_profile):
        eligibility = payout_service.calculate_eligible_payouts(
            seller_profile.id)

        assert eligibility['eligible'] is True
        assert eligibility['invoices'] == [paid_invoice]
        assert eligibility['total_net'] == 243.75

    def test_batch_creates_per_seller(self, paid_invoice, seller_bank):
        result = payout_service.create_batch_payouts(*_period())

        assert result == {'created': 1, 'skipped': 0, 'errors': []}


class TestPayoutLifecycle:

    def test_approve_then_settle(self, payout, seller):
        assert payout_service.approve_payout(payout.id, 'admin-1')['success']
        assert payout.status == PayoutStatus.PROCESSING
        assert payout.approved_by == 'admin-1'

        assert payout_service.settle_payout(
            payout.id, 'admin-1', '')['code'] == 'VALIDATION_ERROR'
        result = payout_service.settle_payout(payout.id, 'admin-1',
                                              'FT2026ABC')

        assert result['success']
        assert payout.status == PayoutStatus.SETTLED
        assert payout.bank_reference == 'FT2026ABC'

        stats = payout_service.get_payout_stats(seller.id)
        assert stats['total_paid'] == 243.75
        assert stats['payout_count']['settled'] == 1

    def test_settled_payout_is_final(self, payout):
        payout_service.approve_payout(payout.id, 'admin-1')
        payout_service.settle_payout(payout.id, 'admin-1', 'FT1')

        failed = payout_service.fail_payout(payout.id, 'admin-1', 'oops')
        held = payout_service.hold_payout(payout.id, 'admin-1', 'audit')

        assert failed['error'] == 'Cannot fail a settled payout'
        assert held['error'] == 'Cannot hold a settled payout'
        assert payout.status == PayoutStatus.SETTLED

    def test_hold_release_and_fail(self, payout):
        hold_until = utcnow() + timedelta(days=3)
        result = payout_service.hold_payout(payout.id, 'admin-1',
                                            'KYC refresh',
                                            hold_until=hold_until)
        assert result['success']
        assert payout.status == PayoutStatus.ON_HOLD
        assert payout.hold_reason == 'KYC refresh'

        assert payout_service.process_payout(payout.id, 'admin-1')['success']
        assert payout.status == PayoutStatus.PROCESSING

        result = payout_service.fail_payout(payout.id, 'admin-1',
                                            'IBAN closed')
        assert result['success']
        assert payout.status == PayoutStatus.FAILED
        assert payout.failure_reason == 'IBAN closed'

    def test_failed_payout_cannot_be_revived(self, payout):
        payout_service.fail_payout(payout.id, 'admin-1', 'Rejected by bank')

        assert payout_service.fail_payout(
            payout.id, 'admin-1', 'again')['error'] == \
            'Payout has already failed'
        assert payout_service.approve_payout(
            payout.id, 'admin-1')['code'] == 'INVALID_STATE'
        assert payout_service.process_payout(
            payout.id, 'admin-1')['code'] == 'INVALID_STATE'
        assert not payout_service.can_transition_to('failed', 'processing')

    def test_settle_requires_processing(self, payout):
        result = payout_service.settle_payout(payout.id, 'admin-1', 'FT1')

        assert result['code'] == 'INVALID_STATE'

    def test_transitions_are_audited(self, payout):
        payout_service.approve_payout(payout.id, 'admin-1')

        history = payout_service.get_payout_history(payout.id)

        assert [h.action for h in history] == ['PAYOUT_CREATE',
                                               'PAYOUT_APPROVE']

    def test_visibility(self, payout, seller, other_seller):
        assert payout_service.get_payout(payout.id, seller.id)['success']
        assert payout_service.get_payout(
            payout.id, other_seller.id)['code'] == 'UNAUTHORIZED'
        assert payout_service.get_payout(
            payout.id, None, actor_role='ADMIN')['success']
        assert len(payout_service.list_seller_payouts(seller.id)) == 1


class TestMaskIban:

    def test_keeps_last_four(self):
        assert payout_service.mask_iban('AE07 0331 2345') == '********2345'
        assert payout_service.mask_iban('1234') == '1234'
        assert payout_service.mask_iban(None) == ''


class TestPayoutSettings:

    def test_defaults_come_from_config(self, seller):
        settings = payout_service.get_payout_settings(seller.id)

        assert settings['is_default'] is True
        assert settings['hold_period_days'] == 7
        assert settings['min_payout_amount'] == 100.0

    def test_custom_hold_period_releases_sooner(self, delivered_order, buyer,
                                                seller, seller_bank):
        _pay_in_full(delivered_order, buyer, 'TT-SHORT', paid_days_ago=3)
        assert payout_service.create_payout(
            seller.id, *_period())['code'] == 'NO_ELIGIBLE_INVOICES'

        result = payout_service.update_payout_settings(
            seller.id, {'hold_period_days': 2}, actor_id='admin-1',
            actor_role='ADMIN')
        assert result['success'], result
        assert result['data']['hold_period_days'] == 2

        payout = payout_service.create_payout(seller.id, *_period())

        assert payout['success'], payout
        assert payout['data'].invoice_count == 1

    def test_other_sellers_keep_the_default(self, seller, other_seller):
        payout_service.update_payout_settings(
            seller.id, {'hold_period_days': 30}, actor_id='admin-1',
            actor_role='ADMIN')

        assert payout_service.get_payout_settings(
            other_seller.id)['hold_period_days'] == 7

    def test_seller_minimum_applies(self, paid_invoice, seller, seller_bank):
        result = payout_service.update_payout_settings(
            seller.id, {'min_payout_amount': 500}, actor_id=seller.id)
        assert result['success'], result

        payout = payout_service.create_payout(seller.id, *_period())

        assert payout['code'] == 'BELOW_MINIMUM'
        assert '500.00' in payout['error']

    def test_profile_id_shares_the_settings_row(self, seller,
                                                seller_profile):
        payout_service.update_payout_settings(
            seller.id, {'payout_frequency': 'monthly'}, actor_id=seller.id)

        settings = payout_service.get_payout_settings(seller_profile.id)

        assert settings['payout_frequency'] == 'monthly'
        assert settings['is_default'] is False

    def test_seller_cannot_shorten_the_hold(self, seller):
        result = payout_service.update_payout_settings(
            seller.id, {'hold_period_days': 0}, actor_id=seller.id)

        assert result['code'] == 'UNAUTHORIZED'
        assert payout_service.get_payout_settings(
            seller.id)['is_default'] is True

    def test_stranger_cannot_update(self, seller, other_seller):
        result = payout_service.update_payout_settings(
            seller.id, {'min_payout_amount': 1}, actor_id=other_seller.id)

        assert result['code'] == 'UNAUTHORIZED'

    def test_invalid_values(self, seller):
        for changes in ({'payout_frequency': 'daily'},
                        {'min_payout_amount': -5},
                        {'currency': 'USD'}):
            result = payout_service.update_payout_settings(
                seller.id, changes, actor_id=seller.id)
            assert result['code'] == 'VALIDATION_ERROR'

    def test_disabled_dispute_hold_pays_disputed_orders(
            self, paid_invoice, delivered_order, buyer, seller, seller_bank):
        dispute_service.create_dispute(
            delivered_order.id, buyer.id, 'quality_issue', 'Rusty',
            'partial_refund', requested_amount=20)
        payout_service.update_payout_settings(
            seller.id, {'dispute_hold_enabled': False}, actor_id='admin-1',
            actor_role='ADMIN')

        result = payout_service.create_payout(seller.id, *_period())

        assert result['success'], result

    def test_batch_skips_sellers_without_auto_payout(self, paid_invoice,
                                                     seller, seller_bank):
        payout_service.update_payout_settings(
            seller.id, {'auto_payout_enabled': False}, actor_id=seller.id)

        result = payout_service.create_batch_payouts(*_period())

        assert result == {'created': 0, 'skipped': 1, 'errors': []}
