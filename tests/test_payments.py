"""
Payment recording, confirmation and derived order payment status.
"""
from datetime import timedelta

from sqlalchemy import update

from tradeflow.errors import ConcurrentModificationError
from tradeflow.extensions import db
from tradeflow.models import (
    AuditLog,
    BuyerExpense,
    Invoice,
    InvoiceStatus,
    OrderPaymentStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from tradeflow.services import (
    invoice_service,
    order_service,
    payment_service,
)
from tradeflow.utils import utcnow


def _pay(order, buyer, amount=None, reference=None, **kwargs):
    return payment_service.record_payment(
        order.id, buyer.id, amount=amount, bank_reference=reference,
        **kwargs)


class TestDerivePaymentStatus:

    def test_thresholds(self):
        derive = payment_service.derive_payment_status
        assert derive(250, 250) == OrderPaymentStatus.PAID
        assert derive(250, 100) == OrderPaymentStatus.PARTIAL
        assert derive(250, 0) == OrderPaymentStatus.UNPAID
        assert derive(250, 100, 150) == OrderPaymentStatus.AUTHORIZED
        assert derive(250, 0, 100) == OrderPaymentStatus.UNPAID

    def test_rounding_noise_counts_as_paid(self):
        assert payment_service.derive_payment_status(
            250, 249.996) == OrderPaymentStatus.PAID


class TestRecordPayment:

    def test_partial_then_full(self, order, buyer):
        """
        100 then 150 on a 250 order: partial after the first payment,
        paid after the second.
        """
        first = _pay(order, buyer, 100, 'TT-001')
        assert first['success']
        assert first['data'].status == PaymentStatus.CONFIRMED
        assert order.payment_status == OrderPaymentStatus.PARTIAL

        second = _pay(order, buyer, 150, 'TT-002')
        assert second['success']
        assert order.payment_status == OrderPaymentStatus.PAID
        assert second['data'].payment_number.startswith('PAY-')

    def test_amount_defaults_to_outstanding_balance(self, order, buyer):
        _pay(order, buyer, 100)

        result = _pay(order, buyer)

        assert result['success']
        assert float(result['data'].amount) == 150.0
        assert order.payment_status == OrderPaymentStatus.PAID

    def test_overpayment_is_rejected(self, order, buyer):
        _pay(order, buyer, 100)

        result = _pay(order, buyer, 200)

        assert result['code'] == 'AMOUNT_EXCEEDS_BALANCE'
        confirmed, _ = payment_service.payment_totals(order.id)
        assert confirmed == 100.0

    def test_duplicate_reference_regardless_of_amount(self, order, buyer):
        _pay(order, buyer, 50, 'TT-777')

        assert _pay(order, buyer, 50, 'TT-777')['code'] == \
            'DUPLICATE_BANK_REFERENCE'
        assert _pay(order, buyer, 5000, 'TT-777')['code'] == \
            'DUPLICATE_BANK_REFERENCE'
        assert _pay(order, buyer, 10, 'TT-777',
                    payment_method='card')['code'] == \
            'DUPLICATE_BANK_REFERENCE'

    def test_fully_paid_order_is_rejected(self, order, buyer):
        _pay(order, buyer)

        assert _pay(order, buyer, 1)['code'] == 'ALREADY_PAID'

    def test_non_positive_amount(self, order, buyer):
        assert _pay(order, buyer, 0)['code'] == 'INVALID_AMOUNT'
        assert _pay(order, buyer, 'abc')['code'] == 'INVALID_AMOUNT'

    def test_only_the_buyer_pays(self, order, other_buyer):
        assert _pay(order, other_buyer, 10)['code'] == 'UNAUTHORIZED'

    def test_cancelled_order_is_not_payable(self, order, buyer):
        order_service.cancel_order(order.id, buyer.id, 'BUYER')

        assert _pay(order, buyer, 10)['code'] == 'ORDER_NOT_PAYABLE'

    def test_cod_order_must_use_cod_confirmation(self, make_order, buyer):
        order = make_order(payment_method='cod')

        assert _pay(order, buyer, 10)['code'] == 'INVALID_PAYMENT_METHOD'

    def test_unknown_order(self, buyer):
        result = payment_service.record_payment('missing', buyer.id, 10)

        assert result['code'] == 'ORDER_NOT_FOUND'

    def test_payment_writes_expense_audit_and_event(self, order, buyer):
        payment = _pay(order, buyer, 100, 'TT-100')['data']

        expense = BuyerExpense.query.filter_by(payment_id=payment.id).one()
        assert float(expense.amount) == 100.0
        audit = AuditLog.query.filter_by(action='PAYMENT_RECORD').one()
        assert audit.payload['order_payment_status_after'] == 'partial'

    def test_payment_on_delivered_order_pays_invoice(self, delivered_order,
                                                     buyer):
        result = _pay(delivered_order, buyer, reference='TT-INV')

        assert result['success']
        invoice = invoice_service.get_invoice_for_order(delivered_order.id)
        assert result['data'].invoice_id == invoice.id
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.paid_at is not None


def _invoice_payment(delivered_order, buyer, amount=250, reference='INV-TT'):
    invoice = invoice_service.get_invoice_for_order(delivered_order.id)
    result = payment_service.record_invoice_payment(
        invoice.id, buyer.id, amount, bank_reference=reference)
    assert result['success'], result
    return result['data']


class TestConfirmPayment:

    def test_pending_payment_authorizes_order(self, delivered_order, buyer):
        payment = _invoice_payment(delivered_order, buyer)

        assert payment.status == PaymentStatus.PENDING
        assert delivered_order.payment_status == \
            OrderPaymentStatus.AUTHORIZED

    def test_confirm_twice_is_idempotent(self, delivered_order, buyer,
                                         seller):
        """
        The second confirmation succeeds with ALREADY_CONFIRMED and
        records nothing new.
        """
        payment = _invoice_payment(delivered_order, buyer)

        first = payment_service.confirm_payment(payment.id, seller.id)
        assert first['success']
        assert 'code' not in first
        assert payment.status == PaymentStatus.CONFIRMED
        assert delivered_order.payment_status == OrderPaymentStatus.PAID

        second = payment_service.confirm_payment(payment.id, seller.id)
        assert second['success'] is True
        assert second['code'] == 'ALREADY_CONFIRMED'
        assert AuditLog.query.filter_by(
            action='PAYMENT_CONFIRM').count() == 1

    def test_confirm_marks_invoice_paid(self, delivered_order, buyer, seller):
        payment = _invoice_payment(delivered_order, buyer)

        payment_service.confirm_payment(payment.id, seller.id)

        invoice = db.session.get(Invoice, payment.invoice_id)
        assert invoice.status == InvoiceStatus.PAID

    def test_concurrent_confirm_loses(self, delivered_order, buyer, seller,
                                      monkeypatch):
        """
        Another writer fails the payment between our pre-check and the
        locked re-read; we report the conflict and change nothing.
        """
        payment = _invoice_payment(delivered_order, buyer)
        original_lock = payment_service._lock_pending_payment

        def interleaved_lock(payment_id):
            db.session.execute(
                update(Payment)
                .where(Payment.id == payment_id)
                .values(status=PaymentStatus.FAILED)
                .execution_options(synchronize_session=False))
            return original_lock(payment_id)

        monkeypatch.setattr(payment_service, '_lock_pending_payment',
                            interleaved_lock)

        result = payment_service.confirm_payment(payment.id, seller.id)

        assert result['success'] is False
        assert result['code'] == 'CONCURRENT_MODIFICATION'
        assert db.session.get(Payment, payment.id).status == \
            PaymentStatus.PENDING

    def test_lock_error_surfaces_as_result(self, delivered_order, buyer,
                                           seller, monkeypatch):
        payment = _invoice_payment(delivered_order, buyer)

        def lost(payment_id):
            raise ConcurrentModificationError('Payment changed')

        monkeypatch.setattr(payment_service, '_lock_pending_payment', lost)

        result = payment_service.confirm_payment(payment.id, seller.id)
        assert result == {'success': False, 'error': 'Payment changed',
                          'code': 'CONCURRENT_MODIFICATION'}

    def test_only_the_seller_confirms(self, delivered_order, buyer,
                                      other_seller):
        payment = _invoice_payment(delivered_order, buyer)

        result = payment_service.confirm_payment(payment.id, other_seller.id)

        assert result['code'] == 'UNAUTHORIZED'

    def test_fail_payment_reverts_authorization(self, delivered_order, buyer,
                                                seller):
        payment = _invoice_payment(delivered_order, buyer)

        result = payment_service.fail_payment(payment.id, seller.id,
                                              'Funds not received')

        assert result['success']
        assert payment.status == PaymentStatus.FAILED
        assert delivered_order.payment_status == OrderPaymentStatus.UNPAID
        assert payment_service.confirm_payment(
            payment.id, seller.id)['code'] == 'INVALID_STATE'

    def test_invoice_payment_cannot_exceed_invoice(self, delivered_order,
                                                   buyer):
        invoice = invoice_service.get_invoice_for_order(delivered_order.id)
        _invoice_payment(delivered_order, buyer, amount=200)

        result = payment_service.record_invoice_payment(
            invoice.id, buyer.id, 100, bank_reference='INV-TT-2')

        assert result['code'] == 'AMOUNT_EXCEEDS_BALANCE'


class TestCodPayment:

    def _delivered_cod_order(self, make_order, deliver):
        return deliver(make_order(payment_method='cod'))

    def test_first_confirmer_wins(self, make_order, deliver, buyer, seller):
        order = self._delivered_cod_order(make_order, deliver)

        result = payment_service.confirm_cod_payment(order.id, buyer.id,
                                                     'BUYER')
        assert result['success']
        payment = result['data']
        assert payment.status == PaymentStatus.CONFIRMED
        assert float(payment.amount) == 250.0
        assert order.payment_status == OrderPaymentStatus.PAID_CASH

        second = payment_service.confirm_cod_payment(order.id, seller.id,
                                                     'SELLER')
        assert second['code'] == 'ALREADY_PAID'
        assert Payment.query.filter_by(order_id=order.id).count() == 1

    def test_requires_delivery(self, make_order, buyer):
        order = make_order(payment_method='cod')

        result = payment_service.confirm_cod_payment(order.id, buyer.id,
                                                     'BUYER')

        assert result['code'] == 'NOT_DELIVERED'

    def test_cod_invoice_refuses_bank_transfer(self, make_order, deliver,
                                               buyer):
        order = self._delivered_cod_order(make_order, deliver)
        invoice = invoice_service.get_invoice_for_order(order.id)

        result = payment_service.record_invoice_payment(
            invoice.id, buyer.id, 100, bank_reference='TT-COD')

        assert result['code'] == 'INVALID_PAYMENT_METHOD'
        assert Payment.query.filter_by(order_id=order.id).count() == 0

    def test_cash_never_books_past_the_total(self, make_order, deliver,
                                             buyer, seller):
        """
        An order that already carries a confirmed payment cannot also get
        the full-amount cash payment.
        """
        order = self._delivered_cod_order(make_order, deliver)
        db.session.add(Payment(
            payment_number='PAY-2026-9001', order_id=order.id,
            buyer_id=buyer.id, seller_id=order.seller_id, amount=100,
            payment_method=PaymentMethod.BANK_TRANSFER,
            status=PaymentStatus.CONFIRMED))
        order.payment_status = OrderPaymentStatus.PARTIAL
        db.session.commit()

        result = payment_service.confirm_cod_payment(order.id, seller.id,
                                                     'SELLER')

        assert result['success'] is False
        assert result['code'] == 'PAYMENTS_EXIST'
        confirmed, _ = payment_service.payment_totals(order.id)
        assert confirmed == 100.0
        assert order.payment_status == OrderPaymentStatus.PARTIAL

    def test_requires_cod_order(self, delivered_order, buyer):
        result = payment_service.confirm_cod_payment(delivered_order.id,
                                                     buyer.id, 'BUYER')

        assert result['code'] == 'NOT_COD'


class TestPaymentSummary:

    def test_summary_after_partial_payment(self, order, buyer):
        _pay(order, buyer, 100, 'TT-1')

        summary = payment_service.get_order_payment_summary(order.id)['data']

        assert summary['paid_amount'] == 100.0
        assert summary['remaining_amount'] == 150.0
        assert summary['pending_amount'] == 0.0
        assert summary['payment_status'] == 'partial'
        assert summary['payment_count'] == 1
        assert summary['last_payment_reference'] == 'TT-1'


class TestInvoices:

    def test_invoice_amounts(self, delivered_order):
        invoice = invoice_service.get_invoice_for_order(delivered_order.id)

        assert float(invoice.total_amount) == 250.0
        assert float(invoice.platform_fee_amount) == 6.25
        assert float(invoice.net_to_seller) == 243.75
        assert (invoice.due_date - invoice.issued_at).days == 30

    def test_second_invoice_is_not_created(self, delivered_order):
        result = invoice_service.create_from_delivered_order(
            delivered_order.id)

        assert result['success']
        assert result['code'] == 'ALREADY_EXISTS'
        assert Invoice.query.count() == 1

    def test_undelivered_order_is_not_invoiced(self, order):
        result = invoice_service.create_from_delivered_order(order.id)

        assert result['code'] == 'INVALID_STATE'

    def test_cancel_invoice(self, delivered_order, seller):
        invoice = invoice_service.get_invoice_for_order(delivered_order.id)

        result = invoice_service.cancel_invoice(invoice.id, seller.id,
                                                'Wrong billing entity')

        assert result['success']
        assert invoice.status == InvoiceStatus.CANCELLED
        assert invoice_service.cancel_invoice(
            invoice.id, seller.id)['code'] == 'INVALID_STATE'


class TestInvoiceLifecycle:

    def _redraft(self, order):
        db.session.delete(invoice_service.get_invoice_for_order(order.id))
        db.session.commit()
        result = invoice_service.create_from_delivered_order(order.id,
                                                             issue=False)
        assert result['success'], result
        return result['data']

    def _past_due(self, invoice, days=1):
        invoice.due_date = utcnow() - timedelta(days=days)
        db.session.commit()

    def test_draft_is_issued_by_the_seller(self, delivered_order, buyer,
                                           seller):
        invoice = self._redraft(delivered_order)
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.due_date is None

        refused = payment_service.record_invoice_payment(
            invoice.id, buyer.id, 250, bank_reference='TT-DRAFT')
        assert refused['code'] == 'INVALID_STATE'
        assert invoice_service.issue_invoice(
            invoice.id, buyer.id)['code'] == 'UNAUTHORIZED'

        result = invoice_service.issue_invoice(invoice.id, seller.id)

        assert result['success']
        assert invoice.status == InvoiceStatus.ISSUED
        assert (invoice.due_date - invoice.issued_at).days == 30
        assert invoice_service.issue_invoice(
            invoice.id, seller.id)['code'] == 'INVALID_STATE'

    def test_mark_overdue_needs_a_passed_due_date(self, delivered_order):
        invoice = invoice_service.get_invoice_for_order(delivered_order.id)

        assert invoice_service.mark_overdue(invoice.id)['code'] == 'NOT_DUE'

        self._past_due(invoice)
        result = invoice_service.mark_overdue(invoice.id)

        assert result['success']
        assert invoice.status == InvoiceStatus.OVERDUE
        assert invoice_service.mark_overdue(
            invoice.id)['code'] == 'INVALID_STATE'

    def test_sweep_flags_only_past_due_invoices(self, delivered_order,
                                                make_order, deliver):
        late = invoice_service.get_invoice_for_order(delivered_order.id)
        self._past_due(late, days=3)
        current = invoice_service.get_invoice_for_order(
            deliver(make_order()).id)

        result = invoice_service.process_overdue_invoices()

        assert result == {'processed': 1, 'errors': []}
        assert late.status == InvoiceStatus.OVERDUE
        assert current.status == InvoiceStatus.ISSUED
        assert AuditLog.query.filter_by(
            action='INVOICE_OVERDUE').count() == 1

    def test_overdue_invoice_can_still_be_paid(self, delivered_order, buyer,
                                               seller):
        invoice = invoice_service.get_invoice_for_order(delivered_order.id)
        self._past_due(invoice)
        invoice_service.process_overdue_invoices()

        payment = _invoice_payment(delivered_order, buyer)
        payment_service.confirm_payment(payment.id, seller.id)

        assert invoice.status == InvoiceStatus.PAID

    def test_stats(self, delivered_order, make_order, deliver, seller):
        late = invoice_service.get_invoice_for_order(delivered_order.id)
        self._past_due(late)
        invoice_service.process_overdue_invoices()
        deliver(make_order(quantity=2))

        stats = invoice_service.get_invoice_stats(seller.id)

        assert stats['total_invoiced'] == 750.0
        assert stats['outstanding'] == 750.0
        assert stats['overdue'] == 250.0
        assert stats['invoice_count']['issued'] == 1
        assert stats['invoice_count']['overdue'] == 1
