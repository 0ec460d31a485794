"""Payment recording and reconciliation.

The order's ``payment_status`` is never set by hand: it is recomputed
from the confirmed (and, for invoice-backed payments, pending) totals every
time a payment changes.
"""
from tradeflow.errors import ServiceError
from tradeflow.extensions import db
from tradeflow.models import (
    Order,
    OrderStatus,
    OrderPaymentStatus,
    Payment,
    PaymentStatus,
    PaymentMethod,
    Invoice,
    InvoiceStatus,
    BuyerExpense)
from tradeflow.services import numbering_service, outbox_service
from tradeflow.services.audit_service import log_audit
from tradeflow.services.identity_service import is_buyer_of, is_seller_of
from tradeflow.utils import (
    ok,
    fail,
    utcnow,
    to_amount,
    amount_gte,
    amount_exceeds,
    lock_status,
    service_operation)
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
import logging

logger = logging.getLogger(__name__)

PAID_STATUSES = (OrderPaymentStatus.PAID, OrderPaymentStatus.PAID_CASH)
UNPAYABLE_ORDER_STATUSES = (OrderStatus.CANCELLED, OrderStatus.REFUNDED)


def payment_totals(order_id):
    """Return (confirmed_total, pending_total) for an order."""
    rows = db.session.execute(
        select(Payment.status, func.coalesce(func.sum(Payment.amount), 0))
        .where(Payment.order_id == order_id)
        .group_by(Payment.status)
    ).all()
    totals = {status: to_amount(total) for status, total in rows}
    return (
        totals.get(PaymentStatus.CONFIRMED, 0.0),
        totals.get(PaymentStatus.PENDING, 0.0),
    )


def derive_payment_status(total_price, confirmed_total, pending_total=0.0):
    if confirmed_total > 0 and amount_gte(confirmed_total, total_price):
        return OrderPaymentStatus.PAID
    if pending_total > 0 and amount_gte(
            confirmed_total + pending_total, total_price):
        return OrderPaymentStatus.AUTHORIZED
    if confirmed_total > 0:
        return OrderPaymentStatus.PARTIAL
    return OrderPaymentStatus.UNPAID


def _parse_method(method):
    try:
        return PaymentMethod(method)
    except ValueError:
        return None


def _has_bank_reference(order_id, bank_reference):
    return db.session.query(Payment.id).filter_by(
        order_id=order_id,
        bank_reference=bank_reference
    ).first() is not None


def _refresh_order_payment_status(order, include_pending=False):
    db.session.flush()
    confirmed, pending = payment_totals(order.id)
    new_status = derive_payment_status(
        order.total_price, confirmed, pending if include_pending else 0.0)
    previous = order.payment_status
    order.payment_status = new_status
    return previous, new_status


def _mark_invoice_paid(invoice, actor_id, actor_role):
    if invoice is None or invoice.status in (
            InvoiceStatus.PAID, InvoiceStatus.CANCELLED):
        return False
    previous = invoice.status
    invoice.status = InvoiceStatus.PAID
    invoice.paid_at = utcnow()
    log_audit(
        actor_id=actor_id,
        actor_role=actor_role,
        action='INVOICE_PAID',
        target_type='INVOICE',
        target_id=invoice.id,
        from_status=previous,
        to_status=InvoiceStatus.PAID,
        payload={'order_id': invoice.order_id})
    outbox_service.enqueue_in_transaction(
        'invoice.paid', 'invoice', invoice.id,
        {'invoice_number': invoice.invoice_number,
         'order_id': invoice.order_id,
         'seller_id': invoice.seller_id},
        destination='email')
    return True


def _open_invoice_for(order):
    invoice = Invoice.query.filter_by(order_id=order.id).first()
    if invoice and invoice.status != InvoiceStatus.CANCELLED:
        return invoice
    return None


def _record_buyer_expense(payment):
    try:
        db.session.add(BuyerExpense(
            buyer_id=payment.buyer_id,
            order_id=payment.order_id,
            payment_id=payment.id,
            amount=payment.amount,
            currency=payment.currency,
            description=f'Payment {payment.payment_number}'))
        db.session.commit()
    except Exception as e:
        logger.error(
            f"Failed to record buyer expense for payment {payment.id}: {e}",
            exc_info=True)
        db.session.rollback()


def _payment_event_payload(payment, order):
    return {
        'payment_id': payment.id,
        'payment_number': payment.payment_number,
        'order_id': order.id,
        'order_number': order.order_number,
        'amount': to_amount(payment.amount),
        'currency': payment.currency,
        'payment_status': order.payment_status.value,
    }


@service_operation
def record_payment(order_id, buyer_id, amount=None,
                   payment_method=PaymentMethod.BANK_TRANSFER,
                   bank_reference=None, bank_name=None, notes=None):
    """Record a buyer payment against an order, auto-confirmed."""
    order = db.session.get(Order, order_id)
    if not order:
        return fail('Order not found', 'ORDER_NOT_FOUND')
    if not is_buyer_of(order, buyer_id):
        return fail('Not authorized to pay for this order', 'UNAUTHORIZED')
    if order.status in UNPAYABLE_ORDER_STATUSES:
        return fail(
            f'Order is {order.status.value} and cannot be paid',
            'ORDER_NOT_PAYABLE')

    total_price = to_amount(order.total_price)
    confirmed_total, _ = payment_totals(order.id)
    if order.payment_status in PAID_STATUSES or (
            confirmed_total > 0 and amount_gte(confirmed_total, total_price)):
        return fail('Order is already fully paid', 'ALREADY_PAID')

    method = _parse_method(payment_method)
    if method is None:
        return fail('Unknown payment method', 'INVALID_PAYMENT_METHOD')
    if order.payment_method == PaymentMethod.COD or \
            method == PaymentMethod.COD:
        return fail(
            'Cash on delivery orders are settled through COD confirmation',
            'INVALID_PAYMENT_METHOD')

    bank_reference = (bank_reference or '').strip() or None
    if bank_reference and _has_bank_reference(order.id, bank_reference):
        return fail(
            'This bank reference has already been used for this order',
            'DUPLICATE_BANK_REFERENCE')

    remaining = round(total_price - confirmed_total, 2)
    if amount is None:
        amount = remaining
    try:
        amount = round(float(amount), 2)
    except (TypeError, ValueError):
        return fail('Amount must be a number', 'INVALID_AMOUNT')
    if amount <= 0:
        return fail('Amount must be greater than zero', 'INVALID_AMOUNT')
    if amount_exceeds(amount, remaining):
        return fail(
            f'Amount exceeds outstanding balance of {remaining:.2f}',
            'AMOUNT_EXCEEDS_BALANCE')

    # Re-check under the order row lock before writing.
    lock_status(Order, order.id, order.status)
    confirmed_total, _ = payment_totals(order.id)
    if amount_exceeds(confirmed_total + amount, total_price):
        db.session.rollback()
        return fail(
            'Amount exceeds outstanding balance',
            'AMOUNT_EXCEEDS_BALANCE')

    now = utcnow()
    invoice = _open_invoice_for(order)
    payment = Payment(
        payment_number=numbering_service.next_number(
            numbering_service.PAYMENT_PREFIX),
        order_id=order.id,
        invoice_id=invoice.id if invoice else None,
        buyer_id=order.buyer_id,
        seller_id=order.seller_id,
        amount=amount,
        currency=order.currency,
        payment_method=method,
        bank_reference=bank_reference,
        bank_name=bank_name,
        notes=notes,
        status=PaymentStatus.CONFIRMED,
        confirmed_at=now,
        confirmed_by='system',
        confirmation_note='Auto-confirmed on record',
    )
    db.session.add(payment)

    try:
        previous, new_status = _refresh_order_payment_status(order)
    except IntegrityError:
        db.session.rollback()
        return fail(
            'This bank reference has already been used for this order',
            'DUPLICATE_BANK_REFERENCE')

    if new_status == OrderPaymentStatus.PAID:
        _mark_invoice_paid(invoice, buyer_id, 'BUYER')

    log_audit(
        actor_id=buyer_id,
        actor_role='BUYER',
        action='PAYMENT_RECORD',
        target_type='PAYMENT',
        target_id=payment.id,
        to_status=PaymentStatus.CONFIRMED,
        payload={
            'order_id': order.id,
            'amount': amount,
            'method': method.value,
            'bank_reference': bank_reference,
            'order_payment_status_before': previous.value,
            'order_payment_status_after': new_status.value,
        })
    outbox_service.enqueue_in_transaction(
        'payment.recorded', 'order', order.id,
        _payment_event_payload(payment, order))
    db.session.commit()

    _record_buyer_expense(payment)
    return ok(payment)


@service_operation
def record_invoice_payment(invoice_id, buyer_id, amount,
                           payment_method=PaymentMethod.BANK_TRANSFER,
                           bank_reference=None, bank_name=None, notes=None):
    """Submit a payment against an invoice for the seller to verify."""
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        return fail('Invoice not found', 'INVOICE_NOT_FOUND')
    order = invoice.order
    if not is_buyer_of(invoice, buyer_id):
        return fail('Not authorized to pay this invoice', 'UNAUTHORIZED')
    if invoice.status == InvoiceStatus.CANCELLED or \
            order.status in UNPAYABLE_ORDER_STATUSES:
        return fail('Invoice cannot be paid', 'ORDER_NOT_PAYABLE')
    if invoice.status == InvoiceStatus.PAID or \
            order.payment_status in PAID_STATUSES:
        return fail('Invoice is already paid', 'ALREADY_PAID')
    if invoice.status == InvoiceStatus.DRAFT:
        return fail('Invoice has not been issued', 'INVALID_STATE')

    if order.payment_method == PaymentMethod.COD:
        return fail(
            'Cash on delivery orders are settled through COD confirmation',
            'INVALID_PAYMENT_METHOD')

    method = _parse_method(payment_method)
    if method is None or method == PaymentMethod.COD:
        return fail('Invalid payment method for invoice payment',
                    'INVALID_PAYMENT_METHOD')

    bank_reference = (bank_reference or '').strip() or None
    if bank_reference and _has_bank_reference(order.id, bank_reference):
        return fail(
            'This bank reference has already been used for this order',
            'DUPLICATE_BANK_REFERENCE')

    try:
        amount = round(float(amount), 2)
    except (TypeError, ValueError):
        return fail('Amount must be a number', 'INVALID_AMOUNT')
    if amount <= 0:
        return fail('Amount must be greater than zero', 'INVALID_AMOUNT')

    total = to_amount(invoice.total_amount)
    confirmed, pending = payment_totals(order.id)
    if amount_exceeds(confirmed + pending + amount, total):
        return fail(
            'Amount exceeds outstanding balance',
            'AMOUNT_EXCEEDS_BALANCE')

    lock_status(Order, order.id, order.status)
    payment = Payment(
        payment_number=numbering_service.next_number(
            numbering_service.PAYMENT_PREFIX),
        order_id=order.id,
        invoice_id=invoice.id,
        buyer_id=invoice.buyer_id,
        seller_id=invoice.seller_id,
        amount=amount,
        currency=invoice.currency,
        payment_method=method,
        bank_reference=bank_reference,
        bank_name=bank_name,
        notes=notes,
        status=PaymentStatus.PENDING,
    )
    db.session.add(payment)
    try:
        previous, new_status = _refresh_order_payment_status(
            order, include_pending=True)
    except IntegrityError:
        db.session.rollback()
        return fail(
            'This bank reference has already been used for this order',
            'DUPLICATE_BANK_REFERENCE')

    log_audit(
        actor_id=buyer_id,
        actor_role='BUYER',
        action='PAYMENT_SUBMIT',
        target_type='PAYMENT',
        target_id=payment.id,
        to_status=PaymentStatus.PENDING,
        payload={
            'invoice_id': invoice.id,
            'amount': amount,
            'order_payment_status_before': previous.value,
            'order_payment_status_after': new_status.value,
        })
    outbox_service.enqueue_in_transaction(
        'payment.submitted', 'order', order.id,
        _payment_event_payload(payment, order))
    db.session.commit()
    return ok(payment)


def _lock_pending_payment(payment_id):
    return lock_status(Payment, payment_id, PaymentStatus.PENDING)


@service_operation
def confirm_payment(payment_id, actor_id, note=None):
    """Seller verifies a pending invoice payment.

    Confirming an already confirmed payment is a success with code
    ALREADY_CONFIRMED and changes nothing.
    """
    payment = db.session.get(Payment, payment_id)
    if not payment:
        return fail('Payment not found', 'PAYMENT_NOT_FOUND')
    if not is_seller_of(payment, actor_id):
        return fail('Not authorized to confirm this payment', 'UNAUTHORIZED')
    if payment.status == PaymentStatus.CONFIRMED:
        return ok(payment, code='ALREADY_CONFIRMED')
    if payment.status != PaymentStatus.PENDING:
        return fail(
            f'Cannot confirm a {payment.status.value} payment',
            'INVALID_STATE')

    _lock_pending_payment(payment.id)

    order = payment.order
    confirmed_total, _ = payment_totals(order.id)
    if amount_exceeds(confirmed_total + to_amount(payment.amount),
                      order.total_price):
        db.session.rollback()
        return fail(
            'Confirming this payment would exceed the order total',
            'AMOUNT_EXCEEDS_BALANCE')

    payment.status = PaymentStatus.CONFIRMED
    payment.confirmed_at = utcnow()
    payment.confirmed_by = actor_id
    payment.confirmation_note = note

    previous, new_status = _refresh_order_payment_status(
        order, include_pending=True)
    if new_status == OrderPaymentStatus.PAID:
        _mark_invoice_paid(payment.invoice or _open_invoice_for(order),
                           actor_id, 'SELLER')

    log_audit(
        actor_id=actor_id,
        actor_role='SELLER',
        action='PAYMENT_CONFIRM',
        target_type='PAYMENT',
        target_id=payment.id,
        from_status=PaymentStatus.PENDING,
        to_status=PaymentStatus.CONFIRMED,
        payload={
            'order_id': order.id,
            'note': note,
            'order_payment_status_before': previous.value,
            'order_payment_status_after': new_status.value,
        })
    outbox_service.enqueue_in_transaction(
        'payment.confirmed', 'order', order.id,
        _payment_event_payload(payment, order))
    db.session.commit()
    return ok(payment)


@service_operation
def fail_payment(payment_id, actor_id, reason):
    payment = db.session.get(Payment, payment_id)
    if not payment:
        return fail('Payment not found', 'PAYMENT_NOT_FOUND')
    if not is_seller_of(payment, actor_id):
        return fail('Not authorized to reject this payment', 'UNAUTHORIZED')
    if payment.status != PaymentStatus.PENDING:
        return fail(
            f'Cannot fail a {payment.status.value} payment',
            'INVALID_STATE')
    if not (reason or '').strip():
        return fail('A failure reason is required', 'VALIDATION_ERROR')

    _lock_pending_payment(payment.id)

    payment.status = PaymentStatus.FAILED
    payment.failed_at = utcnow()
    payment.failure_reason = reason.strip()

    order = payment.order
    previous, new_status = _refresh_order_payment_status(
        order, include_pending=True)

    log_audit(
        actor_id=actor_id,
        actor_role='SELLER',
        action='PAYMENT_FAIL',
        target_type='PAYMENT',
        target_id=payment.id,
        from_status=PaymentStatus.PENDING,
        to_status=PaymentStatus.FAILED,
        payload={
            'order_id': order.id,
            'reason': payment.failure_reason,
            'order_payment_status_before': previous.value,
            'order_payment_status_after': new_status.value,
        })
    outbox_service.enqueue_in_transaction(
        'payment.failed', 'order', order.id,
        dict(_payment_event_payload(payment, order),
             reason=payment.failure_reason))
    db.session.commit()
    return ok(payment)


def apply_cod_payment(order, actor_id, actor_role):
    """Create the synthetic cash payment for a delivered COD order.

    Runs inside the caller's transaction. Returns None when another
    caller already settled the order. Raises ServiceError when other
    payments were already booked against the order, since the cash
    payment always covers the full total.
    """
    current = db.session.execute(
        select(Order.payment_status)
        .where(Order.id == order.id)
        .with_for_update()
    ).scalar_one()
    if current in PAID_STATUSES:
        return None
    confirmed, pending = payment_totals(order.id)
    if confirmed > 0 or pending > 0:
        raise ServiceError(
            'Order already has recorded payments', 'PAYMENTS_EXIST')

    now = utcnow()
    invoice = _open_invoice_for(order)
    payment = Payment(
        payment_number=numbering_service.next_number(
            numbering_service.PAYMENT_PREFIX),
        order_id=order.id,
        invoice_id=invoice.id if invoice else None,
        buyer_id=order.buyer_id,
        seller_id=order.seller_id,
        amount=order.total_price,
        currency=order.currency,
        payment_method=PaymentMethod.COD,
        status=PaymentStatus.CONFIRMED,
        confirmed_at=now,
        confirmed_by=actor_id,
        confirmation_note=f'Cash collected, confirmed by {actor_role.lower()}',
    )
    db.session.add(payment)
    previous = order.payment_status
    order.payment_status = OrderPaymentStatus.PAID_CASH
    _mark_invoice_paid(invoice, actor_id, actor_role)

    log_audit(
        actor_id=actor_id,
        actor_role=actor_role,
        action='PAYMENT_COD_CONFIRM',
        target_type='ORDER',
        target_id=order.id,
        from_status=previous,
        to_status=OrderPaymentStatus.PAID_CASH,
        payload={'payment_number': payment.payment_number,
                 'amount': to_amount(order.total_price)})
    db.session.flush()
    outbox_service.enqueue_in_transaction(
        'payment.cod_confirmed', 'order', order.id,
        _payment_event_payload(payment, order))
    return payment


@service_operation
def confirm_cod_payment(order_id, actor_id, actor_role):
    """Buyer or seller confirms cash was handed over; first caller wins."""
    order = db.session.get(Order, order_id)
    if not order:
        return fail('Order not found', 'ORDER_NOT_FOUND')

    role = (actor_role or '').upper()
    if role == 'BUYER':
        allowed = is_buyer_of(order, actor_id)
    elif role == 'SELLER':
        allowed = is_seller_of(order, actor_id)
    else:
        allowed = False
    if not allowed:
        return fail('Not authorized to confirm this payment', 'UNAUTHORIZED')

    if order.payment_method != PaymentMethod.COD:
        return fail('Order is not cash on delivery', 'NOT_COD')
    if order.status != OrderStatus.DELIVERED:
        return fail('Order has not been delivered', 'NOT_DELIVERED')
    if order.payment_status in PAID_STATUSES:
        return fail('Order is already paid', 'ALREADY_PAID')

    payment = apply_cod_payment(order, actor_id, role)
    if payment is None:
        db.session.rollback()
        return fail('Order is already paid', 'ALREADY_PAID')
    db.session.commit()

    _record_buyer_expense(payment)
    return ok(payment)


def list_order_payments(order_id):
    return Payment.query.filter_by(order_id=order_id).order_by(
        Payment.created_at.asc()).all()


@service_operation
def get_order_payment_summary(order_id):
    order = db.session.get(Order, order_id)
    if not order:
        return fail('Order not found', 'ORDER_NOT_FOUND')

    payments = list_order_payments(order.id)
    confirmed, pending = payment_totals(order.id)
    total = to_amount(order.total_price)
    latest = payments[-1] if payments else None
    last_confirmed = None
    for payment in payments:
        if payment.status == PaymentStatus.CONFIRMED:
            last_confirmed = payment

    return ok({
        'order_id': order.id,
        'total_price': total,
        'currency': order.currency,
        'paid_amount': confirmed,
        'pending_amount': pending,
        'remaining_amount': max(round(total - confirmed, 2), 0.0),
        'payment_status': order.payment_status.value,
        'payment_count': len(payments),
        'latest_payment_status': latest.status.value if latest else None,
        'last_payment_at': (
            last_confirmed.confirmed_at if last_confirmed else None),
        'last_payment_reference': (
            last_confirmed.bank_reference if last_confirmed else None),
    })
