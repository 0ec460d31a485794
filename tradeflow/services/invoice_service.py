from tradeflow.extensions import db
from tradeflow.models import (
    Order,
    OrderStatus,
    Invoice,
    InvoiceStatus,
    Payment)
from tradeflow.services import numbering_service, outbox_service
from tradeflow.services.audit_service import log_audit
from tradeflow.services.payment_service import (
    payment_totals,
    derive_payment_status,
    PAID_STATUSES)
from tradeflow.errors import ServiceError
from tradeflow.services.identity_service import (
    is_seller_of,
    resolve_seller_ids)
from tradeflow.utils import ok, fail, setting, to_amount, utcnow, \
    lock_status, service_operation
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from datetime import timedelta
import logging

logger = logging.getLogger(__name__)

INVOICEABLE_ORDER_STATUSES = (OrderStatus.DELIVERED, OrderStatus.CLOSED)
OPEN_INVOICE_STATUSES = (InvoiceStatus.ISSUED, InvoiceStatus.OVERDUE)


def _issue(invoice, now):
    invoice.status = InvoiceStatus.ISSUED
    invoice.issued_at = now
    invoice.due_date = now + timedelta(days=setting('INVOICE_DUE_DAYS'))


@service_operation
def create_from_delivered_order(order_id, actor_id=None,
                                actor_role='SYSTEM', issue=True):
    """Create the invoice for a delivered order, once.

    With ``issue=False`` the invoice is kept as a draft until
    ``issue_invoice`` is called.
    """
    order = db.session.get(Order, order_id)
    if not order:
        return fail('Order not found', 'ORDER_NOT_FOUND')
    if order.status not in INVOICEABLE_ORDER_STATUSES:
        return fail('Only delivered orders can be invoiced', 'INVALID_STATE')

    existing = Invoice.query.filter_by(order_id=order.id).first()
    if existing:
        return ok(existing, code='ALREADY_EXISTS')

    now = utcnow()
    total = to_amount(order.total_price)
    fee_rate = float(setting('PLATFORM_FEE_RATE'))
    fee = round(total * fee_rate, 2)

    invoice = Invoice(
        invoice_number=numbering_service.next_number(
            numbering_service.INVOICE_PREFIX),
        order_id=order.id,
        buyer_id=order.buyer_id,
        seller_id=order.seller_id,
        total_amount=total,
        platform_fee_rate=fee_rate,
        platform_fee_amount=fee,
        net_to_seller=round(total - fee, 2),
        currency=order.currency,
        status=InvoiceStatus.DRAFT,
    )
    if issue:
        _issue(invoice, now)
    db.session.add(invoice)
    db.session.flush()

    # Payments recorded before the invoice existed belong to it too.
    Payment.query.filter_by(order_id=order.id, invoice_id=None).update(
        {Payment.invoice_id: invoice.id}, synchronize_session='fetch')

    confirmed, _ = payment_totals(order.id)
    already_paid = order.payment_status in PAID_STATUSES or \
        derive_payment_status(total, confirmed) in PAID_STATUSES
    if already_paid:
        if invoice.issued_at is None:
            _issue(invoice, now)
        invoice.status = InvoiceStatus.PAID
        invoice.paid_at = now

    log_audit(
        actor_id=actor_id,
        actor_role=actor_role,
        action='INVOICE_CREATE',
        target_type='INVOICE',
        target_id=invoice.id,
        to_status=invoice.status,
        payload={
            'order_id': order.id,
            'invoice_number': invoice.invoice_number,
            'total_amount': total,
            'platform_fee_amount': fee,
        })
    event_type = 'invoice.created' if invoice.status == InvoiceStatus.DRAFT \
        else 'invoice.issued'
    outbox_service.enqueue_in_transaction(
        event_type, 'invoice', invoice.id,
        {'invoice_number': invoice.invoice_number,
         'order_id': order.id,
         'buyer_id': order.buyer_id,
         'total_amount': total,
         'status': invoice.status.value},
        destination='email')
    db.session.commit()

    logger.info("Invoice %s issued for order %s",
                invoice.invoice_number, order.order_number)
    return ok(invoice)


@service_operation
def cancel_invoice(invoice_id, actor_id, reason=None):
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        return fail('Invoice not found', 'INVOICE_NOT_FOUND')
    if not is_seller_of(invoice, actor_id):
        return fail('Not authorized to cancel this invoice', 'UNAUTHORIZED')
    if invoice.status in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED):
        return fail(
            f'Cannot cancel a {invoice.status.value} invoice',
            'INVALID_STATE')

    previous = invoice.status
    invoice.status = InvoiceStatus.CANCELLED
    invoice.cancelled_at = utcnow()
    invoice.cancellation_reason = reason

    log_audit(
        actor_id=actor_id,
        actor_role='SELLER',
        action='INVOICE_CANCEL',
        target_type='INVOICE',
        target_id=invoice.id,
        from_status=previous,
        to_status=InvoiceStatus.CANCELLED,
        payload={'reason': reason})
    db.session.commit()
    return ok(invoice)


def get_invoice_for_order(order_id):
    return Invoice.query.filter_by(order_id=order_id).first()


@service_operation
def issue_invoice(invoice_id, actor_id):
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        return fail('Invoice not found', 'INVOICE_NOT_FOUND')
    if not is_seller_of(invoice, actor_id):
        return fail('Not authorized to issue this invoice', 'UNAUTHORIZED')
    if invoice.status != InvoiceStatus.DRAFT:
        return fail('Only draft invoices can be issued', 'INVALID_STATE')

    lock_status(Invoice, invoice.id, InvoiceStatus.DRAFT)
    _issue(invoice, utcnow())

    log_audit(
        actor_id=actor_id,
        actor_role='SELLER',
        action='INVOICE_ISSUE',
        target_type='INVOICE',
        target_id=invoice.id,
        from_status=InvoiceStatus.DRAFT,
        to_status=InvoiceStatus.ISSUED,
        payload={'due_date': invoice.due_date.isoformat()})
    outbox_service.enqueue_in_transaction(
        'invoice.issued', 'invoice', invoice.id,
        {'invoice_number': invoice.invoice_number,
         'order_id': invoice.order_id,
         'buyer_id': invoice.buyer_id,
         'total_amount': to_amount(invoice.total_amount),
         'status': invoice.status.value},
        destination='email')
    db.session.commit()
    return ok(invoice)


def _mark_overdue(invoice, actor_id, actor_role):
    lock_status(Invoice, invoice.id, InvoiceStatus.ISSUED)
    invoice.status = InvoiceStatus.OVERDUE
    log_audit(
        actor_id=actor_id,
        actor_role=actor_role,
        action='INVOICE_OVERDUE',
        target_type='INVOICE',
        target_id=invoice.id,
        from_status=InvoiceStatus.ISSUED,
        to_status=InvoiceStatus.OVERDUE,
        payload={'due_date': invoice.due_date.isoformat()})
    outbox_service.enqueue_in_transaction(
        'invoice.overdue', 'invoice', invoice.id,
        {'invoice_number': invoice.invoice_number,
         'order_id': invoice.order_id,
         'buyer_id': invoice.buyer_id,
         'total_amount': to_amount(invoice.total_amount)},
        destination='notification')


@service_operation
def mark_overdue(invoice_id, actor_id=None, actor_role='SYSTEM'):
    """Flag an issued invoice whose due date has passed."""
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        return fail('Invoice not found', 'INVOICE_NOT_FOUND')
    if invoice.status != InvoiceStatus.ISSUED:
        return fail(
            f'Cannot mark a {invoice.status.value} invoice overdue',
            'INVALID_STATE')
    if invoice.due_date is None or invoice.due_date >= utcnow():
        return fail('Invoice is not past its due date', 'NOT_DUE')

    _mark_overdue(invoice, actor_id, actor_role)
    db.session.commit()
    return ok(invoice)


def process_overdue_invoices():
    """Sweep issued invoices past their due date; returns counts."""
    due = Invoice.query.filter(
        Invoice.status == InvoiceStatus.ISSUED,
        Invoice.due_date < utcnow()
    ).order_by(Invoice.due_date.asc()).all()

    result = {'processed': 0, 'errors': []}
    for invoice in due:
        try:
            _mark_overdue(invoice, None, 'SYSTEM')
            db.session.commit()
            result['processed'] += 1
        except (ServiceError, SQLAlchemyError) as e:
            db.session.rollback()
            logger.warning("Invoice %s not marked overdue: %s",
                           invoice.id, e)
            result['errors'].append(invoice.id)

    if result['processed']:
        logger.info("Marked %d invoices overdue", result['processed'])
    return result


def get_invoice_stats(seller_id):
    rows = db.session.query(
        Invoice.status,
        func.count(Invoice.id),
        func.coalesce(func.sum(Invoice.total_amount), 0)
    ).filter(
        Invoice.seller_id.in_(resolve_seller_ids(seller_id))
    ).group_by(Invoice.status).all()

    stats = {
        'total_invoiced': 0.0,
        'total_paid': 0.0,
        'outstanding': 0.0,
        'overdue': 0.0,
        'invoice_count': {status.value: 0 for status in InvoiceStatus},
    }
    for status, count, total in rows:
        total = to_amount(total)
        stats['invoice_count'][status.value] = count
        if status == InvoiceStatus.CANCELLED:
            continue
        stats['total_invoiced'] += total
        if status == InvoiceStatus.PAID:
            stats['total_paid'] += total
        elif status in OPEN_INVOICE_STATUSES:
            stats['outstanding'] += total
            if status == InvoiceStatus.OVERDUE:
                stats['overdue'] += total
    return stats
