"""Seller payouts.

A payout sweeps a seller's paid invoices that have cleared the hold
period into one transfer. Each invoice can be swept once; the unique
``payout_line_items.invoice_id`` makes a second sweep fail.
"""
from tradeflow.extensions import db
from tradeflow.models import (
    Invoice,
    InvoiceStatus,
    Order,
    OrderStatus,
    SellerBank,
    BankVerificationStatus,
    SellerPayout,
    SellerPayoutSettings,
    PayoutFrequency,
    PayoutLineItem,
    PayoutStatus)
from tradeflow.services import numbering_service, outbox_service
from tradeflow.services.audit_service import log_audit, get_history
from tradeflow.services.dispute_service import has_active_dispute
from tradeflow.services.identity_service import (
    is_seller_of,
    resolve_seller_ids)
from tradeflow.utils import (
    ok,
    fail,
    setting,
    utcnow,
    to_amount,
    lock_status,
    service_operation)
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from datetime import timedelta
import logging

logger = logging.getLogger(__name__)

TRANSITIONS = {
    PayoutStatus.PENDING: {
        PayoutStatus.PROCESSING, PayoutStatus.ON_HOLD, PayoutStatus.FAILED},
    PayoutStatus.PROCESSING: {
        PayoutStatus.SETTLED, PayoutStatus.FAILED, PayoutStatus.ON_HOLD},
    PayoutStatus.ON_HOLD: {PayoutStatus.PROCESSING, PayoutStatus.FAILED},
    PayoutStatus.SETTLED: set(),
    PayoutStatus.FAILED: set(),
}

EXCLUDED_ORDER_STATUSES = (OrderStatus.CANCELLED, OrderStatus.REFUNDED)


def can_transition_to(current, target) -> bool:
    try:
        current = PayoutStatus(current)
        target = PayoutStatus(target)
    except ValueError:
        return False
    return target in TRANSITIONS.get(current, set())


def mask_iban(iban):
    iban = (iban or '').replace(' ', '')
    if len(iban) <= 4:
        return iban
    return '*' * (len(iban) - 4) + iban[-4:]


def _approved_bank(seller_ids):
    return SellerBank.query.filter(
        SellerBank.seller_id.in_(seller_ids),
        SellerBank.verification_status == BankVerificationStatus.APPROVED
    ).order_by(SellerBank.is_primary.desc(),
               SellerBank.created_at.desc()).first()


SETTINGS_FIELDS = ('payout_frequency', 'min_payout_amount',
                   'auto_payout_enabled')
ADMIN_SETTINGS_FIELDS = ('hold_period_days', 'dispute_hold_enabled')


def _settings_row(seller_ids):
    return SellerPayoutSettings.query.filter(
        SellerPayoutSettings.seller_id.in_(seller_ids)).first()


def get_payout_settings(seller_id):
    """Effective payout settings; config defaults when the seller has none."""
    row = _settings_row(resolve_seller_ids(seller_id))
    if row is None:
        return {
            'seller_id': str(seller_id),
            'payout_frequency': PayoutFrequency.WEEKLY.value,
            'min_payout_amount': float(setting('PAYOUT_MIN_AMOUNT')),
            'hold_period_days': int(setting('PAYOUT_HOLD_PERIOD_DAYS')),
            'dispute_hold_enabled': True,
            'auto_payout_enabled': True,
            'is_default': True,
        }
    return {
        'seller_id': row.seller_id,
        'payout_frequency': row.payout_frequency.value,
        'min_payout_amount': to_amount(row.min_payout_amount),
        'hold_period_days': row.hold_period_days,
        'dispute_hold_enabled': row.dispute_hold_enabled,
        'auto_payout_enabled': row.auto_payout_enabled,
        'is_default': False,
    }


@service_operation
def update_payout_settings(seller_id, changes, actor_id=None,
                           actor_role='SELLER'):
    """Update a seller's payout settings.

    Sellers may change frequency, minimum amount and auto payout. Hold
    period and dispute hold are risk controls only an admin may change.
    """
    role = (actor_role or '').upper()
    if role == 'ADMIN':
        allowed = SETTINGS_FIELDS + ADMIN_SETTINGS_FIELDS
    elif role == 'SELLER' and actor_id is not None and \
            str(actor_id) in resolve_seller_ids(seller_id):
        allowed = SETTINGS_FIELDS
    else:
        return fail('Not authorized to change these settings',
                    'UNAUTHORIZED')

    unknown = set(changes) - set(SETTINGS_FIELDS + ADMIN_SETTINGS_FIELDS)
    if unknown:
        return fail(f"Unknown settings: {', '.join(sorted(unknown))}",
                    'VALIDATION_ERROR')
    forbidden = set(changes) - set(allowed)
    if forbidden:
        return fail(
            f"Only an admin can change: {', '.join(sorted(forbidden))}",
            'UNAUTHORIZED')

    values = {}
    try:
        if 'payout_frequency' in changes:
            values['payout_frequency'] = PayoutFrequency(
                changes['payout_frequency'])
        if 'min_payout_amount' in changes:
            values['min_payout_amount'] = round(
                float(changes['min_payout_amount']), 2)
            if values['min_payout_amount'] <= 0:
                raise ValueError('min_payout_amount must be positive')
        if 'hold_period_days' in changes:
            values['hold_period_days'] = int(changes['hold_period_days'])
            if values['hold_period_days'] < 0:
                raise ValueError('hold_period_days cannot be negative')
    except (TypeError, ValueError) as e:
        return fail(str(e), 'VALIDATION_ERROR')
    for flag in ('dispute_hold_enabled', 'auto_payout_enabled'):
        if flag in changes:
            values[flag] = bool(changes[flag])

    row = _settings_row(resolve_seller_ids(seller_id))
    if row is None:
        current = get_payout_settings(seller_id)
        row = SellerPayoutSettings(
            seller_id=str(seller_id),
            payout_frequency=PayoutFrequency(current['payout_frequency']),
            min_payout_amount=current['min_payout_amount'],
            hold_period_days=current['hold_period_days'],
            dispute_hold_enabled=current['dispute_hold_enabled'],
            auto_payout_enabled=current['auto_payout_enabled'])
        db.session.add(row)
    for key, value in values.items():
        setattr(row, key, value)
    db.session.flush()

    log_audit(
        actor_id=actor_id,
        actor_role=role,
        action='PAYOUT_SETTINGS_UPDATE',
        target_type='SELLER',
        target_id=row.seller_id,
        payload={key: (value.value if isinstance(value, PayoutFrequency)
                       else value) for key, value in values.items()})
    db.session.commit()
    return ok(get_payout_settings(seller_id))


def calculate_eligible_payouts(seller_id, period_start=None, period_end=None):
    """Collect paid invoices past the hold period, not yet paid out."""
    seller_ids = resolve_seller_ids(seller_id)
    settings = get_payout_settings(seller_id)
    hold_cutoff = utcnow() - timedelta(days=settings['hold_period_days'])

    swept = select(PayoutLineItem.invoice_id)
    query = Invoice.query.join(Order, Invoice.order_id == Order.id).filter(
        Invoice.seller_id.in_(seller_ids),
        Invoice.status == InvoiceStatus.PAID,
        Invoice.paid_at.isnot(None),
        Invoice.paid_at <= hold_cutoff,
        Invoice.id.notin_(swept),
        Order.status.notin_(EXCLUDED_ORDER_STATUSES),
    )
    if period_start:
        query = query.filter(Invoice.paid_at >= period_start)
    if period_end:
        query = query.filter(Invoice.paid_at <= period_end)

    invoices = []
    for invoice in query.order_by(Invoice.paid_at.asc()).all():
        # Let open disputes surface before paying the seller.
        if settings['dispute_hold_enabled'] and \
                has_active_dispute(invoice.order_id):
            continue
        invoices.append(invoice)

    total_gross = round(sum(to_amount(i.total_amount) for i in invoices), 2)
    total_fee = round(
        sum(to_amount(i.platform_fee_amount) for i in invoices), 2)
    total_net = round(sum(to_amount(i.net_to_seller) for i in invoices), 2)
    min_amount = settings['min_payout_amount']

    reason = None
    if not invoices:
        reason = 'No eligible invoices for payout'
    elif total_net < min_amount:
        reason = (
            f'Total amount ({total_net:.2f}) is below minimum payout '
            f'threshold ({min_amount:.2f})')

    return {
        'eligible': reason is None,
        'reason': reason,
        'invoices': invoices,
        'total_gross': total_gross,
        'total_platform_fee': total_fee,
        'total_net': total_net,
        'currency': invoices[0].currency if invoices else None,
    }


@service_operation
def create_payout(seller_id, period_start, period_end, actor_id=None,
                  actor_role='SYSTEM'):
    if period_end < period_start:
        return fail('Period end precedes period start', 'VALIDATION_ERROR')

    seller_ids = resolve_seller_ids(seller_id)
    bank = _approved_bank(seller_ids)
    if not bank:
        return fail('Seller has no approved bank account',
                    'BANK_NOT_APPROVED')

    eligibility = calculate_eligible_payouts(
        seller_id, period_start, period_end)
    if not eligibility['invoices']:
        return fail(eligibility['reason'], 'NO_ELIGIBLE_INVOICES')
    if not eligibility['eligible']:
        return fail(eligibility['reason'], 'BELOW_MINIMUM')

    payout = SellerPayout(
        payout_number=numbering_service.next_number(
            numbering_service.PAYOUT_PREFIX),
        seller_id=str(seller_id),
        bank_id=bank.id,
        bank_name=bank.bank_name,
        account_holder_name=bank.account_holder_name,
        iban_masked=mask_iban(bank.iban),
        period_start=period_start,
        period_end=period_end,
        gross_amount=eligibility['total_gross'],
        platform_fee_amount=eligibility['total_platform_fee'],
        net_amount=eligibility['total_net'],
        currency=eligibility['currency'],
        invoice_count=len(eligibility['invoices']),
        status=PayoutStatus.PENDING,
    )
    db.session.add(payout)
    db.session.flush()

    for invoice in eligibility['invoices']:
        db.session.add(PayoutLineItem(
            payout_id=payout.id,
            invoice_id=invoice.id,
            order_id=invoice.order_id,
            gross_amount=invoice.total_amount,
            platform_fee=invoice.platform_fee_amount,
            net_amount=invoice.net_to_seller,
        ))
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        return fail('Invoices were claimed by another payout',
                    'CONCURRENT_MODIFICATION')

    log_audit(
        actor_id=actor_id,
        actor_role=actor_role,
        action='PAYOUT_CREATE',
        target_type='PAYOUT',
        target_id=payout.id,
        to_status=PayoutStatus.PENDING,
        payload={
            'seller_id': payout.seller_id,
            'invoice_count': payout.invoice_count,
            'gross_amount': eligibility['total_gross'],
            'net_amount': eligibility['total_net'],
        })
    outbox_service.enqueue_in_transaction(
        'payout.created', 'payout', payout.id,
        {'payout_id': payout.id,
         'payout_number': payout.payout_number,
         'seller_id': payout.seller_id,
         'net_amount': eligibility['total_net'],
         'currency': payout.currency})
    db.session.commit()

    logger.info("Payout %s created for seller %s: %d invoices, net %.2f",
                payout.payout_number, payout.seller_id,
                payout.invoice_count, eligibility['total_net'])
    return ok(payout)


def create_batch_payouts(period_start, period_end, actor_id=None):
    """Create payouts for every seller with an approved bank account.

    Sellers who turned auto payout off are skipped.
    """
    result = {'created': 0, 'skipped': 0, 'errors': []}
    seller_ids = {
        row.seller_id for row in db.session.query(SellerBank.seller_id)
        .filter(SellerBank.verification_status ==
                BankVerificationStatus.APPROVED).distinct()
    }
    for seller_id in sorted(seller_ids):
        if not get_payout_settings(seller_id)['auto_payout_enabled']:
            result['skipped'] += 1
            continue
        outcome = create_payout(seller_id, period_start, period_end,
                                actor_id=actor_id)
        if outcome['success']:
            result['created'] += 1
        elif outcome['code'] in ('NO_ELIGIBLE_INVOICES', 'BELOW_MINIMUM'):
            result['skipped'] += 1
        else:
            result['errors'].append(f"Seller {seller_id}: {outcome['error']}")
    logger.info("Batch payouts: %s", result)
    return result


def _transition(payout, target, actor_id, actor_role, action, payload=None):
    previous = payout.status
    lock_status(SellerPayout, payout.id, previous)
    payout.status = target
    log_audit(
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        target_type='PAYOUT',
        target_id=payout.id,
        from_status=previous,
        to_status=target,
        payload=payload or {})
    outbox_service.enqueue_in_transaction(
        f'payout.{target.value}', 'payout', payout.id,
        {
            'payout_id': payout.id,
            'payout_number': payout.payout_number,
            'seller_id': payout.seller_id,
            'from_status': previous.value,
            'to_status': target.value,
            'net_amount': to_amount(payout.net_amount),
        })


def _load(payout_id):
    return db.session.get(SellerPayout, payout_id)


def _invalid(payout, target):
    return fail(
        f'Cannot transition from {payout.status.value} to {target.value}',
        'INVALID_STATE')


@service_operation
def approve_payout(payout_id, actor_id, actor_role='ADMIN'):
    payout = _load(payout_id)
    if not payout:
        return fail('Payout not found', 'PAYOUT_NOT_FOUND')
    if payout.status != PayoutStatus.PENDING:
        return _invalid(payout, PayoutStatus.PROCESSING)

    payout.approved_by = actor_id
    payout.approved_at = utcnow()
    _transition(payout, PayoutStatus.PROCESSING, actor_id, actor_role,
                'PAYOUT_APPROVE')
    db.session.commit()
    return ok(payout)


@service_operation
def process_payout(payout_id, actor_id, actor_role='ADMIN'):
    """Release a held payout back into processing."""
    payout = _load(payout_id)
    if not payout:
        return fail('Payout not found', 'PAYOUT_NOT_FOUND')
    if payout.status != PayoutStatus.ON_HOLD:
        return _invalid(payout, PayoutStatus.PROCESSING)

    payout.hold_until = None
    _transition(payout, PayoutStatus.PROCESSING, actor_id, actor_role,
                'PAYOUT_RELEASE', {'hold_reason': payout.hold_reason})
    db.session.commit()
    return ok(payout)


@service_operation
def settle_payout(payout_id, actor_id, bank_reference, actor_role='ADMIN'):
    payout = _load(payout_id)
    if not payout:
        return fail('Payout not found', 'PAYOUT_NOT_FOUND')
    if not can_transition_to(payout.status, PayoutStatus.SETTLED):
        return _invalid(payout, PayoutStatus.SETTLED)
    bank_reference = (bank_reference or '').strip()
    if not bank_reference:
        return fail('Bank reference is required to settle',
                    'VALIDATION_ERROR')

    payout.bank_reference = bank_reference
    payout.settled_at = utcnow()
    _transition(payout, PayoutStatus.SETTLED, actor_id, actor_role,
                'PAYOUT_SETTLE', {'bank_reference': bank_reference})
    db.session.commit()
    return ok(payout)


@service_operation
def fail_payout(payout_id, actor_id, reason, actor_role='ADMIN'):
    payout = _load(payout_id)
    if not payout:
        return fail('Payout not found', 'PAYOUT_NOT_FOUND')
    if payout.status == PayoutStatus.SETTLED:
        return fail('Cannot fail a settled payout', 'INVALID_STATE')
    if payout.status == PayoutStatus.FAILED:
        return fail('Payout has already failed', 'INVALID_STATE')
    reason = (reason or '').strip()
    if not reason:
        return fail('A failure reason is required', 'VALIDATION_ERROR')

    payout.failure_reason = reason
    payout.failed_at = utcnow()
    _transition(payout, PayoutStatus.FAILED, actor_id, actor_role,
                'PAYOUT_FAIL', {'reason': reason})
    db.session.commit()
    return ok(payout)


@service_operation
def hold_payout(payout_id, actor_id, reason, hold_until=None,
                actor_role='ADMIN'):
    payout = _load(payout_id)
    if not payout:
        return fail('Payout not found', 'PAYOUT_NOT_FOUND')
    if payout.status == PayoutStatus.SETTLED:
        return fail('Cannot hold a settled payout', 'INVALID_STATE')
    if not can_transition_to(payout.status, PayoutStatus.ON_HOLD):
        return _invalid(payout, PayoutStatus.ON_HOLD)
    reason = (reason or '').strip()
    if not reason:
        return fail('A hold reason is required', 'VALIDATION_ERROR')

    payout.hold_reason = reason
    payout.hold_until = hold_until
    payout.held_at = utcnow()
    _transition(payout, PayoutStatus.ON_HOLD, actor_id, actor_role,
                'PAYOUT_HOLD',
                {'reason': reason,
                 'hold_until': hold_until.isoformat() if hold_until
                 else None})
    db.session.commit()
    return ok(payout)


@service_operation
def get_payout(payout_id, actor_id=None, actor_role='SELLER'):
    payout = _load(payout_id)
    if not payout:
        return fail('Payout not found', 'PAYOUT_NOT_FOUND')
    if (actor_role or '').upper() != 'ADMIN' and \
            not is_seller_of(payout, actor_id):
        return fail('Not authorized to view this payout', 'UNAUTHORIZED')
    return ok(payout)


def list_seller_payouts(seller_id, status=None):
    query = SellerPayout.query.filter(
        SellerPayout.seller_id.in_(resolve_seller_ids(seller_id)))
    if status:
        query = query.filter(SellerPayout.status == PayoutStatus(status))
    return query.order_by(SellerPayout.created_at.desc()).all()


def get_payout_history(payout_id):
    return get_history('PAYOUT', payout_id)


def get_payout_stats(seller_id):
    rows = db.session.query(
        SellerPayout.status,
        func.count(SellerPayout.id),
        func.coalesce(func.sum(SellerPayout.net_amount), 0)
    ).filter(
        SellerPayout.seller_id.in_(resolve_seller_ids(seller_id))
    ).group_by(SellerPayout.status).all()

    stats = {
        'total_paid': 0.0,
        'pending_amount': 0.0,
        'payout_count': {status.value: 0 for status in PayoutStatus},
    }
    for status, count, net in rows:
        stats['payout_count'][status.value] = count
        if status == PayoutStatus.SETTLED:
            stats['total_paid'] += to_amount(net)
        elif status in (PayoutStatus.PENDING, PayoutStatus.PROCESSING):
            stats['pending_amount'] += to_amount(net)

    eligibility = calculate_eligible_payouts(seller_id)
    stats['next_payout_amount'] = (
        eligibility['total_net'] if eligibility['eligible'] else None)
    return stats
