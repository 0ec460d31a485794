from tradeflow.extensions import db
from tradeflow.models import (
    Order,
    OrderStatus,
    Dispute,
    DisputeStatus,
    DisputeReason,
    DisputeResolution,
    DisputePriority,
    SellerResponseType,
    User,
    UserRole)
from tradeflow.services import numbering_service, outbox_service
from tradeflow.services.audit_service import log_audit, get_history
from tradeflow.services.identity_service import (
    is_buyer_of,
    is_seller_of,
    resolve_seller_ids)
from tradeflow.utils import (
    ok,
    fail,
    setting,
    utcnow,
    to_amount,
    amount_exceeds,
    lock_status,
    validate_snapshot_list,
    service_operation)
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from datetime import timedelta
import logging

logger = logging.getLogger(__name__)

TRANSITIONS = {
    # RESOLVED from OPEN and UNDER_REVIEW is the seller-accepts shortcut.
    DisputeStatus.OPEN: {
        DisputeStatus.UNDER_REVIEW,
        DisputeStatus.SELLER_RESPONDED,
        DisputeStatus.RESOLVED},
    DisputeStatus.UNDER_REVIEW: {
        DisputeStatus.SELLER_RESPONDED,
        DisputeStatus.ESCALATED,
        DisputeStatus.RESOLVED},
    DisputeStatus.SELLER_RESPONDED: {
        DisputeStatus.RESOLVED,
        DisputeStatus.REJECTED,
        DisputeStatus.ESCALATED},
    DisputeStatus.ESCALATED: {DisputeStatus.RESOLVED},
    DisputeStatus.RESOLVED: {DisputeStatus.CLOSED},
    DisputeStatus.REJECTED: set(),
    DisputeStatus.CLOSED: set(),
}

ACTIVE_STATUSES = (
    DisputeStatus.OPEN,
    DisputeStatus.UNDER_REVIEW,
    DisputeStatus.SELLER_RESPONDED,
    DisputeStatus.ESCALATED,
)
RESPONDABLE_STATUSES = (DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW)

EVIDENCE_FIELDS = ('type', 'url')

URGENT_ORDER_VALUE = 10000
HIGH_ORDER_VALUE = 5000


def can_transition_to(current, target) -> bool:
    try:
        current = DisputeStatus(current)
        target = DisputeStatus(target)
    except ValueError:
        return False
    return target in TRANSITIONS.get(current, set())


def priority_for(order_total) -> DisputePriority:
    total = to_amount(order_total)
    if total > URGENT_ORDER_VALUE:
        return DisputePriority.URGENT
    if total > HIGH_ORDER_VALUE:
        return DisputePriority.HIGH
    return DisputePriority.MEDIUM


def has_active_dispute(order_id) -> bool:
    return db.session.query(Dispute.id).filter(
        Dispute.order_id == order_id,
        Dispute.status.in_(ACTIVE_STATUSES)
    ).first() is not None


def _party_role(dispute, actor_id):
    if is_buyer_of(dispute, actor_id):
        return 'BUYER'
    if is_seller_of(dispute, actor_id):
        return 'SELLER'
    return None


def _is_platform_actor(dispute, actor_id, actor_role):
    if (actor_role or '').upper() != 'ADMIN':
        return False
    if _party_role(dispute, actor_id) is not None:
        return False
    user = db.session.get(User, actor_id) if actor_id else None
    return user is None or user.role == UserRole.ADMIN


def _transition(dispute, target, actor_id, actor_role, action,
                payload=None):
    previous = dispute.status
    lock_status(Dispute, dispute.id, previous)
    dispute.status = target
    log_audit(
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        target_type='DISPUTE',
        target_id=dispute.id,
        from_status=previous,
        to_status=target,
        payload=payload or {})
    outbox_service.enqueue_in_transaction(
        f'dispute.{target.value}', 'dispute', dispute.id,
        {
            'dispute_id': dispute.id,
            'dispute_number': dispute.dispute_number,
            'order_id': dispute.order_id,
            'buyer_id': dispute.buyer_id,
            'seller_id': dispute.seller_id,
            'from_status': previous.value,
            'to_status': target.value,
        })
    return previous


def _invalid(dispute, target):
    return fail(
        f'Cannot transition from {dispute.status.value} to {target.value}',
        'INVALID_STATE')


def _parse_amount(value):
    if value is None:
        return None, None
    try:
        amount = round(float(value), 2)
    except (TypeError, ValueError):
        return None, 'Amount must be a number'
    if amount <= 0:
        return None, 'Amount must be greater than zero'
    return amount, None


@service_operation
def create_dispute(order_id, buyer_id, reason, description,
                   requested_resolution, requested_amount=None,
                   evidence=None):
    order = db.session.get(Order, order_id)
    if not order:
        return fail('Order not found', 'ORDER_NOT_FOUND')
    if not is_buyer_of(order, buyer_id):
        return fail('Only the buyer can open a dispute', 'UNAUTHORIZED')
    if order.status != OrderStatus.DELIVERED or not order.delivered_at:
        return fail('Disputes can only be opened on delivered orders',
                    'INVALID_STATE')

    now = utcnow()
    window = timedelta(days=setting('DISPUTE_WINDOW_DAYS'))
    if now - order.delivered_at > window:
        return fail('Dispute window has expired', 'WINDOW_EXPIRED')

    try:
        reason = DisputeReason(reason)
        requested_resolution = DisputeResolution(requested_resolution)
    except ValueError as e:
        return fail(str(e), 'VALIDATION_ERROR')
    description = (description or '').strip()
    if not description:
        return fail('Description is required', 'VALIDATION_ERROR')

    requested_amount, error = _parse_amount(requested_amount)
    if error:
        return fail(error, 'INVALID_AMOUNT')
    if requested_amount and amount_exceeds(requested_amount,
                                           order.total_price):
        return fail('Requested amount exceeds the order total',
                    'INVALID_AMOUNT')

    if evidence:
        error = validate_snapshot_list(evidence, EVIDENCE_FIELDS,
                                       label='evidence')
        if error:
            return fail(error, 'VALIDATION_ERROR')

    if has_active_dispute(order.id):
        return fail('An active dispute already exists for this order',
                    'DISPUTE_EXISTS')

    dispute = Dispute(
        dispute_number=numbering_service.next_number(
            numbering_service.DISPUTE_PREFIX),
        order_id=order.id,
        buyer_id=order.buyer_id,
        seller_id=order.seller_id,
        reason=reason,
        description=description,
        evidence=[dict(e) for e in evidence] if evidence else [],
        requested_resolution=requested_resolution,
        requested_amount=requested_amount,
        status=DisputeStatus.OPEN,
        priority=priority_for(order.total_price),
        response_deadline=now + timedelta(
            hours=setting('DISPUTE_RESPONSE_HOURS')),
        resolution_deadline=now + timedelta(
            days=setting('DISPUTE_RESOLUTION_DAYS')),
    )
    db.session.add(dispute)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        return fail('An active dispute already exists for this order',
                    'DISPUTE_EXISTS')

    log_audit(
        actor_id=buyer_id,
        actor_role='BUYER',
        action='DISPUTE_CREATE',
        target_type='DISPUTE',
        target_id=dispute.id,
        to_status=DisputeStatus.OPEN,
        payload={
            'order_id': order.id,
            'reason': reason.value,
            'requested_resolution': requested_resolution.value,
            'requested_amount': requested_amount,
        })
    outbox_service.enqueue_in_transaction(
        'dispute.opened', 'dispute', dispute.id,
        {'dispute_id': dispute.id,
         'dispute_number': dispute.dispute_number,
         'order_id': order.id,
         'seller_id': order.seller_id,
         'priority': dispute.priority.value})
    db.session.commit()
    return ok(dispute)


@service_operation
def mark_under_review(dispute_id, actor_id):
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        return fail('Dispute not found', 'DISPUTE_NOT_FOUND')
    if not is_seller_of(dispute, actor_id):
        return fail('Not authorized to review this dispute', 'UNAUTHORIZED')
    if dispute.status != DisputeStatus.OPEN:
        return _invalid(dispute, DisputeStatus.UNDER_REVIEW)

    _transition(dispute, DisputeStatus.UNDER_REVIEW, actor_id, 'SELLER',
                'DISPUTE_UNDER_REVIEW')
    db.session.commit()
    return ok(dispute)


@service_operation
def seller_respond(dispute_id, actor_id, response_type, response,
                   proposed_resolution=None, proposed_amount=None):
    """Record the seller's answer.

    ``accept_responsibility`` resolves the dispute immediately with
    ``resolved_by='seller_accepted'``; the buyer is not asked.
    """
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        return fail('Dispute not found', 'DISPUTE_NOT_FOUND')
    if not is_seller_of(dispute, actor_id):
        return fail('Not authorized to respond to this dispute',
                    'UNAUTHORIZED')
    if dispute.status not in RESPONDABLE_STATUSES:
        return fail('Dispute is not in a respondable state', 'INVALID_STATE')

    try:
        response_type = SellerResponseType(response_type)
        if proposed_resolution is not None:
            proposed_resolution = DisputeResolution(proposed_resolution)
    except ValueError as e:
        return fail(str(e), 'VALIDATION_ERROR')
    response = (response or '').strip()
    if not response:
        return fail('A response message is required', 'VALIDATION_ERROR')
    proposed_amount, error = _parse_amount(proposed_amount)
    if error:
        return fail(error, 'INVALID_AMOUNT')
    if response_type == SellerResponseType.PROPOSE_RESOLUTION and \
            proposed_resolution is None:
        return fail('A proposed resolution is required', 'VALIDATION_ERROR')

    now = utcnow()
    dispute.seller_response_type = response_type
    dispute.seller_response = response
    dispute.seller_responded_at = now
    if response_type == SellerResponseType.PROPOSE_RESOLUTION:
        dispute.seller_proposed_resolution = proposed_resolution
        dispute.seller_proposed_amount = proposed_amount

    payload = {
        'response_type': response_type.value,
        'proposed_resolution': (
            proposed_resolution.value if proposed_resolution else None),
        'proposed_amount': proposed_amount,
    }
    if response_type == SellerResponseType.ACCEPT_RESPONSIBILITY:
        dispute.resolution = (
            proposed_resolution or DisputeResolution.FULL_REFUND)
        dispute.resolution_amount = proposed_amount
        dispute.resolved_by = 'seller_accepted'
        dispute.resolved_at = now
        _transition(dispute, DisputeStatus.RESOLVED, actor_id, 'SELLER',
                    'DISPUTE_SELLER_ACCEPT', payload)
    else:
        _transition(dispute, DisputeStatus.SELLER_RESPONDED, actor_id,
                    'SELLER', 'DISPUTE_SELLER_RESPOND', payload)
    db.session.commit()
    return ok(dispute)


def _check_buyer_decision(dispute, buyer_id):
    if not dispute:
        return fail('Dispute not found', 'DISPUTE_NOT_FOUND')
    if not is_buyer_of(dispute, buyer_id):
        return fail('Only the buyer can answer the seller', 'UNAUTHORIZED')
    if dispute.status != DisputeStatus.SELLER_RESPONDED:
        return fail('No pending resolution to answer', 'INVALID_STATE')
    if dispute.seller_response_type != \
            SellerResponseType.PROPOSE_RESOLUTION:
        return fail('Seller did not propose a resolution', 'INVALID_STATE')
    return None


@service_operation
def buyer_accept_resolution(dispute_id, buyer_id):
    dispute = db.session.get(Dispute, dispute_id)
    error = _check_buyer_decision(dispute, buyer_id)
    if error:
        return error

    dispute.resolution = dispute.seller_proposed_resolution
    dispute.resolution_amount = dispute.seller_proposed_amount
    dispute.resolved_by = 'buyer_accepted'
    dispute.resolved_at = utcnow()
    _transition(dispute, DisputeStatus.RESOLVED, buyer_id, 'BUYER',
                'DISPUTE_BUYER_ACCEPT',
                {'resolution': dispute.resolution.value,
                 'amount': to_amount(dispute.resolution_amount)
                 if dispute.resolution_amount is not None else None})
    db.session.commit()
    return ok(dispute)


@service_operation
def buyer_reject_resolution(dispute_id, buyer_id, reason=None):
    dispute = db.session.get(Dispute, dispute_id)
    error = _check_buyer_decision(dispute, buyer_id)
    if error:
        return error

    dispute.buyer_response = reason
    _transition(dispute, DisputeStatus.REJECTED, buyer_id, 'BUYER',
                'DISPUTE_BUYER_REJECT', {'reason': reason})
    db.session.commit()
    return ok(dispute)


@service_operation
def escalate_dispute(dispute_id, actor_id, reason):
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        return fail('Dispute not found', 'DISPUTE_NOT_FOUND')
    role = _party_role(dispute, actor_id)
    if role is None:
        return fail('Not authorized to escalate this dispute',
                    'UNAUTHORIZED')
    if not can_transition_to(dispute.status, DisputeStatus.ESCALATED):
        return fail(f'Cannot escalate from {dispute.status.value}',
                    'INVALID_STATE')
    reason = (reason or '').strip()
    if not reason:
        return fail('An escalation reason is required', 'VALIDATION_ERROR')

    dispute.is_escalated = True
    dispute.escalated_at = utcnow()
    dispute.escalation_reason = reason
    dispute.priority = DisputePriority.URGENT
    _transition(dispute, DisputeStatus.ESCALATED, actor_id, role,
                'DISPUTE_ESCALATE', {'reason': reason})
    db.session.commit()
    return ok(dispute)


@service_operation
def resolve_dispute(dispute_id, actor_id, resolution, resolution_amount=None,
                    notes=None, actor_role=None):
    """Platform decision on an escalated dispute.

    Only an admin actor may decide, and never one of the dispute's own
    parties.
    """
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        return fail('Dispute not found', 'DISPUTE_NOT_FOUND')
    if not _is_platform_actor(dispute, actor_id, actor_role):
        return fail('Only the platform can decide a dispute', 'UNAUTHORIZED')
    if dispute.status != DisputeStatus.ESCALATED:
        return fail('Only escalated disputes are decided by the platform',
                    'INVALID_STATE')
    try:
        resolution = DisputeResolution(resolution)
    except ValueError as e:
        return fail(str(e), 'VALIDATION_ERROR')
    resolution_amount, error = _parse_amount(resolution_amount)
    if error:
        return fail(error, 'INVALID_AMOUNT')

    dispute.resolution = resolution
    dispute.resolution_amount = resolution_amount
    dispute.resolution_notes = notes
    dispute.resolved_by = 'platform'
    dispute.resolved_at = utcnow()
    _transition(dispute, DisputeStatus.RESOLVED, actor_id, 'ADMIN',
                'DISPUTE_RESOLVE',
                {'resolution': resolution.value,
                 'amount': resolution_amount,
                 'notes': notes})
    db.session.commit()
    return ok(dispute)


@service_operation
def close_dispute(dispute_id, actor_id, actor_role=None):
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        return fail('Dispute not found', 'DISPUTE_NOT_FOUND')
    role = 'ADMIN' if (actor_role or '').upper() == 'ADMIN' else \
        _party_role(dispute, actor_id)
    if role is None:
        return fail('Not authorized to close this dispute', 'UNAUTHORIZED')
    if dispute.status != DisputeStatus.RESOLVED:
        return fail(f'Cannot close from {dispute.status.value}',
                    'INVALID_STATE')

    dispute.closed_at = utcnow()
    _transition(dispute, DisputeStatus.CLOSED, actor_id, role,
                'DISPUTE_CLOSE')
    db.session.commit()
    return ok(dispute)


@service_operation
def add_evidence(dispute_id, buyer_id, evidence):
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        return fail('Dispute not found', 'DISPUTE_NOT_FOUND')
    if not is_buyer_of(dispute, buyer_id):
        return fail('Only the buyer can add evidence', 'UNAUTHORIZED')
    if dispute.status not in ACTIVE_STATUSES:
        return fail('Cannot add evidence to a finished dispute',
                    'INVALID_STATE')
    error = validate_snapshot_list(evidence, EVIDENCE_FIELDS,
                                   label='evidence')
    if error:
        return fail(error, 'VALIDATION_ERROR')

    # Reassign so the JSON column is marked dirty.
    dispute.evidence = list(dispute.evidence or []) + [
        dict(e) for e in evidence]
    log_audit(
        actor_id=buyer_id,
        actor_role='BUYER',
        action='DISPUTE_EVIDENCE_ADD',
        target_type='DISPUTE',
        target_id=dispute.id,
        payload={'count': len(evidence)})
    db.session.commit()
    return ok(dispute)


@service_operation
def get_dispute(dispute_id, actor_id, actor_role=None):
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        return fail('Dispute not found', 'DISPUTE_NOT_FOUND')
    if (actor_role or '').upper() != 'ADMIN' and \
            _party_role(dispute, actor_id) is None:
        return fail('Not authorized to view this dispute', 'UNAUTHORIZED')
    return ok(dispute)


def get_dispute_by_order(order_id):
    return Dispute.query.filter_by(order_id=order_id).order_by(
        Dispute.created_at.desc()).first()


def get_dispute_history(dispute_id):
    return get_history('DISPUTE', dispute_id)


def list_disputes(buyer_id=None, seller_id=None, status=None):
    query = Dispute.query
    if buyer_id:
        query = query.filter(Dispute.buyer_id == str(buyer_id))
    if seller_id:
        query = query.filter(Dispute.seller_id.in_(
            resolve_seller_ids(seller_id)))
    if status:
        query = query.filter(Dispute.status == DisputeStatus(status))
    return query.order_by(Dispute.created_at.desc()).all()


def get_dispute_stats(buyer_id=None, seller_id=None):
    query = db.session.query(Dispute.status, func.count(Dispute.id))
    if buyer_id:
        query = query.filter(Dispute.buyer_id == str(buyer_id))
    if seller_id:
        query = query.filter(Dispute.seller_id.in_(
            resolve_seller_ids(seller_id)))
    counts = {status.value: 0 for status in DisputeStatus}
    for status, count in query.group_by(Dispute.status).all():
        counts[status.value] = count
    counts['total'] = sum(counts[status.value] for status in DisputeStatus)
    counts['active'] = sum(counts[status.value] for status in ACTIVE_STATUSES)
    return counts
