from tradeflow.extensions import db
from tradeflow.models import (
    Dispute,
    DisputeStatus,
    ReturnRequest,
    ReturnStatus,
    ReturnType,
    ReturnCondition)
from tradeflow.services import numbering_service, outbox_service
from tradeflow.services.audit_service import log_audit, get_history
from tradeflow.services.identity_service import is_buyer_of, is_seller_of
from tradeflow.utils import (
    ok,
    fail,
    utcnow,
    lock_status,
    validate_snapshot,
    validate_snapshot_list,
    service_operation)
from sqlalchemy.exc import IntegrityError
import copy
import logging

logger = logging.getLogger(__name__)

TRANSITIONS = {
    ReturnStatus.REQUESTED: {ReturnStatus.APPROVED, ReturnStatus.REJECTED},
    ReturnStatus.APPROVED: {ReturnStatus.IN_TRANSIT},
    ReturnStatus.IN_TRANSIT: {ReturnStatus.RECEIVED},
    ReturnStatus.RECEIVED: {ReturnStatus.REFUND_PROCESSED},
    ReturnStatus.REFUND_PROCESSED: {ReturnStatus.CLOSED},
    ReturnStatus.REJECTED: set(),
    ReturnStatus.CLOSED: set(),
}

RETURNABLE_DISPUTE_STATUSES = (DisputeStatus.RESOLVED, DisputeStatus.CLOSED)
ITEM_FIELDS = ('name', 'quantity')
ADDRESS_FIELDS = ('recipient_name', 'address_line1', 'city', 'country')


def can_transition_to(current, target) -> bool:
    try:
        current = ReturnStatus(current)
        target = ReturnStatus(target)
    except ValueError:
        return False
    return target in TRANSITIONS.get(current, set())


def _transition(ret, target, actor_id, actor_role, action, payload=None):
    previous = ret.status
    lock_status(ReturnRequest, ret.id, previous)
    ret.status = target
    log_audit(
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        target_type='RETURN',
        target_id=ret.id,
        from_status=previous,
        to_status=target,
        payload=payload or {})
    outbox_service.enqueue_in_transaction(
        f'return.{target.value}', 'return', ret.id,
        {
            'return_id': ret.id,
            'return_number': ret.return_number,
            'dispute_id': ret.dispute_id,
            'order_id': ret.order_id,
            'buyer_id': ret.buyer_id,
            'seller_id': ret.seller_id,
            'from_status': previous.value,
            'to_status': target.value,
        })


def _load_for_seller(return_id, actor_id):
    ret = db.session.get(ReturnRequest, return_id)
    if not ret:
        return None, fail('Return not found', 'RETURN_NOT_FOUND')
    if not is_seller_of(ret, actor_id):
        return None, fail('Not authorized to manage this return',
                          'UNAUTHORIZED')
    return ret, None


@service_operation
def create_return(dispute_id, actor_id, return_type, items,
                  return_reason=None, return_address=None):
    """Open the return for a resolved dispute.

    ``items`` and ``return_address`` are copied; later catalog or address
    edits do not reach the stored return.
    """
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        return fail('Dispute not found', 'DISPUTE_NOT_FOUND')
    if is_buyer_of(dispute, actor_id):
        role = 'BUYER'
    elif is_seller_of(dispute, actor_id):
        role = 'SELLER'
    else:
        return fail('Not authorized to create a return for this dispute',
                    'UNAUTHORIZED')
    if dispute.status not in RETURNABLE_DISPUTE_STATUSES:
        return fail('Returns can only be created for resolved disputes',
                    'INVALID_STATE')

    try:
        return_type = ReturnType(return_type)
    except ValueError as e:
        return fail(str(e), 'VALIDATION_ERROR')
    error = validate_snapshot_list(items, ITEM_FIELDS, label='items')
    if error:
        return fail(error, 'VALIDATION_ERROR')
    if return_address is not None:
        error = validate_snapshot(return_address, ADDRESS_FIELDS,
                                  label='return_address')
        if error:
            return fail(error, 'VALIDATION_ERROR')

    if ReturnRequest.query.filter_by(dispute_id=dispute.id).first():
        return fail('A return already exists for this dispute',
                    'RETURN_EXISTS')

    ret = ReturnRequest(
        return_number=numbering_service.next_number(
            numbering_service.RETURN_PREFIX),
        dispute_id=dispute.id,
        order_id=dispute.order_id,
        buyer_id=dispute.buyer_id,
        seller_id=dispute.seller_id,
        return_type=return_type,
        status=ReturnStatus.REQUESTED,
        items=copy.deepcopy(items),
        return_reason=return_reason,
        return_address=copy.deepcopy(return_address),
    )
    db.session.add(ret)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        return fail('A return already exists for this dispute',
                    'RETURN_EXISTS')

    log_audit(
        actor_id=actor_id,
        actor_role=role,
        action='RETURN_CREATE',
        target_type='RETURN',
        target_id=ret.id,
        to_status=ReturnStatus.REQUESTED,
        payload={'dispute_id': dispute.id,
                 'return_type': return_type.value,
                 'item_count': len(items)})
    outbox_service.enqueue_in_transaction(
        'return.requested', 'return', ret.id,
        {'return_id': ret.id,
         'return_number': ret.return_number,
         'seller_id': ret.seller_id,
         'order_id': ret.order_id})
    db.session.commit()
    return ok(ret)


@service_operation
def approve_return(return_id, actor_id, return_address=None, notes=None):
    ret, error = _load_for_seller(return_id, actor_id)
    if error:
        return error
    if ret.status != ReturnStatus.REQUESTED:
        return fail('Return is not in requested status', 'INVALID_STATE')

    if return_address is not None:
        error = validate_snapshot(return_address, ADDRESS_FIELDS,
                                  label='return_address')
        if error:
            return fail(error, 'VALIDATION_ERROR')
        ret.return_address = copy.deepcopy(return_address)
    if not ret.return_address:
        return fail('A return address is required to approve',
                    'VALIDATION_ERROR')

    ret.approved_at = utcnow()
    _transition(ret, ReturnStatus.APPROVED, actor_id, 'SELLER',
                'RETURN_APPROVE', {'notes': notes})
    db.session.commit()
    return ok(ret)


@service_operation
def reject_return(return_id, actor_id, reason):
    ret, error = _load_for_seller(return_id, actor_id)
    if error:
        return error
    if ret.status != ReturnStatus.REQUESTED:
        return fail('Return is not in requested status', 'INVALID_STATE')
    reason = (reason or '').strip()
    if not reason:
        return fail('A rejection reason is required', 'VALIDATION_ERROR')

    ret.rejection_reason = reason
    ret.rejected_at = utcnow()
    _transition(ret, ReturnStatus.REJECTED, actor_id, 'SELLER',
                'RETURN_REJECT', {'reason': reason})
    db.session.commit()
    return ok(ret)


@service_operation
def mark_return_shipped(return_id, buyer_id, tracking_number, carrier=None):
    ret = db.session.get(ReturnRequest, return_id)
    if not ret:
        return fail('Return not found', 'RETURN_NOT_FOUND')
    if not is_buyer_of(ret, buyer_id):
        return fail('Only the buyer ships a return', 'UNAUTHORIZED')
    if ret.status != ReturnStatus.APPROVED:
        return fail('Return must be approved before shipping',
                    'INVALID_STATE')
    tracking_number = (tracking_number or '').strip()
    if not tracking_number:
        return fail('Tracking number is required', 'VALIDATION_ERROR')

    ret.tracking_number = tracking_number
    ret.carrier = (carrier or '').strip() or None
    ret.shipped_at = utcnow()
    _transition(ret, ReturnStatus.IN_TRANSIT, buyer_id, 'BUYER',
                'RETURN_SHIP',
                {'tracking_number': tracking_number,
                 'carrier': ret.carrier})
    db.session.commit()
    return ok(ret)


@service_operation
def confirm_return_received(return_id, actor_id, condition,
                            inspection_notes=None):
    ret, error = _load_for_seller(return_id, actor_id)
    if error:
        return error
    if ret.status != ReturnStatus.IN_TRANSIT:
        return fail('Return is not in transit', 'INVALID_STATE')
    try:
        condition = ReturnCondition(condition)
    except ValueError as e:
        return fail(str(e), 'VALIDATION_ERROR')

    ret.received_condition = condition
    ret.inspection_notes = inspection_notes
    ret.received_at = utcnow()
    _transition(ret, ReturnStatus.RECEIVED, actor_id, 'SELLER',
                'RETURN_RECEIVE',
                {'condition': condition.value,
                 'inspection_notes': inspection_notes})
    db.session.commit()
    return ok(ret)


@service_operation
def process_refund(return_id, actor_id, refund_amount, refund_reference=None):
    """Record the refund the seller issued.

    The amount is the seller's call and is not compared with the order or
    the dispute's requested amount.
    """
    ret, error = _load_for_seller(return_id, actor_id)
    if error:
        return error
    if ret.status != ReturnStatus.RECEIVED:
        return fail('Return must be received before processing refund',
                    'INVALID_STATE')
    try:
        refund_amount = round(float(refund_amount), 2)
    except (TypeError, ValueError):
        return fail('Refund amount must be a number', 'INVALID_AMOUNT')
    if refund_amount < 0:
        return fail('Refund amount cannot be negative', 'INVALID_AMOUNT')

    ret.refund_amount = refund_amount
    ret.refund_reference = refund_reference
    ret.refund_processed_at = utcnow()
    _transition(ret, ReturnStatus.REFUND_PROCESSED, actor_id, 'SELLER',
                'RETURN_REFUND',
                {'refund_amount': refund_amount,
                 'refund_reference': refund_reference})
    db.session.commit()
    return ok(ret)


@service_operation
def close_return(return_id, actor_id):
    ret = db.session.get(ReturnRequest, return_id)
    if not ret:
        return fail('Return not found', 'RETURN_NOT_FOUND')
    if is_buyer_of(ret, actor_id):
        role = 'BUYER'
    elif is_seller_of(ret, actor_id):
        role = 'SELLER'
    else:
        return fail('Not authorized to close this return', 'UNAUTHORIZED')
    if ret.status != ReturnStatus.REFUND_PROCESSED:
        return fail('Return can only be closed after the refund',
                    'INVALID_STATE')

    ret.closed_at = utcnow()
    _transition(ret, ReturnStatus.CLOSED, actor_id, role, 'RETURN_CLOSE')
    db.session.commit()
    return ok(ret)


@service_operation
def get_return(return_id, actor_id):
    ret = db.session.get(ReturnRequest, return_id)
    if not ret:
        return fail('Return not found', 'RETURN_NOT_FOUND')
    if not (is_buyer_of(ret, actor_id) or is_seller_of(ret, actor_id)):
        return fail('Not authorized to view this return', 'UNAUTHORIZED')
    return ok(ret)


def get_return_by_dispute(dispute_id):
    return ReturnRequest.query.filter_by(dispute_id=dispute_id).first()


def get_return_history(return_id):
    return get_history('RETURN', return_id)
