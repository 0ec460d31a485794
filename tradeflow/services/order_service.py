from tradeflow.extensions import db
from tradeflow.models import (
    Item,
    ItemStatus,
    Order,
    OrderStatus,
    OrderPaymentStatus,
    FulfillmentStatus,
    PaymentMethod)
from tradeflow.services import (
    invoice_service,
    numbering_service,
    outbox_service,
    payment_service)
from tradeflow.services.audit_service import log_audit, get_history
from tradeflow.services.identity_service import (
    is_buyer_of,
    is_seller_of,
    resolve_seller_ids)
from tradeflow.errors import NotFoundError
from tradeflow.utils import (
    ok,
    fail,
    utcnow,
    to_amount,
    as_id_set,
    lock_status,
    paginate_query,
    validate_snapshot,
    service_operation)
from sqlalchemy import func
import logging

logger = logging.getLogger(__name__)

TRANSITIONS = {
    OrderStatus.PENDING_CONFIRMATION: {
        OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED},
    OrderStatus.IN_PROGRESS: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.FAILED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED, OrderStatus.CLOSED},
    OrderStatus.FAILED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
    OrderStatus.CLOSED: set(),
}

SHIPPABLE_STATUSES = (OrderStatus.CONFIRMED, OrderStatus.IN_PROGRESS)
BUYER_CANCELLABLE = (OrderStatus.PENDING_CONFIRMATION,)
SELLER_CANCELLABLE = (
    OrderStatus.PENDING_CONFIRMATION,
    OrderStatus.CONFIRMED,
    OrderStatus.IN_PROGRESS,
)

ADDRESS_FIELDS = ('recipient_name', 'address_line1', 'city', 'country')

BUYER = 'BUYER'
SELLER = 'SELLER'
ADMIN = 'ADMIN'
SYSTEM = 'SYSTEM'


def _coerce_status(status):
    try:
        return OrderStatus(status)
    except ValueError:
        return None


def can_transition_to(current, target) -> bool:
    current = _coerce_status(current)
    target = _coerce_status(target)
    if current is None or target is None:
        return False
    return target in TRANSITIONS.get(current, set())


def get_valid_transitions(current):
    current = _coerce_status(current)
    if current is None:
        return []
    return sorted(s.value for s in TRANSITIONS.get(current, set()))


def is_terminal(status) -> bool:
    status = _coerce_status(status)
    return status is not None and not TRANSITIONS.get(status)


def can_confirm(order) -> bool:
    return order.status == OrderStatus.PENDING_CONFIRMATION


def can_ship(order) -> bool:
    return order.status in SHIPPABLE_STATUSES


def can_mark_delivered(order) -> bool:
    return order.status == OrderStatus.SHIPPED


def can_cancel(order, actor_role=BUYER) -> bool:
    if actor_role.upper() == BUYER:
        return order.status in BUYER_CANCELLABLE
    return order.status in SELLER_CANCELLABLE


def _transition_error(order, target):
    return fail(
        f'Cannot transition from {order.status.value} to {target.value}',
        'INVALID_STATE')


def _authorized(order, actor_id, actor_role) -> bool:
    role = (actor_role or '').upper()
    if role == BUYER:
        return is_buyer_of(order, actor_id)
    if role == SELLER:
        return is_seller_of(order, actor_id)
    return role in (ADMIN, SYSTEM)


def _apply_transition(order, target, actor_id, actor_role, action,
                      metadata=None):
    """Move the order and write its audit row and outbox event.

    The caller has already validated the move; this re-reads the status
    under lock first so a concurrent writer makes us fail, not overwrite.
    """
    previous = order.status
    lock_status(Order, order.id, previous)

    now = utcnow()
    order.status = target
    if target == OrderStatus.CONFIRMED:
        order.confirmed_at = now
    elif target == OrderStatus.IN_PROGRESS:
        order.processing_at = now
        order.fulfillment_status = FulfillmentStatus.PACKING
    elif target == OrderStatus.SHIPPED:
        order.shipped_at = now
        order.fulfillment_status = FulfillmentStatus.SHIPPED
    elif target == OrderStatus.DELIVERED:
        order.delivered_at = now
        order.fulfillment_status = FulfillmentStatus.DELIVERED
    elif target == OrderStatus.FAILED:
        order.fulfillment_status = FulfillmentStatus.FAILED
    elif target == OrderStatus.CANCELLED:
        order.cancelled_at = now
    elif target == OrderStatus.REFUNDED:
        order.refunded_at = now
        order.payment_status = OrderPaymentStatus.REFUNDED
    elif target == OrderStatus.CLOSED:
        order.closed_at = now

    log_audit(
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        target_type='ORDER',
        target_id=order.id,
        from_status=previous,
        to_status=target,
        payload=metadata or {})
    outbox_service.enqueue_in_transaction(
        f'order.{target.value}', 'order', order.id,
        {
            'order_id': order.id,
            'order_number': order.order_number,
            'buyer_id': order.buyer_id,
            'seller_id': order.seller_id,
            'from_status': previous.value,
            'to_status': target.value,
            'metadata': metadata or {},
        })
    return previous


@service_operation
def create_order(buyer_id, item_id, quantity=1,
                 payment_method=PaymentMethod.BANK_TRANSFER,
                 shipping_address=None, buyer_notes=None):
    """Place a direct purchase for a catalog item."""
    if not buyer_id:
        return fail('Buyer is required', 'VALIDATION_ERROR')
    item = db.session.get(Item, item_id)
    if not item:
        return fail('Item not found', 'ITEM_NOT_FOUND')
    if item.status != ItemStatus.ACTIVE:
        return fail('Item is not available', 'VALIDATION_ERROR')
    if str(buyer_id) in resolve_seller_ids(item.seller_id):
        return fail('Sellers cannot buy their own items', 'VALIDATION_ERROR')

    try:
        quantity = int(quantity)
    except (TypeError, ValueError):
        return fail('Quantity must be a whole number', 'VALIDATION_ERROR')
    if quantity <= 0:
        return fail('Quantity must be positive', 'VALIDATION_ERROR')

    try:
        method = PaymentMethod(payment_method)
    except ValueError:
        return fail('Unknown payment method', 'INVALID_PAYMENT_METHOD')

    if shipping_address is not None:
        error = validate_snapshot(shipping_address, ADDRESS_FIELDS,
                                  label='shipping_address')
        if error:
            return fail(error, 'VALIDATION_ERROR')
        shipping_address = dict(shipping_address)

    unit_price = to_amount(item.price)
    order = Order(
        order_number=numbering_service.next_number(
            numbering_service.ORDER_PREFIX),
        buyer_id=str(buyer_id),
        seller_id=item.seller_id,
        item_id=item.id,
        item_name=item.name,
        item_sku=item.sku,
        item_snapshot={
            'name': item.name,
            'sku': item.sku,
            'description': item.description,
            'price': unit_price,
            'currency': item.currency,
        },
        quantity=quantity,
        unit_price=unit_price,
        total_price=round(unit_price * quantity, 2),
        currency=item.currency,
        status=OrderStatus.PENDING_CONFIRMATION,
        payment_status=OrderPaymentStatus.UNPAID,
        payment_method=method,
        fulfillment_status=FulfillmentStatus.NOT_STARTED,
        shipping_address=shipping_address,
        buyer_notes=buyer_notes,
    )
    db.session.add(order)
    db.session.flush()

    log_audit(
        actor_id=str(buyer_id),
        actor_role=BUYER,
        action='ORDER_CREATE',
        target_type='ORDER',
        target_id=order.id,
        to_status=OrderStatus.PENDING_CONFIRMATION,
        payload={
            'order_number': order.order_number,
            'item_id': item.id,
            'quantity': quantity,
            'total_price': to_amount(order.total_price),
        })
    outbox_service.enqueue_in_transaction(
        'order.created', 'order', order.id,
        {'order_id': order.id,
         'order_number': order.order_number,
         'seller_id': order.seller_id,
         'total_price': to_amount(order.total_price)})
    db.session.commit()
    return ok(order)


@service_operation
def confirm_order(order_id, actor_id, notes=None):
    order = db.session.get(Order, order_id)
    if not order:
        return fail('Order not found', 'ORDER_NOT_FOUND')
    if not is_seller_of(order, actor_id):
        return fail('Not authorized to confirm this order', 'UNAUTHORIZED')
    if not can_confirm(order):
        return _transition_error(order, OrderStatus.CONFIRMED)

    if notes:
        order.seller_notes = notes
    _apply_transition(order, OrderStatus.CONFIRMED, actor_id, SELLER,
                      'ORDER_CONFIRM', {'notes': notes})
    db.session.commit()
    return ok(order)


@service_operation
def start_processing(order_id, actor_id):
    order = db.session.get(Order, order_id)
    if not order:
        return fail('Order not found', 'ORDER_NOT_FOUND')
    if not is_seller_of(order, actor_id):
        return fail('Not authorized to update this order', 'UNAUTHORIZED')
    if not can_transition_to(order.status, OrderStatus.IN_PROGRESS):
        return _transition_error(order, OrderStatus.IN_PROGRESS)

    _apply_transition(order, OrderStatus.IN_PROGRESS, actor_id, SELLER,
                      'ORDER_START_PROCESSING')
    db.session.commit()
    return ok(order)


@service_operation
def ship_order(order_id, actor_id, carrier, tracking_number=None,
               estimated_delivery=None, notes=None):
    order = db.session.get(Order, order_id)
    if not order:
        return fail('Order not found', 'ORDER_NOT_FOUND')
    if not is_seller_of(order, actor_id):
        return fail('Not authorized to ship this order', 'UNAUTHORIZED')
    if not can_ship(order):
        return _transition_error(order, OrderStatus.SHIPPED)
    carrier = (carrier or '').strip()
    if not carrier:
        return fail('Carrier is required to ship an order',
                    'VALIDATION_ERROR')

    tracking_number = (tracking_number or '').strip() or None
    order.carrier = carrier
    order.tracking_number = tracking_number
    order.estimated_delivery = estimated_delivery
    if notes:
        order.seller_notes = notes
    _apply_transition(order, OrderStatus.SHIPPED, actor_id, SELLER,
                      'ORDER_SHIP',
                      {'carrier': carrier,
                       'tracking_number': tracking_number})
    db.session.commit()
    return ok(order)


@service_operation
def update_tracking(order_id, actor_id, tracking_number, carrier=None,
                    estimated_delivery=None):
    order = db.session.get(Order, order_id)
    if not order:
        return fail('Order not found', 'ORDER_NOT_FOUND')
    if not is_seller_of(order, actor_id):
        return fail('Not authorized to update this order', 'UNAUTHORIZED')
    if order.status != OrderStatus.SHIPPED:
        return fail('Tracking can only be updated on shipped orders',
                    'INVALID_STATE')
    tracking_number = (tracking_number or '').strip()
    if not tracking_number:
        return fail('Tracking number is required', 'VALIDATION_ERROR')

    previous = order.tracking_number
    order.tracking_number = tracking_number
    if carrier:
        order.carrier = carrier.strip()
    if estimated_delivery:
        order.estimated_delivery = estimated_delivery

    log_audit(
        actor_id=actor_id,
        actor_role=SELLER,
        action='ORDER_TRACKING_UPDATE',
        target_type='ORDER',
        target_id=order.id,
        payload={'previous_tracking_number': previous,
                 'tracking_number': tracking_number,
                 'carrier': order.carrier})
    db.session.commit()
    return ok(order)


def _issue_invoice_best_effort(order):
    try:
        result = invoice_service.create_from_delivered_order(order.id)
        if not result['success']:
            logger.error("Invoice not created for order %s: %s",
                         order.order_number, result['error'])
    except Exception as e:
        logger.error(
            f"Invoice generation failed for order {order.id}: {e}",
            exc_info=True)
        db.session.rollback()


@service_operation
def mark_delivered(order_id, actor_id=None, actor_role=SELLER,
                   cash_collected=False):
    """Record delivery.

    Delivery alone never changes ``payment_status``. For a cash-on-delivery
    order delivered with ``cash_collected=True`` the synthetic cash payment
    is recorded in the same transaction and the order becomes ``paid_cash``
    (not ``paid``). Without the flag a COD order stays unpaid until
    ``payment_service.confirm_cod_payment`` is called by buyer or seller.
    """
    order = db.session.get(Order, order_id)
    if not order:
        return fail('Order not found', 'ORDER_NOT_FOUND')
    role = (actor_role or '').upper()
    if not _authorized(order, actor_id, role) or role == ADMIN:
        return fail('Not authorized to mark this order delivered',
                    'UNAUTHORIZED')
    if not can_mark_delivered(order):
        return _transition_error(order, OrderStatus.DELIVERED)
    if cash_collected and order.payment_method != PaymentMethod.COD:
        return fail('Order is not cash on delivery', 'NOT_COD')

    order.delivery_confirmed_by = role.lower()
    _apply_transition(order, OrderStatus.DELIVERED, actor_id, role,
                      'ORDER_DELIVER',
                      {'confirmed_by': role.lower(),
                       'cash_collected': bool(cash_collected)})
    if cash_collected:
        payment_service.apply_cod_payment(order, actor_id, role)

    if order.item_id:
        Item.query.filter_by(id=order.item_id).update(
            {Item.successful_orders: Item.successful_orders + 1},
            synchronize_session=False)
    db.session.commit()

    _issue_invoice_best_effort(order)
    return ok(order)


@service_operation
def cancel_order(order_id, actor_id, actor_role, reason=None):
    order = db.session.get(Order, order_id)
    if not order:
        return fail('Order not found', 'ORDER_NOT_FOUND')
    role = (actor_role or '').upper()
    if not _authorized(order, actor_id, role):
        return fail('Not authorized to cancel this order', 'UNAUTHORIZED')

    if role == BUYER and order.status not in BUYER_CANCELLABLE:
        return fail(
            'Buyers can only cancel orders awaiting confirmation',
            'INVALID_STATE')
    if not can_transition_to(order.status, OrderStatus.CANCELLED):
        return _transition_error(order, OrderStatus.CANCELLED)

    order.cancellation_reason = reason
    order.cancelled_by = role.lower()
    _apply_transition(order, OrderStatus.CANCELLED, actor_id, role,
                      'ORDER_CANCEL', {'reason': reason})
    db.session.commit()
    return ok(order)


@service_operation
def close_order(order_id, actor_id, actor_role=SELLER):
    order = db.session.get(Order, order_id)
    if not order:
        return fail('Order not found', 'ORDER_NOT_FOUND')
    role = (actor_role or '').upper()
    if not _authorized(order, actor_id, role):
        return fail('Not authorized to close this order', 'UNAUTHORIZED')
    if not can_transition_to(order.status, OrderStatus.CLOSED):
        return _transition_error(order, OrderStatus.CLOSED)

    _apply_transition(order, OrderStatus.CLOSED, actor_id, role,
                      'ORDER_CLOSE')
    db.session.commit()
    return ok(order)


@service_operation
def update_status(order_id, new_status, actor_id, actor_role=SELLER,
                  metadata=None):
    """Generic transition checked against the table only."""
    order = db.session.get(Order, order_id)
    if not order:
        return fail('Order not found', 'ORDER_NOT_FOUND')
    role = (actor_role or '').upper()
    if role == BUYER or not _authorized(order, actor_id, role):
        return fail('Not authorized to update this order', 'UNAUTHORIZED')

    target = _coerce_status(new_status)
    if target is None:
        return fail(f'Unknown order status {new_status}', 'VALIDATION_ERROR')
    if not can_transition_to(order.status, target):
        return _transition_error(order, target)

    _apply_transition(order, target, actor_id, role,
                      f'ORDER_STATUS_{target.name}', metadata)
    db.session.commit()
    return ok(order)


@service_operation
def get_order(order_id, actor_id, actor_role):
    order = db.session.get(Order, order_id)
    if not order:
        return fail('Order not found', 'ORDER_NOT_FOUND')
    if not _authorized(order, actor_id, actor_role):
        return fail('Not authorized to view this order', 'UNAUTHORIZED')
    return ok(order)


def get_order_or_raise(order_id):
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f'Order {order_id} not found', 'ORDER_NOT_FOUND')
    return order


def get_order_history(order_id):
    order = get_order_or_raise(order_id)
    return get_history('ORDER', order.id)


def list_buyer_orders(buyer_id, status=None, page=1, per_page=None):
    query = Order.query.filter(Order.buyer_id == str(buyer_id))
    if status:
        query = query.filter(Order.status == OrderStatus(status))
    return paginate_query(query.order_by(Order.created_at.desc()),
                          page=page, per_page=per_page)


def list_seller_orders(actor_id, status=None, page=1, per_page=None):
    seller_ids = resolve_seller_ids(actor_id) or as_id_set(actor_id)
    query = Order.query.filter(Order.seller_id.in_(seller_ids))
    if status:
        query = query.filter(Order.status == OrderStatus(status))
    return paginate_query(query.order_by(Order.created_at.desc()),
                          page=page, per_page=per_page)


def get_order_stats(seller_id=None, buyer_id=None):
    """Order counts per status for one seller or buyer."""
    query = db.session.query(Order.status, func.count(Order.id))
    if seller_id:
        query = query.filter(Order.seller_id.in_(
            resolve_seller_ids(seller_id)))
    if buyer_id:
        query = query.filter(Order.buyer_id == str(buyer_id))
    counts = {status.value: 0 for status in OrderStatus}
    for status, count in query.group_by(Order.status).all():
        counts[status.value] = count
    counts['total'] = sum(counts[status.value] for status in OrderStatus)
    return counts
