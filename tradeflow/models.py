from tradeflow.extensions import db
from tradeflow.utils import utcnow
from sqlalchemy import CheckConstraint, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSONB
import enum
import uuid


# Native JSON column; JSONB on PostgreSQL.
JSONType = db.JSON().with_variant(JSONB(), 'postgresql')


def _uuid():
    return str(uuid.uuid4())


def _enum(enum_class):
    # Persist the lowercase values ('pending_confirmation'), not member names.
    return db.Enum(
        enum_class,
        name=enum_class.__name__.lower(),
        values_callable=lambda members: [m.value for m in members],
    )


class UserRole(enum.Enum):
    BUYER = 'buyer'
    SELLER = 'seller'
    ADMIN = 'admin'


class ItemStatus(enum.Enum):
    ACTIVE = 'active'
    INACTIVE = 'inactive'


class OrderStatus(enum.Enum):
    PENDING_CONFIRMATION = 'pending_confirmation'
    CONFIRMED = 'confirmed'
    IN_PROGRESS = 'in_progress'
    SHIPPED = 'shipped'
    DELIVERED = 'delivered'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
    REFUNDED = 'refunded'
    CLOSED = 'closed'


class OrderPaymentStatus(enum.Enum):
    UNPAID = 'unpaid'
    PARTIAL = 'partial'
    AUTHORIZED = 'authorized'
    PAID = 'paid'
    PAID_CASH = 'paid_cash'
    REFUNDED = 'refunded'


class FulfillmentStatus(enum.Enum):
    NOT_STARTED = 'not_started'
    PACKING = 'packing'
    SHIPPED = 'shipped'
    DELIVERED = 'delivered'
    FAILED = 'failed'


class PaymentMethod(enum.Enum):
    BANK_TRANSFER = 'bank_transfer'
    CARD = 'card'
    WALLET = 'wallet'
    COD = 'cod'


class PaymentStatus(enum.Enum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    FAILED = 'failed'


class InvoiceStatus(enum.Enum):
    DRAFT = 'draft'
    ISSUED = 'issued'
    PAID = 'paid'
    OVERDUE = 'overdue'
    CANCELLED = 'cancelled'


class DisputeReason(enum.Enum):
    WRONG_ITEM = 'wrong_item'
    DAMAGED_GOODS = 'damaged_goods'
    MISSING_QUANTITY = 'missing_quantity'
    LATE_DELIVERY = 'late_delivery'
    QUALITY_ISSUE = 'quality_issue'
    OTHER = 'other'


class DisputeStatus(enum.Enum):
    OPEN = 'open'
    UNDER_REVIEW = 'under_review'
    SELLER_RESPONDED = 'seller_responded'
    ESCALATED = 'escalated'
    RESOLVED = 'resolved'
    REJECTED = 'rejected'
    CLOSED = 'closed'


class DisputeResolution(enum.Enum):
    FULL_REFUND = 'full_refund'
    PARTIAL_REFUND = 'partial_refund'
    REPLACEMENT = 'replacement'
    RETURN_AND_REFUND = 'return_and_refund'
    NO_ACTION = 'no_action'


class SellerResponseType(enum.Enum):
    PROPOSE_RESOLUTION = 'propose_resolution'
    ACCEPT_RESPONSIBILITY = 'accept_responsibility'
    REJECT = 'reject'


class DisputePriority(enum.Enum):
    MEDIUM = 'medium'
    HIGH = 'high'
    URGENT = 'urgent'


class ReturnType(enum.Enum):
    FULL_RETURN = 'full_return'
    PARTIAL_RETURN = 'partial_return'
    REPLACEMENT_ONLY = 'replacement_only'


class ReturnStatus(enum.Enum):
    REQUESTED = 'requested'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    IN_TRANSIT = 'in_transit'
    RECEIVED = 'received'
    REFUND_PROCESSED = 'refund_processed'
    CLOSED = 'closed'


class ReturnCondition(enum.Enum):
    AS_EXPECTED = 'as_expected'
    DAMAGED_IN_TRANSIT = 'damaged_in_transit'
    PARTIAL_RECEIVED = 'partial_received'
    OTHER = 'other'


class BankVerificationStatus(enum.Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class PayoutStatus(enum.Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    ON_HOLD = 'on_hold'
    SETTLED = 'settled'
    FAILED = 'failed'


class PayoutFrequency(enum.Enum):
    WEEKLY = 'weekly'
    BIWEEKLY = 'biweekly'
    MONTHLY = 'monthly'


class OutboxStatus(enum.Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    DELIVERED = 'delivered'
    FAILED = 'failed'


class OutboxDestination(enum.Enum):
    WEBHOOK = 'webhook'
    EMAIL = 'email'
    SMS = 'sms'
    PAYMENT_GATEWAY = 'payment_gateway'
    ANALYTICS = 'analytics'
    NOTIFICATION = 'notification'


class DeadLetterReason(enum.Enum):
    MAX_RETRIES_EXCEEDED = 'max_retries_exceeded'
    PERMANENT_FAILURE = 'permanent_failure'


class DeadLetterStatus(enum.Enum):
    UNRESOLVED = 'unresolved'
    REQUEUED = 'requeued'
    SKIPPED = 'skipped'


class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    display_name = db.Column(db.String(100), nullable=True)
    role = db.Column(_enum(UserRole), nullable=False, default=UserRole.BUYER)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    seller_profile = db.relationship(
        'SellerProfile',
        backref='user',
        uselist=False,
        cascade='all, delete-orphan')

    def __repr__(self):
        return f'<User {self.email}>'


class SellerProfile(db.Model):
    __tablename__ = 'seller_profiles'

    # Own id: orders may reference either this id or the account id.
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(
        db.String(36),
        db.ForeignKey('users.id', ondelete='CASCADE'),
        unique=True,
        nullable=False)
    company_name = db.Column(db.String(200), nullable=False)
    contact_phone = db.Column(db.String(30), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f'<SellerProfile {self.company_name}>'


class Item(db.Model):
    __tablename__ = 'items'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    seller_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    sku = db.Column(db.String(100), nullable=True)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default='AED')
    status = db.Column(
        _enum(ItemStatus),
        default=ItemStatus.ACTIVE,
        nullable=False)
    successful_orders = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False)

    __table_args__ = (
        CheckConstraint('price >= 0', name='check_item_price_non_negative'),
    )

    def __repr__(self):
        return f'<Item {self.sku or self.id}>'


class Order(db.Model):
    __tablename__ = 'orders'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    order_number = db.Column(db.String(32), unique=True, nullable=False)
    buyer_id = db.Column(db.String(36), nullable=False, index=True)
    seller_id = db.Column(db.String(36), nullable=False, index=True)
    item_id = db.Column(
        db.String(36),
        db.ForeignKey('items.id'),
        nullable=True,
        index=True)

    # Item snapshot taken when the order is placed; never rewritten.
    item_name = db.Column(db.String(200), nullable=False)
    item_sku = db.Column(db.String(100), nullable=True)
    item_snapshot = db.Column(JSONType, nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    total_price = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default='AED')

    status = db.Column(
        _enum(OrderStatus),
        default=OrderStatus.PENDING_CONFIRMATION,
        nullable=False,
        index=True)
    payment_status = db.Column(
        _enum(OrderPaymentStatus),
        default=OrderPaymentStatus.UNPAID,
        nullable=False)
    payment_method = db.Column(
        _enum(PaymentMethod),
        default=PaymentMethod.BANK_TRANSFER,
        nullable=False)
    fulfillment_status = db.Column(
        _enum(FulfillmentStatus),
        default=FulfillmentStatus.NOT_STARTED,
        nullable=False)

    shipping_address = db.Column(JSONType, nullable=True)
    carrier = db.Column(db.String(100), nullable=True)
    tracking_number = db.Column(db.String(100), nullable=True)
    estimated_delivery = db.Column(db.DateTime, nullable=True)
    buyer_notes = db.Column(db.Text, nullable=True)
    seller_notes = db.Column(db.Text, nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)
    cancelled_by = db.Column(db.String(20), nullable=True)
    delivery_confirmed_by = db.Column(db.String(20), nullable=True)

    confirmed_at = db.Column(db.DateTime, nullable=True)
    processing_at = db.Column(db.DateTime, nullable=True)
    shipped_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)
    closed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False)

    payments = db.relationship(
        'Payment',
        backref='order',
        lazy='dynamic',
        order_by='Payment.created_at')
    invoice = db.relationship('Invoice', backref='order', uselist=False)
    disputes = db.relationship('Dispute', backref='order', lazy='dynamic')

    __table_args__ = (
        CheckConstraint('quantity > 0', name='check_order_quantity_positive'),
        CheckConstraint('total_price >= 0', name='check_order_total_positive'),
    )

    def __repr__(self):
        return f'<Order {self.order_number} status={self.status}>'


class Payment(db.Model):
    __tablename__ = 'payments'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    payment_number = db.Column(db.String(32), unique=True, nullable=False)
    order_id = db.Column(
        db.String(36),
        db.ForeignKey('orders.id'),
        nullable=False,
        index=True)
    invoice_id = db.Column(
        db.String(36),
        db.ForeignKey('invoices.id'),
        nullable=True,
        index=True)
    buyer_id = db.Column(db.String(36), nullable=False, index=True)
    seller_id = db.Column(db.String(36), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default='AED')
    payment_method = db.Column(_enum(PaymentMethod), nullable=False)
    bank_reference = db.Column(db.String(100), nullable=True)
    bank_name = db.Column(db.String(100), nullable=True)
    status = db.Column(
        _enum(PaymentStatus),
        default=PaymentStatus.PENDING,
        nullable=False)
    notes = db.Column(db.Text, nullable=True)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    confirmed_by = db.Column(db.String(36), nullable=True)
    confirmation_note = db.Column(db.Text, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)
    failure_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False)

    __table_args__ = (
        UniqueConstraint(
            'order_id',
            'bank_reference',
            name='uq_payment_order_bank_reference'),
        CheckConstraint('amount > 0', name='check_payment_amount_positive'),
    )

    def __repr__(self):
        return f'<Payment {self.payment_number} status={self.status}>'


class Invoice(db.Model):
    __tablename__ = 'invoices'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    invoice_number = db.Column(db.String(32), unique=True, nullable=False)
    order_id = db.Column(
        db.String(36),
        db.ForeignKey('orders.id'),
        unique=True,
        nullable=False)
    buyer_id = db.Column(db.String(36), nullable=False, index=True)
    seller_id = db.Column(db.String(36), nullable=False, index=True)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    platform_fee_rate = db.Column(db.Numeric(6, 4), nullable=False, default=0)
    platform_fee_amount = db.Column(db.Numeric(12, 2), nullable=False,
                                    default=0)
    net_to_seller = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default='AED')
    status = db.Column(
        _enum(InvoiceStatus),
        default=InvoiceStatus.DRAFT,
        nullable=False,
        index=True)
    issued_at = db.Column(db.DateTime, nullable=True)
    due_date = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True, index=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False)

    payments = db.relationship('Payment', backref='invoice', lazy='dynamic')

    def __repr__(self):
        return f'<Invoice {self.invoice_number} status={self.status}>'


class BuyerExpense(db.Model):
    __tablename__ = 'buyer_expenses'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    buyer_id = db.Column(db.String(36), nullable=False, index=True)
    order_id = db.Column(db.String(36), db.ForeignKey('orders.id'),
                         nullable=False)
    payment_id = db.Column(
        db.String(36),
        db.ForeignKey('payments.id'),
        unique=True,
        nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default='AED')
    category = db.Column(db.String(50), nullable=False,
                         default='marketplace_purchase')
    description = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)


class Dispute(db.Model):
    __tablename__ = 'disputes'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    dispute_number = db.Column(db.String(32), unique=True, nullable=False)
    order_id = db.Column(
        db.String(36),
        db.ForeignKey('orders.id'),
        nullable=False,
        index=True)
    buyer_id = db.Column(db.String(36), nullable=False, index=True)
    seller_id = db.Column(db.String(36), nullable=False, index=True)

    reason = db.Column(_enum(DisputeReason), nullable=False)
    description = db.Column(db.Text, nullable=False)
    evidence = db.Column(JSONType, nullable=True)
    requested_resolution = db.Column(_enum(DisputeResolution), nullable=False)
    requested_amount = db.Column(db.Numeric(12, 2), nullable=True)

    status = db.Column(
        _enum(DisputeStatus),
        default=DisputeStatus.OPEN,
        nullable=False,
        index=True)
    priority = db.Column(
        _enum(DisputePriority),
        default=DisputePriority.MEDIUM,
        nullable=False)

    seller_response_type = db.Column(_enum(SellerResponseType), nullable=True)
    seller_response = db.Column(db.Text, nullable=True)
    seller_proposed_resolution = db.Column(
        _enum(DisputeResolution), nullable=True)
    seller_proposed_amount = db.Column(db.Numeric(12, 2), nullable=True)
    seller_responded_at = db.Column(db.DateTime, nullable=True)
    buyer_response = db.Column(db.Text, nullable=True)

    resolution = db.Column(_enum(DisputeResolution), nullable=True)
    resolution_amount = db.Column(db.Numeric(12, 2), nullable=True)
    resolution_notes = db.Column(db.Text, nullable=True)
    resolved_by = db.Column(db.String(30), nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)

    is_escalated = db.Column(db.Boolean, default=False, nullable=False)
    escalation_reason = db.Column(db.Text, nullable=True)
    escalated_at = db.Column(db.DateTime, nullable=True)

    response_deadline = db.Column(db.DateTime, nullable=True)
    resolution_deadline = db.Column(db.DateTime, nullable=True)
    closed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False)

    return_request = db.relationship(
        'ReturnRequest',
        backref='dispute',
        uselist=False)

    __table_args__ = (
        # One active dispute per order.
        db.Index(
            'uq_disputes_active_order',
            'order_id',
            unique=True,
            sqlite_where=text(
                "status IN ('open', 'under_review', "
                "'seller_responded', 'escalated')"),
            postgresql_where=text(
                "status IN ('open', 'under_review', "
                "'seller_responded', 'escalated')"),
        ),
    )

    def __repr__(self):
        return f'<Dispute {self.dispute_number} status={self.status}>'


class ReturnRequest(db.Model):
    __tablename__ = 'returns'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    return_number = db.Column(db.String(32), unique=True, nullable=False)
    dispute_id = db.Column(
        db.String(36),
        db.ForeignKey('disputes.id'),
        unique=True,
        nullable=False)
    order_id = db.Column(
        db.String(36),
        db.ForeignKey('orders.id'),
        nullable=False,
        index=True)
    buyer_id = db.Column(db.String(36), nullable=False, index=True)
    seller_id = db.Column(db.String(36), nullable=False, index=True)

    return_type = db.Column(_enum(ReturnType), nullable=False)
    status = db.Column(
        _enum(ReturnStatus),
        default=ReturnStatus.REQUESTED,
        nullable=False)
    # Snapshots of the returned lines and the address at creation time.
    items = db.Column(JSONType, nullable=False)
    return_reason = db.Column(db.Text, nullable=True)
    return_address = db.Column(JSONType, nullable=True)

    carrier = db.Column(db.String(100), nullable=True)
    tracking_number = db.Column(db.String(100), nullable=True)
    received_condition = db.Column(_enum(ReturnCondition), nullable=True)
    inspection_notes = db.Column(db.Text, nullable=True)
    refund_amount = db.Column(db.Numeric(12, 2), nullable=True)
    refund_reference = db.Column(db.String(100), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    approved_at = db.Column(db.DateTime, nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)
    shipped_at = db.Column(db.DateTime, nullable=True)
    received_at = db.Column(db.DateTime, nullable=True)
    refund_processed_at = db.Column(db.DateTime, nullable=True)
    closed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False)

    def __repr__(self):
        return f'<ReturnRequest {self.return_number} status={self.status}>'


class SellerBank(db.Model):
    __tablename__ = 'seller_banks'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    seller_id = db.Column(db.String(36), nullable=False, index=True)
    bank_name = db.Column(db.String(100), nullable=False)
    account_holder_name = db.Column(db.String(200), nullable=False)
    iban = db.Column(db.String(34), nullable=False)
    swift_code = db.Column(db.String(11), nullable=True)
    verification_status = db.Column(
        _enum(BankVerificationStatus),
        default=BankVerificationStatus.PENDING,
        nullable=False)
    is_primary = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False)

    def __repr__(self):
        return f'<SellerBank {self.id} {self.verification_status}>'


class SellerPayoutSettings(db.Model):
    __tablename__ = 'seller_payout_settings'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    seller_id = db.Column(db.String(36), unique=True, nullable=False)
    payout_frequency = db.Column(
        _enum(PayoutFrequency),
        default=PayoutFrequency.WEEKLY,
        nullable=False)
    min_payout_amount = db.Column(db.Numeric(12, 2), nullable=False)
    hold_period_days = db.Column(db.Integer, nullable=False)
    dispute_hold_enabled = db.Column(db.Boolean, default=True, nullable=False)
    auto_payout_enabled = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False)

    def __repr__(self):
        return f'<SellerPayoutSettings {self.seller_id}>'


class SellerPayout(db.Model):
    __tablename__ = 'seller_payouts'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    payout_number = db.Column(db.String(32), unique=True, nullable=False)
    seller_id = db.Column(db.String(36), nullable=False, index=True)
    bank_id = db.Column(
        db.String(36),
        db.ForeignKey('seller_banks.id'),
        nullable=True)

    # Bank snapshot copied at creation time.
    bank_name = db.Column(db.String(100), nullable=False)
    account_holder_name = db.Column(db.String(200), nullable=False)
    iban_masked = db.Column(db.String(40), nullable=False)

    period_start = db.Column(db.DateTime, nullable=False)
    period_end = db.Column(db.DateTime, nullable=False)
    gross_amount = db.Column(db.Numeric(12, 2), nullable=False)
    platform_fee_amount = db.Column(db.Numeric(12, 2), nullable=False)
    net_amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default='AED')
    invoice_count = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(
        _enum(PayoutStatus),
        default=PayoutStatus.PENDING,
        nullable=False,
        index=True)
    approved_by = db.Column(db.String(36), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    settled_at = db.Column(db.DateTime, nullable=True)
    bank_reference = db.Column(db.String(100), nullable=True)
    failure_reason = db.Column(db.Text, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)
    hold_reason = db.Column(db.Text, nullable=True)
    hold_until = db.Column(db.DateTime, nullable=True)
    held_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False)

    line_items = db.relationship(
        'PayoutLineItem',
        backref='payout',
        lazy='dynamic',
        cascade='all, delete-orphan')

    def __repr__(self):
        return f'<SellerPayout {self.payout_number} status={self.status}>'


class PayoutLineItem(db.Model):
    __tablename__ = 'payout_line_items'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    payout_id = db.Column(
        db.String(36),
        db.ForeignKey('seller_payouts.id', ondelete='CASCADE'),
        nullable=False,
        index=True)
    # An invoice is paid out at most once.
    invoice_id = db.Column(
        db.String(36),
        db.ForeignKey('invoices.id'),
        unique=True,
        nullable=False)
    order_id = db.Column(db.String(36), nullable=False)
    gross_amount = db.Column(db.Numeric(12, 2), nullable=False)
    platform_fee = db.Column(db.Numeric(12, 2), nullable=False)
    net_amount = db.Column(db.Numeric(12, 2), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)


class OutboxEvent(db.Model):
    __tablename__ = 'outbox_events'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    event_type = db.Column(db.String(100), nullable=False, index=True)
    aggregate_type = db.Column(db.String(50), nullable=False)
    aggregate_id = db.Column(db.String(36), nullable=False)
    payload = db.Column(JSONType, nullable=False)
    destination = db.Column(_enum(OutboxDestination), nullable=False)
    destination_url = db.Column(db.String(500), nullable=True)
    partition_key = db.Column(db.String(100), nullable=True)
    status = db.Column(
        _enum(OutboxStatus),
        default=OutboxStatus.PENDING,
        nullable=False)
    attempts = db.Column(db.Integer, default=0, nullable=False)
    max_attempts = db.Column(db.Integer, default=5, nullable=False)
    next_attempt_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_attempt_at = db.Column(db.DateTime, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    correlation_id = db.Column(db.String(100), nullable=True)
    causation_id = db.Column(db.String(100), nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.Index('ix_outbox_status_next_attempt', 'status',
                 'next_attempt_at'),
        db.Index('ix_outbox_aggregate', 'aggregate_type', 'aggregate_id'),
    )

    def __repr__(self):
        return f'<OutboxEvent {self.event_type} status={self.status}>'


class OutboxDeadLetter(db.Model):
    __tablename__ = 'outbox_dead_letters'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    original_event_id = db.Column(db.String(36), nullable=False, index=True)
    event_type = db.Column(db.String(100), nullable=False)
    aggregate_type = db.Column(db.String(50), nullable=False)
    aggregate_id = db.Column(db.String(36), nullable=False)
    payload = db.Column(JSONType, nullable=False)
    destination = db.Column(_enum(OutboxDestination), nullable=False)
    destination_url = db.Column(db.String(500), nullable=True)
    correlation_id = db.Column(db.String(100), nullable=True)
    error = db.Column(db.Text, nullable=True)
    failure_reason = db.Column(_enum(DeadLetterReason), nullable=False)
    attempts = db.Column(db.Integer, default=0, nullable=False)
    status = db.Column(
        _enum(DeadLetterStatus),
        default=DeadLetterStatus.UNRESOLVED,
        nullable=False,
        index=True)
    requeued_event_id = db.Column(db.String(36), nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    resolved_by = db.Column(db.String(36), nullable=True)
    resolution_note = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f'<OutboxDeadLetter {self.event_type} status={self.status}>'


class SequenceCounter(db.Model):
    __tablename__ = 'sequence_counters'

    # e.g. 'PAY-OUT-2026'
    name = db.Column(db.String(50), primary_key=True)
    value = db.Column(db.Integer, nullable=False, default=0)

    def __repr__(self):
        return f'<SequenceCounter {self.name}={self.value}>'


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    # Account id, seller profile id or None for the system.
    actor_id = db.Column(db.String(36), nullable=True)
    actor_role = db.Column(db.String(20), nullable=False)
    # e.g., ORDER_SHIP, DISPUTE_ESCALATE
    action = db.Column(db.String(100), nullable=False)
    # ORDER, PAYMENT, DISPUTE, RETURN, PAYOUT, etc.
    target_type = db.Column(db.String(50), nullable=True)
    target_id = db.Column(db.String(36), nullable=True, index=True)
    from_status = db.Column(db.String(50), nullable=True)
    to_status = db.Column(db.String(50), nullable=True)
    ip = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)
    payload = db.Column(JSONType, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=utcnow,
        nullable=False,
        index=True)

    __table_args__ = (
        db.Index('ix_audit_target', 'target_type', 'target_id'),
    )

    def __repr__(self):
        return f'<AuditLog {self.id} action={self.action}>'
