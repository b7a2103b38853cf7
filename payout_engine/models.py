from decimal import Decimal
from tortoise import fields
from tortoise.models import Model
from enum import Enum


class PaymentMode(str, Enum):
    COMMISSION = "commission"
    SUBSCRIPTION = "subscription"


class PayoutMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    STRIPE = "stripe"
    PAYPAL = "paypal"
    MANUAL = "manual"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    EXPIRED = "expired"
    SUSPENDED = "suspended"


class SubscriptionPaymentStatus(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    PENDING = "pending"


class LedgerEntryType(str, Enum):
    CREDIT = "credit"
    RESERVE = "reserve"
    CONFIRM_PAYOUT = "confirm_payout"
    RELEASE = "release"
    REVERSE = "reverse"
    CLAWBACK_OFFSET = "clawback_offset"


class ClawbackStatus(str, Enum):
    OPEN = "open"
    RECOVERED = "recovered"


class MetricType(str, Enum):
    LINE_ITEM_SETTLED = "line_item_settled"
    EARNINGS_RECOGNIZED = "earnings_recognized"
    REFUND_APPLIED = "refund_applied"
    CLAWBACK_RECORDED = "clawback_recorded"
    PAYOUT_REQUESTED = "payout_requested"
    PAYOUT_APPROVED = "payout_approved"
    PAYOUT_COMPLETED = "payout_completed"
    PAYOUT_FAILED = "payout_failed"
    PAYOUT_CANCELLED = "payout_cancelled"
    SUBSCRIPTION_PAYMENT = "subscription_payment"
    LEDGER_INVARIANT_VIOLATION = "ledger_invariant_violation"


class VendorAccount(Model):
    """Vendor billing profile. Owned by the platform, read-only for the engine."""
    id = fields.IntField(pk=True)
    name = fields.CharField(max_length=255)
    telegram_id = fields.BigIntField(unique=True, null=True)
    payment_mode = fields.CharEnumField(PaymentMode, default=PaymentMode.COMMISSION)
    commission_rate = fields.DecimalField(max_digits=5, decimal_places=2, null=True)  # percent, commission mode
    subscription_fee = fields.DecimalField(max_digits=14, decimal_places=2, null=True)
    billing_currency = fields.CharField(max_length=3, null=True)
    currency = fields.CharField(max_length=3, default="AED")  # earnings currency
    minimum_payout = fields.DecimalField(max_digits=14, decimal_places=2, null=True)
    preferred_payout_method = fields.CharEnumField(PayoutMethod, default=PayoutMethod.BANK_TRANSFER)
    created_at = fields.DatetimeField(auto_now_add=True)

    # Relationships
    line_items = fields.ReverseRelation["SettledLineItem"]
    payout_requests = fields.ReverseRelation["PayoutRequest"]

    class Meta:
        table = "vendor_accounts"


class SettledLineItem(Model):
    """One paid order line attributed to a vendor. Never mutated."""
    id = fields.IntField(pk=True)
    order_id = fields.CharField(max_length=64)
    line_index = fields.IntField()
    vendor = fields.ForeignKeyField("models.VendorAccount", related_name="line_items")
    original_amount = fields.DecimalField(max_digits=14, decimal_places=2)
    currency = fields.CharField(max_length=3)
    settled_at = fields.DatetimeField()
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "settled_line_items"
        unique_together = ("order_id", "line_index")


class CommissionTransaction(Model):
    """Recognition of one settled line item (created exactly once)."""
    id = fields.IntField(pk=True)
    line_item = fields.OneToOneField("models.SettledLineItem", related_name="commission_transaction")
    vendor = fields.ForeignKeyField("models.VendorAccount", related_name="commission_transactions")
    payment_mode = fields.CharEnumField(PaymentMode)
    commission_rate = fields.DecimalField(max_digits=5, decimal_places=2)
    original_amount = fields.DecimalField(max_digits=14, decimal_places=2)
    platform_commission = fields.DecimalField(max_digits=14, decimal_places=2)
    vendor_commission = fields.DecimalField(max_digits=14, decimal_places=2)
    currency = fields.CharField(max_length=3)
    status = fields.CharEnumField(TransactionStatus, default=TransactionStatus.PENDING)

    # Bookkeeping counters
    refunded_amount = fields.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))  # gross
    vendor_refunded = fields.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))
    reserved_amount = fields.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))
    paid_out_amount = fields.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))

    calculated_at = fields.DatetimeField(auto_now_add=True)
    paid_at = fields.DatetimeField(null=True)

    class Meta:
        table = "commission_transactions"

    @property
    def net_vendor_amount(self) -> Decimal:
        """Vendor share left after refunds."""
        return self.vendor_commission - self.vendor_refunded

    @property
    def open_amount(self) -> Decimal:
        """Vendor share not yet reserved or paid out."""
        return max(Decimal("0"), self.net_vendor_amount - self.reserved_amount - self.paid_out_amount)


class PayoutRequest(Model):
    """Payout request tracking for vendors."""
    id = fields.IntField(pk=True)
    vendor = fields.ForeignKeyField("models.VendorAccount", related_name="payout_requests")

    # Payout details
    amount = fields.DecimalField(max_digits=14, decimal_places=2, null=True)  # NULL means full balance
    approved_amount = fields.DecimalField(max_digits=14, decimal_places=2, null=True)
    currency = fields.CharField(max_length=3, default="AED")
    status = fields.CharEnumField(PayoutStatus, default=PayoutStatus.PENDING)
    method = fields.CharEnumField(PayoutMethod, default=PayoutMethod.BANK_TRANSFER)
    total_orders = fields.IntField(default=0)

    # External processing
    gateway_reference = fields.CharField(max_length=255, null=True)
    failure_reason = fields.TextField(null=True)
    rejection_reason = fields.TextField(null=True)
    needs_reconciliation = fields.BooleanField(default=False)

    # Timestamps
    requested_at = fields.DatetimeField(auto_now_add=True)
    approved_at = fields.DatetimeField(null=True)
    processed_at = fields.DatetimeField(null=True)
    resolved_at = fields.DatetimeField(null=True)

    allocations = fields.ReverseRelation["PayoutAllocation"]

    class Meta:
        table = "payout_requests"


class PayoutAllocation(Model):
    """Portion of a commission transaction covered by a payout."""
    id = fields.IntField(pk=True)
    payout = fields.ForeignKeyField("models.PayoutRequest", related_name="allocations")
    commission_transaction = fields.ForeignKeyField("models.CommissionTransaction", related_name="allocations")
    amount = fields.DecimalField(max_digits=14, decimal_places=2)
    released = fields.BooleanField(default=False)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "payout_allocations"


class VendorLedger(Model):
    """Running balance per vendor. Mutated only through payout_engine.ledger."""
    id = fields.IntField(pk=True)
    vendor = fields.OneToOneField("models.VendorAccount", related_name="ledger")
    currency = fields.CharField(max_length=3)
    total_earned = fields.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))
    pending_balance = fields.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))
    in_processing = fields.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))
    total_paid_out = fields.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))
    clawback_owed = fields.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))
    version = fields.IntField(default=0)
    is_frozen = fields.BooleanField(default=False)
    frozen_reason = fields.TextField(null=True)
    frozen_at = fields.DatetimeField(null=True)
    updated_at = fields.DatetimeField(auto_now=True)

    entries = fields.ReverseRelation["LedgerEntry"]

    class Meta:
        table = "vendor_ledgers"


class LedgerEntry(Model):
    """Append-only journal of ledger mutations."""
    id = fields.IntField(pk=True)
    ledger = fields.ForeignKeyField("models.VendorLedger", related_name="entries")
    entry_type = fields.CharEnumField(LedgerEntryType)
    amount = fields.DecimalField(max_digits=14, decimal_places=2)
    reference = fields.CharField(max_length=255, null=True)
    total_earned = fields.DecimalField(max_digits=14, decimal_places=2)
    pending_balance = fields.DecimalField(max_digits=14, decimal_places=2)
    in_processing = fields.DecimalField(max_digits=14, decimal_places=2)
    total_paid_out = fields.DecimalField(max_digits=14, decimal_places=2)
    clawback_owed = fields.DecimalField(max_digits=14, decimal_places=2)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "ledger_entries"


class VendorSubscription(Model):
    """Recurring platform fee state for subscription-mode vendors."""
    id = fields.IntField(pk=True)
    vendor = fields.OneToOneField("models.VendorAccount", related_name="subscription")
    fee = fields.DecimalField(max_digits=14, decimal_places=2)
    currency = fields.CharField(max_length=3)
    status = fields.CharEnumField(SubscriptionStatus, default=SubscriptionStatus.EXPIRED)
    paid_until = fields.DatetimeField(null=True)
    started_at = fields.DatetimeField(null=True)
    suspended_at = fields.DatetimeField(null=True)
    suspension_reason = fields.TextField(null=True)
    updated_at = fields.DatetimeField(auto_now=True)

    payments = fields.ReverseRelation["SubscriptionPayment"]

    class Meta:
        table = "vendor_subscriptions"


class SubscriptionPayment(Model):
    """One billing cycle payment record."""
    id = fields.IntField(pk=True)
    subscription = fields.ForeignKeyField("models.VendorSubscription", related_name="payments")
    period_start = fields.DatetimeField()
    period_end = fields.DatetimeField()
    amount = fields.DecimalField(max_digits=14, decimal_places=2)
    currency = fields.CharField(max_length=3)
    status = fields.CharEnumField(SubscriptionPaymentStatus)
    payment_date = fields.DatetimeField(auto_now_add=True)
    transaction_id = fields.CharField(max_length=255, null=True)

    class Meta:
        table = "subscription_payments"


class RefundAdjustment(Model):
    """Negative adjustment created by a gateway-confirmed refund."""
    id = fields.IntField(pk=True)
    line_item = fields.ForeignKeyField("models.SettledLineItem", related_name="refunds")
    vendor = fields.ForeignKeyField("models.VendorAccount", related_name="refunds")
    refund_event_id = fields.CharField(max_length=128)
    refund_amount = fields.DecimalField(max_digits=14, decimal_places=2)
    vendor_reduction = fields.DecimalField(max_digits=14, decimal_places=2)
    from_pending = fields.DecimalField(max_digits=14, decimal_places=2)
    clawback_amount = fields.DecimalField(max_digits=14, decimal_places=2)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "refund_adjustments"
        unique_together = ("line_item_id", "refund_event_id")


class Clawback(Model):
    """Receivable against a vendor for refunds of already paid-out earnings."""
    id = fields.IntField(pk=True)
    vendor = fields.ForeignKeyField("models.VendorAccount", related_name="clawbacks")
    line_item = fields.ForeignKeyField("models.SettledLineItem", related_name="clawbacks")
    refund = fields.OneToOneField("models.RefundAdjustment", related_name="clawback")
    amount = fields.DecimalField(max_digits=14, decimal_places=2)
    recovered_amount = fields.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0"))
    status = fields.CharEnumField(ClawbackStatus, default=ClawbackStatus.OPEN)
    created_at = fields.DatetimeField(auto_now_add=True)
    recovered_at = fields.DatetimeField(null=True)

    class Meta:
        table = "clawbacks"


class Metric(Model):
    """Metrics model for tracking key performance indicators."""
    id = fields.IntField(pk=True)
    metric_type = fields.CharEnumField(MetricType)
    value = fields.FloatField(default=1.0)  # Default is 1.0 for count-based metrics
    entity_id = fields.IntField(null=True)  # Optional ID of related entity (payout, transaction, etc.)
    user_id = fields.BigIntField(null=True)  # Optional vendor ID
    metadata = fields.JSONField(null=True)  # Additional contextual data
    timestamp = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "metrics"
