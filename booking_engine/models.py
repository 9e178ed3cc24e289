from tortoise import fields
from tortoise.models import Model

from booking_engine.schemas import BookingStatus, PaymentStatus, PolicyTier


class Booking(Model):
    id = fields.UUIDField(primary_key=True)
    confirmation_code = fields.CharField(max_length=16, unique=True)

    listing_id = fields.UUIDField(db_index=True)
    guest_id = fields.UUIDField(db_index=True)
    host_id = fields.UUIDField(db_index=True)  # denormalized snapshot from listings-ms

    check_in = fields.DatetimeField()
    check_out = fields.DatetimeField()
    guest_count = fields.IntField()

    pricing = fields.JSONField()  # PriceBreakdown snapshot, never recomputed
    cancellation_policy = fields.CharEnumField(PolicyTier)

    status = fields.CharEnumField(BookingStatus, default=BookingStatus.PENDING)
    payment_status = fields.CharEnumField(PaymentStatus, default=PaymentStatus.UNPAID)
    payment_auth_id = fields.CharField(max_length=255, null=True)
    payment_capture_id = fields.CharField(max_length=255, null=True)
    captured_amount = fields.DecimalField(max_digits=12, decimal_places=2, default=0)

    cancellation = fields.JSONField(null=True)  # CancellationRecord

    created_at = fields.DatetimeField()
    updated_at = fields.DatetimeField()

    class Meta:  # type: ignore
        table = "bookings"
        ordering = ["-created_at"]


class ListingLock(Model):
    """One row per listing; locked FOR UPDATE around check-then-insert."""

    listing_id = fields.UUIDField(primary_key=True)

    class Meta:  # type: ignore
        table = "listing_locks"


class CalendarBlock(Model):
    id = fields.IntField(primary_key=True)
    listing_id = fields.UUIDField(db_index=True)
    start = fields.DatetimeField()
    end = fields.DatetimeField()
    reason = fields.TextField()
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:  # type: ignore
        table = "calendar_blocks"


class HostPenalty(Model):
    id = fields.IntField(primary_key=True)
    host_id = fields.UUIDField(db_index=True)
    booking_id = fields.UUIDField(unique=True)
    offense_number = fields.IntField()
    fee = fields.DecimalField(max_digits=10, decimal_places=2)
    currency = fields.CharField(max_length=3)
    block_start = fields.DatetimeField()
    block_end = fields.DatetimeField()
    account_review = fields.BooleanField(default=False)
    assessed_at = fields.DatetimeField()

    class Meta:  # type: ignore
        table = "host_penalties"
        ordering = ["-assessed_at"]
