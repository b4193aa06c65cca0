from dataclasses import asdict, dataclass
from datetime import datetime


@dataclass
class RefundCalculation:
    original_amount: float
    refund_amount: float
    refund_percentage: int
    hours_before_session: float
    can_refund: bool

    def as_dict(self) -> dict:
        return asdict(self)


def refund_percentage(hours_before_session: float) -> int:
    if hours_before_session >= 24:
        return 90
    if hours_before_session >= 0:
        return 60
    return 0


def calculate_refund(session_time: datetime, booked_rate: float, cancellation_time: datetime | None = None) -> RefundCalculation:
    cancelled_at = cancellation_time or datetime.utcnow()
    hours_before = (session_time - cancelled_at).total_seconds() / 3600
    percentage = refund_percentage(hours_before)
    refund_amount = round(booked_rate * percentage / 100, 2)

    return RefundCalculation(
        original_amount=booked_rate,
        refund_amount=refund_amount,
        refund_percentage=percentage,
        hours_before_session=max(0.0, hours_before),
        can_refund=refund_amount > 0,
    )
