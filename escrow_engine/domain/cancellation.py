# escrow_engine/domain/cancellation.py

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_EVEN, Decimal

from escrow_engine.domain.state_machine import CancellationReason
from escrow_engine.domain.timeutils import ensure_utc


@dataclass(frozen=True)
class CancellationPolicy:
    """Refund tiers applied when a consumer cancels. Configurable per deployment."""

    grace_period: timedelta = timedelta(hours=1)
    full_refund_notice: timedelta = timedelta(hours=24)
    partial_refund_notice: timedelta = timedelta(hours=2)
    partial_refund_pct: Decimal = Decimal("0.50")
    partial_platform_fee_pct: Decimal = Decimal("0.25")
    late_refund_pct: Decimal = Decimal("0")
    emergency_refund_pct: Decimal = Decimal("1")


@dataclass(frozen=True)
class CancellationQuote:
    refund_pct: Decimal
    refund_cents: int
    retained_cents: int
    platform_retained_cents: int
    rule: str

    @property
    def is_full_refund(self) -> bool:
        return self.retained_cents == 0


def _portion(total_cents: int, pct: Decimal) -> int:
    return int((Decimal(total_cents) * pct).quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))


def _quote(total_cents: int, refund_pct: Decimal, platform_pct: Decimal, rule: str) -> CancellationQuote:
    refund_cents = _portion(total_cents, refund_pct)
    retained_cents = total_cents - refund_cents
    return CancellationQuote(
        refund_pct=refund_pct,
        refund_cents=refund_cents,
        retained_cents=retained_cents,
        platform_retained_cents=min(retained_cents, _portion(total_cents, platform_pct)),
        rule=rule,
    )


def full_refund(total_cents: int, rule: str = "full_refund") -> CancellationQuote:
    return _quote(total_cents, Decimal("1"), Decimal("0"), rule)


def quote_cancellation(
    total_cents: int,
    created_at: datetime,
    scheduled_at: datetime,
    now: datetime,
    reason: CancellationReason | None = None,
    policy: CancellationPolicy | None = None,
) -> CancellationQuote:
    """
    Emergency reasons override timing. Otherwise the grace period after
    creation wins, then notice before the scheduled time decides the tier.
    """
    policy = policy or CancellationPolicy()
    created_at = ensure_utc(created_at)
    scheduled_at = ensure_utc(scheduled_at)
    now = ensure_utc(now)

    if reason is not None and reason.is_emergency:
        return _quote(total_cents, policy.emergency_refund_pct, Decimal("0"), "emergency")

    if now - created_at <= policy.grace_period:
        return full_refund(total_cents, "grace_period")

    notice = scheduled_at - now
    if notice >= policy.full_refund_notice:
        return full_refund(total_cents, "advance_notice")
    if notice >= policy.partial_refund_notice:
        return _quote(
            total_cents,
            policy.partial_refund_pct,
            policy.partial_platform_fee_pct,
            "short_notice",
        )
    return _quote(total_cents, policy.late_refund_pct, Decimal("0"), "late_notice")
