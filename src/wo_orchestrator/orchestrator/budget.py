"""Atomic check-and-reserve budget ledger with tiered spend thresholds."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import date, datetime

from wo_orchestrator.config import BudgetSettings
from wo_orchestrator.orchestrator.models import (
    BudgetHealth,
    BudgetReservation,
    BudgetStatus,
    BudgetTier,
    BudgetWindowStatus,
    CostRecordKind,
)
from wo_orchestrator.orchestrator.repository import OrchestratorRepository
from wo_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


class BudgetLedger:
    """Shared spend ledger for every target.

    Reservations are serialized by an in-process lock around the read-decide-write
    sequence, and the write itself is a conditional insert so a second process
    sharing the database cannot push the day past the hard cap either.
    Approved reservations count as spend immediately; `correct` appends the
    difference once the real cost is known.
    """

    def __init__(
        self,
        repository: OrchestratorRepository,
        limits: BudgetSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._limits = limits
        self._clock = clock
        self._lock = asyncio.Lock()
        # Process-local: a restarted orchestrator starts unlatched.
        self._emergency_day: date | None = None

    @property
    def limits(self) -> BudgetSettings:
        return self._limits

    @property
    def emergency_latched(self) -> bool:
        return self._emergency_day is not None and self._emergency_day == self._clock().date()

    async def reserve(
        self,
        estimated_cost: float,
        tag: str,
        *,
        job_id: str | None = None,
    ) -> BudgetReservation:
        """Reserve `estimated_cost` against the daily window, or explain why not."""

        if estimated_cost < 0:
            raise ValueError(f"Reservation cost must be non-negative, got {estimated_cost}")
        async with self._lock:
            return await asyncio.to_thread(self._reserve_locked, estimated_cost, tag, job_id)

    async def correct(self, reservation: BudgetReservation, actual_cost: float) -> float:
        """Append a correction so the ledger reflects `actual_cost`. Returns the delta."""

        if not reservation.approved or reservation.reservation_id is None:
            return 0.0
        delta = actual_cost - reservation.estimated_cost_usd
        if abs(delta) < _EPSILON:
            return 0.0
        async with self._lock:
            await asyncio.to_thread(
                self._repository.add_cost_record,
                cost_usd=delta,
                service_tag=reservation.service_tag,
                kind=CostRecordKind.CORRECTION,
                job_id=reservation.job_id,
                reservation_id=reservation.reservation_id,
            )
        logger.info(
            "Budget correction for %s: estimated=%.4f actual=%.4f delta=%+.4f",
            reservation.service_tag,
            reservation.estimated_cost_usd,
            actual_cost,
            delta,
        )
        return delta

    async def release(self, reservation: BudgetReservation) -> float:
        """Refund an unused reservation in full."""

        return await self.correct(reservation, 0.0)

    def clear_emergency(self) -> bool:
        """Manual override: allow reservations again after an emergency kill."""

        if self._emergency_day is None:
            return False
        logger.warning("Emergency budget kill switch cleared for %s", self._emergency_day)
        self._emergency_day = None
        return True

    def status(self) -> BudgetStatus:
        """Read-only spend summary for the current UTC day and month."""

        now = self._clock()
        limits = self._limits
        daily_spent, daily_requests = self._repository.sum_costs(since=_day_start(now))
        monthly_spent, monthly_requests = self._repository.sum_costs(since=_month_start(now))

        if daily_spent >= limits.emergency_kill or self.emergency_latched:
            daily_health = BudgetHealth.EMERGENCY
        elif daily_spent >= limits.daily_hard_cap:
            daily_health = BudgetHealth.CRITICAL
        elif daily_spent >= limits.daily_soft_cap:
            daily_health = BudgetHealth.WARNING
        else:
            daily_health = BudgetHealth.NORMAL

        if monthly_spent >= limits.monthly_hard_cap:
            monthly_health = BudgetHealth.CRITICAL
        elif monthly_spent >= limits.monthly_target:
            monthly_health = BudgetHealth.WARNING
        else:
            monthly_health = BudgetHealth.NORMAL

        return BudgetStatus(
            daily=_window_status(
                "daily",
                daily_spent,
                limits.daily_hard_cap,
                daily_health,
                daily_requests,
            ),
            monthly=_window_status(
                "monthly",
                monthly_spent,
                limits.monthly_hard_cap,
                monthly_health,
                monthly_requests,
            ),
            alerts={
                "daily_soft_cap_exceeded": daily_spent >= limits.daily_soft_cap,
                "daily_hard_cap_exceeded": daily_spent >= limits.daily_hard_cap,
                "emergency_kill_triggered": (
                    daily_spent >= limits.emergency_kill or self.emergency_latched
                ),
                "monthly_target_exceeded": monthly_spent >= limits.monthly_target,
                "monthly_hard_cap_exceeded": monthly_spent >= limits.monthly_hard_cap,
            },
            emergency_latched=self.emergency_latched,
        )

    def _reserve_locked(
        self,
        estimated_cost: float,
        tag: str,
        job_id: str | None,
    ) -> BudgetReservation:
        now = self._clock()
        limits = self._limits
        day_start = _day_start(now)

        if self.emergency_latched:
            return self._reject(
                BudgetTier.EMERGENCY,
                estimated_cost,
                projected=estimated_cost,
                tag=tag,
                reason="Emergency kill switch engaged for today; manual override required.",
            )

        daily_spent, _ = self._repository.sum_costs(since=day_start)
        projected = daily_spent + estimated_cost

        if projected >= limits.emergency_kill:
            self._emergency_day = now.date()
            logger.error(
                "Emergency budget kill: projected daily spend %.2f >= %.2f (tag=%s)",
                projected,
                limits.emergency_kill,
                tag,
            )
            return self._reject(
                BudgetTier.EMERGENCY,
                estimated_cost,
                projected=projected,
                tag=tag,
                reason=(
                    f"Projected daily spend ${projected:.2f} reaches emergency kill "
                    f"${limits.emergency_kill:.2f}."
                ),
            )

        if projected >= limits.daily_hard_cap:
            return self._reject(
                BudgetTier.HARD,
                estimated_cost,
                projected=projected,
                tag=tag,
                reason=(
                    f"Projected daily spend ${projected:.2f} reaches hard cap "
                    f"${limits.daily_hard_cap:.2f}."
                ),
            )

        monthly_spent, _ = self._repository.sum_costs(since=_month_start(now))
        if monthly_spent + estimated_cost >= limits.monthly_hard_cap:
            return self._reject(
                BudgetTier.HARD,
                estimated_cost,
                projected=projected,
                tag=tag,
                reason=(
                    f"Projected monthly spend ${monthly_spent + estimated_cost:.2f} reaches "
                    f"monthly hard cap ${limits.monthly_hard_cap:.2f}."
                ),
            )

        reservation_id = self._repository.insert_cost_if_below(
            cost_usd=estimated_cost,
            ceiling_usd=limits.daily_hard_cap,
            since=day_start,
            service_tag=tag,
            job_id=job_id,
        )
        if reservation_id is None:
            # Another writer on the same database got there first.
            return self._reject(
                BudgetTier.HARD,
                estimated_cost,
                projected=projected,
                tag=tag,
                reason="Daily hard cap reached by a concurrent reservation.",
            )

        tier = BudgetTier.SOFT if projected >= limits.daily_soft_cap else BudgetTier.NORMAL
        if tier == BudgetTier.SOFT:
            logger.warning(
                "Budget soft cap passed: projected daily spend %.2f >= %.2f (tag=%s)",
                projected,
                limits.daily_soft_cap,
                tag,
            )
        else:
            logger.info("Budget reserved %.4f for %s (daily=%.2f)", estimated_cost, tag, projected)
        return BudgetReservation(
            approved=True,
            tier=tier,
            estimated_cost_usd=estimated_cost,
            projected_daily_spend_usd=projected,
            reason="Soft cap exceeded." if tier == BudgetTier.SOFT else None,
            reservation_id=reservation_id,
            service_tag=tag,
            job_id=job_id,
        )

    def _reject(
        self,
        tier: BudgetTier,
        estimated_cost: float,
        *,
        projected: float,
        tag: str,
        reason: str,
    ) -> BudgetReservation:
        if tier != BudgetTier.EMERGENCY:
            logger.warning("Budget reservation rejected for %s: %s", tag, reason)
        return BudgetReservation(
            approved=False,
            tier=tier,
            estimated_cost_usd=estimated_cost,
            projected_daily_spend_usd=projected,
            reason=reason,
            service_tag=tag,
        )


def _window_status(
    window: str,
    spent: float,
    limit: float,
    health: BudgetHealth,
    request_count: int,
) -> BudgetWindowStatus:
    return BudgetWindowStatus(
        window=window,
        spent_usd=round(spent, 6),
        limit_usd=limit,
        remaining_usd=round(max(0.0, limit - spent), 6),
        percentage=round(spent / limit * 100, 2) if limit > 0 else 0.0,
        status=health,
        request_count=request_count,
    )


def _day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _month_start(now: datetime) -> datetime:
    return _day_start(now).replace(day=1)
