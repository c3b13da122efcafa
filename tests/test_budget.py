from __future__ import annotations

import asyncio

import allure
import pytest

from wo_orchestrator.config import BudgetSettings
from wo_orchestrator.orchestrator.budget import BudgetLedger
from wo_orchestrator.orchestrator.models import BudgetHealth, BudgetTier, CostRecordKind
from wo_orchestrator.orchestrator.repository import OrchestratorRepository
from wo_orchestrator.storage.common import utc_now

pytestmark = [
    allure.epic("Orchestrator Core"),
    allure.feature("Budget Ledger"),
]


def _seed_spend(repository: OrchestratorRepository, amount: float) -> None:
    repository.add_cost_record(cost_usd=amount, service_tag="seed", kind=CostRecordKind.USAGE)


def test_concurrent_reservations_never_both_cross_the_hard_cap(
    repository: OrchestratorRepository,
) -> None:
    _seed_spend(repository, 94.0)
    ledger = BudgetLedger(repository, BudgetSettings())

    async def scenario():
        return await asyncio.gather(
            ledger.reserve(5.0, "work_order:a", job_id="a"),
            ledger.reserve(5.0, "work_order:b", job_id="b"),
        )

    first, second = asyncio.run(scenario())
    approvals = [result for result in (first, second) if result.approved]
    rejections = [result for result in (first, second) if not result.approved]

    assert len(approvals) == 1
    assert len(rejections) == 1
    assert rejections[0].tier == BudgetTier.HARD
    assert not rejections[0].fatal
    spent, _ = repository.sum_costs(since=utc_now().replace(hour=0, minute=0, second=0))
    assert spent == pytest.approx(99.0)


def test_conditional_insert_protects_cap_across_ledger_instances(
    repository: OrchestratorRepository,
) -> None:
    _seed_spend(repository, 94.0)
    limits = BudgetSettings()
    ledgers = [BudgetLedger(repository, limits), BudgetLedger(repository, limits)]

    async def scenario():
        return await asyncio.gather(
            *(ledger.reserve(5.0, f"work_order:{index}") for index, ledger in enumerate(ledgers)),
        )

    results = asyncio.run(scenario())
    assert sum(1 for result in results if result.approved) == 1


def test_insert_cost_if_below_rejects_at_ceiling(repository: OrchestratorRepository) -> None:
    since = utc_now().replace(hour=0, minute=0, second=0, microsecond=0)
    _seed_spend(repository, 94.0)

    first = repository.insert_cost_if_below(
        cost_usd=5.0,
        ceiling_usd=100.0,
        since=since,
        service_tag="a",
        job_id=None,
    )
    second = repository.insert_cost_if_below(
        cost_usd=5.0,
        ceiling_usd=100.0,
        since=since,
        service_tag="b",
        job_id=None,
    )

    assert first is not None
    assert second is None


def test_soft_cap_approves_with_warning(repository: OrchestratorRepository) -> None:
    _seed_spend(repository, 78.0)
    ledger = BudgetLedger(repository, BudgetSettings())

    reservation = asyncio.run(ledger.reserve(5.0, "work_order:soft"))

    assert reservation.approved
    assert reservation.tier == BudgetTier.SOFT
    assert reservation.warning
    assert reservation.projected_daily_spend_usd == pytest.approx(83.0)


def test_normal_reservation_has_no_warning(repository: OrchestratorRepository) -> None:
    ledger = BudgetLedger(repository, BudgetSettings())

    reservation = asyncio.run(ledger.reserve(1.0, "work_order:normal", job_id="normal"))

    assert reservation.approved
    assert reservation.tier == BudgetTier.NORMAL
    assert not reservation.warning
    assert reservation.reservation_id is not None
    assert repository.job_cost("normal") == pytest.approx(1.0)


def test_emergency_kill_is_fatal_and_latches_until_cleared(
    repository: OrchestratorRepository,
) -> None:
    _seed_spend(repository, 148.0)
    ledger = BudgetLedger(repository, BudgetSettings())

    killed = asyncio.run(ledger.reserve(5.0, "work_order:big"))
    assert not killed.approved
    assert killed.tier == BudgetTier.EMERGENCY
    assert killed.fatal
    assert ledger.emergency_latched

    tiny = asyncio.run(ledger.reserve(0.01, "work_order:tiny"))
    assert tiny.fatal
    assert ledger.status().alerts["emergency_kill_triggered"]
    assert not BudgetLedger(repository, BudgetSettings()).emergency_latched

    assert ledger.clear_emergency()
    assert not ledger.emergency_latched
    after_override = asyncio.run(ledger.reserve(0.01, "work_order:tiny"))
    assert not after_override.approved
    assert after_override.tier == BudgetTier.HARD


def test_monthly_hard_cap_rejects_recoverably(repository: OrchestratorRepository) -> None:
    _seed_spend(repository, 18.0)
    limits = BudgetSettings(monthly_target=10.0, monthly_hard_cap=20.0)
    ledger = BudgetLedger(repository, limits)

    reservation = asyncio.run(ledger.reserve(5.0, "work_order:month"))

    assert not reservation.approved
    assert reservation.tier == BudgetTier.HARD
    assert "monthly hard cap" in (reservation.reason or "")


def test_correction_reconciles_reservation_to_actual_cost(
    repository: OrchestratorRepository,
) -> None:
    ledger = BudgetLedger(repository, BudgetSettings())

    async def scenario() -> float:
        reservation = await ledger.reserve(1.0, "work_order:j1", job_id="j1")
        return await ledger.correct(reservation, 0.4)

    delta = asyncio.run(scenario())
    status = ledger.status()

    assert delta == pytest.approx(-0.6)
    assert repository.job_cost("j1") == pytest.approx(0.4)
    assert status.daily.spent_usd == pytest.approx(0.4)
    assert status.daily.request_count == 1


def test_release_refunds_full_reservation(repository: OrchestratorRepository) -> None:
    ledger = BudgetLedger(repository, BudgetSettings())

    async def scenario() -> None:
        reservation = await ledger.reserve(2.5, "work_order:j2", job_id="j2")
        await ledger.release(reservation)

    asyncio.run(scenario())

    assert repository.job_cost("j2") == pytest.approx(0.0)


def test_correct_ignores_rejected_reservation(repository: OrchestratorRepository) -> None:
    _seed_spend(repository, 99.5)
    ledger = BudgetLedger(repository, BudgetSettings())

    async def scenario() -> float:
        rejected = await ledger.reserve(1.0, "work_order:j3")
        return await ledger.correct(rejected, 0.7)

    assert asyncio.run(scenario()) == 0.0


def test_status_reports_windows_and_alerts(repository: OrchestratorRepository) -> None:
    _seed_spend(repository, 85.0)
    ledger = BudgetLedger(repository, BudgetSettings())

    status = ledger.status()

    assert status.daily.spent_usd == pytest.approx(85.0)
    assert status.daily.remaining_usd == pytest.approx(15.0)
    assert status.daily.percentage == pytest.approx(85.0)
    assert status.daily.status == BudgetHealth.WARNING
    assert status.monthly.limit_usd == pytest.approx(2_500.0)
    assert status.monthly.status == BudgetHealth.NORMAL
    assert status.alerts == {
        "daily_soft_cap_exceeded": True,
        "daily_hard_cap_exceeded": False,
        "emergency_kill_triggered": False,
        "monthly_target_exceeded": False,
        "monthly_hard_cap_exceeded": False,
    }
    assert not status.emergency_latched


def test_negative_reservation_is_rejected(repository: OrchestratorRepository) -> None:
    ledger = BudgetLedger(repository, BudgetSettings())

    with pytest.raises(ValueError, match="non-negative"):
        asyncio.run(ledger.reserve(-1.0, "work_order:bad"))
