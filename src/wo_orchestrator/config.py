"""Runtime configuration for the work-order orchestrator."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_COST_BANDS: tuple[tuple[float, float], ...] = ((0.3, 0.10), (1.0, 1.00))


@dataclass(slots=True)
class OrchestratorSettings:
    """Poll loop, retry and progress-stream settings."""

    poll_interval_seconds: float = 10.0
    max_concurrent_executions: int = 3
    max_attempts: int = 3
    event_grace_seconds: float = 5.0
    progress_buffer_size: int = 64
    recent_error_limit: int = 50


@dataclass(slots=True)
class BudgetSettings:
    """Spend thresholds in USD, evaluated against UTC calendar windows."""

    daily_soft_cap: float = 80.0
    daily_hard_cap: float = 100.0
    emergency_kill: float = 150.0
    monthly_target: float = 1_500.0
    monthly_hard_cap: float = 2_500.0


@dataclass(slots=True)
class PricingSettings:
    """Complexity-to-cost estimation bands."""

    cost_bands: tuple[tuple[float, float], ...] = DEFAULT_COST_BANDS
    ceiling_cost_usd: float = 2.50


@dataclass(slots=True)
class CacheSettings:
    """Agent roster cache settings."""

    roster_ttl_seconds: float = 60.0
    sweep_interval_seconds: float = 300.0
    coalesce_fetches: bool = True


@dataclass(slots=True)
class ApplierSettings:
    """Code-editing subprocess settings."""

    command_template: str | None = None
    timeout_seconds: int = 600
    workdir_root: Path = Path(".wo_orchestrator/workspaces")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".wo_orchestrator.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    budget: BudgetSettings = field(default_factory=BudgetSettings)
    pricing: PricingSettings = field(default_factory=PricingSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    applier: ApplierSettings = field(default_factory=ApplierSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("WO_ORCHESTRATOR_DB_PATH", ".wo_orchestrator.db")),
            sqlite_busy_timeout_ms=int(os.getenv("WO_ORCHESTRATOR_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("WO_ORCHESTRATOR_LOG_LEVEL", "WARNING").strip().upper(),
            orchestrator=OrchestratorSettings(
                poll_interval_seconds=float(
                    os.getenv("WO_ORCHESTRATOR_POLL_INTERVAL_SECONDS", "10"),
                ),
                max_concurrent_executions=int(
                    os.getenv("WO_ORCHESTRATOR_MAX_CONCURRENT_EXECUTIONS", "3"),
                ),
                max_attempts=int(os.getenv("WO_ORCHESTRATOR_MAX_ATTEMPTS", "3")),
                event_grace_seconds=float(
                    os.getenv("WO_ORCHESTRATOR_EVENT_GRACE_SECONDS", "5"),
                ),
                progress_buffer_size=int(
                    os.getenv("WO_ORCHESTRATOR_PROGRESS_BUFFER_SIZE", "64"),
                ),
                recent_error_limit=int(os.getenv("WO_ORCHESTRATOR_RECENT_ERROR_LIMIT", "50")),
            ),
            budget=BudgetSettings(
                daily_soft_cap=float(os.getenv("WO_ORCHESTRATOR_DAILY_SOFT_CAP_USD", "80")),
                daily_hard_cap=float(os.getenv("WO_ORCHESTRATOR_DAILY_HARD_CAP_USD", "100")),
                emergency_kill=float(os.getenv("WO_ORCHESTRATOR_EMERGENCY_KILL_USD", "150")),
                monthly_target=float(os.getenv("WO_ORCHESTRATOR_MONTHLY_TARGET_USD", "1500")),
                monthly_hard_cap=float(
                    os.getenv("WO_ORCHESTRATOR_MONTHLY_HARD_CAP_USD", "2500"),
                ),
            ),
            pricing=PricingSettings(
                cost_bands=_parse_cost_bands(os.getenv("WO_ORCHESTRATOR_COST_BANDS", "")),
                ceiling_cost_usd=float(os.getenv("WO_ORCHESTRATOR_COST_CEILING_USD", "2.50")),
            ),
            cache=CacheSettings(
                roster_ttl_seconds=float(os.getenv("WO_ORCHESTRATOR_ROSTER_TTL_SECONDS", "60")),
                sweep_interval_seconds=float(
                    os.getenv("WO_ORCHESTRATOR_CACHE_SWEEP_SECONDS", "300"),
                ),
                coalesce_fetches=_env_bool("WO_ORCHESTRATOR_CACHE_COALESCE", default=True),
            ),
            applier=ApplierSettings(
                command_template=os.getenv("WO_ORCHESTRATOR_APPLIER_COMMAND") or None,
                timeout_seconds=int(os.getenv("WO_ORCHESTRATOR_APPLIER_TIMEOUT_SECONDS", "600")),
                workdir_root=Path(
                    os.getenv(
                        "WO_ORCHESTRATOR_WORKDIR_ROOT",
                        ".wo_orchestrator/workspaces",
                    ),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on inconsistent thresholds or limits."""

        budget = self.budget
        if budget.daily_soft_cap <= 0:
            raise ValueError("WO_ORCHESTRATOR_DAILY_SOFT_CAP_USD must be > 0.")
        if not budget.daily_soft_cap < budget.daily_hard_cap < budget.emergency_kill:
            raise ValueError(
                "Budget thresholds must satisfy soft cap < hard cap < emergency kill, got "
                f"{budget.daily_soft_cap} / {budget.daily_hard_cap} / {budget.emergency_kill}.",
            )
        if not budget.monthly_target < budget.monthly_hard_cap:
            raise ValueError(
                "Monthly target must be below the monthly hard cap, got "
                f"{budget.monthly_target} / {budget.monthly_hard_cap}.",
            )
        if budget.daily_hard_cap * 30 > budget.monthly_hard_cap:
            logger.warning(
                "Daily hard cap %.2f over 30 days exceeds monthly hard cap %.2f",
                budget.daily_hard_cap,
                budget.monthly_hard_cap,
            )

        orchestrator = self.orchestrator
        if orchestrator.poll_interval_seconds <= 0:
            raise ValueError("WO_ORCHESTRATOR_POLL_INTERVAL_SECONDS must be > 0.")
        if orchestrator.max_concurrent_executions <= 0:
            raise ValueError("WO_ORCHESTRATOR_MAX_CONCURRENT_EXECUTIONS must be > 0.")
        if orchestrator.max_attempts < 2:
            raise ValueError("WO_ORCHESTRATOR_MAX_ATTEMPTS must be >= 2.")
        if orchestrator.event_grace_seconds < 0:
            raise ValueError("WO_ORCHESTRATOR_EVENT_GRACE_SECONDS must be >= 0.")
        if orchestrator.progress_buffer_size <= 0:
            raise ValueError("WO_ORCHESTRATOR_PROGRESS_BUFFER_SIZE must be > 0.")
        if self.cache.roster_ttl_seconds <= 0:
            raise ValueError("WO_ORCHESTRATOR_ROSTER_TTL_SECONDS must be > 0.")
        if self.applier.timeout_seconds <= 0:
            raise ValueError("WO_ORCHESTRATOR_APPLIER_TIMEOUT_SECONDS must be > 0.")


def _parse_cost_bands(raw: str) -> tuple[tuple[float, float], ...]:
    """Parse `WO_ORCHESTRATOR_COST_BANDS`.

    Format: `upper_complexity:cost_usd` entries separated by `,`, e.g.
    `0.3:0.10,1.0:1.00`. A job whose complexity is below an entry's upper bound
    gets that entry's cost; above every band the ceiling cost applies.
    """

    if not raw.strip():
        return DEFAULT_COST_BANDS

    bands: list[tuple[float, float]] = []
    for entry in raw.split(","):
        token = entry.strip()
        if not token:
            continue
        parts = [part.strip() for part in token.split(":")]
        if len(parts) != 2:
            raise ValueError(
                f"Invalid WO_ORCHESTRATOR_COST_BANDS entry: {token!r}. "
                "Expected format '<upper_complexity>:<cost_usd>'.",
            )
        try:
            upper, cost = float(parts[0]), float(parts[1])
        except ValueError as error:
            raise ValueError(f"Invalid WO_ORCHESTRATOR_COST_BANDS entry: {token!r}") from error
        if cost < 0:
            raise ValueError(f"Cost band must be non-negative: {token!r}")
        bands.append((upper, cost))
    return tuple(sorted(bands))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
