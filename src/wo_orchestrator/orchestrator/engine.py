"""Work-order execution engine: poll loop, per-job state machine and escalation."""

from __future__ import annotations

import asyncio
import logging
import re
from collections import deque
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any

from wo_orchestrator.config import PricingSettings, Settings
from wo_orchestrator.orchestrator.backend.base import (
    ApplyRequest,
    CodeApplier,
    CodeGenerator,
    GenerationRequest,
    GenerationResult,
    PublishRequest,
    Publisher,
)
from wo_orchestrator.orchestrator.budget import BudgetLedger
from wo_orchestrator.orchestrator.cache import ResourceCache
from wo_orchestrator.orchestrator.errors import (
    EscalationNotFoundError,
    StageError,
    StateConflictError,
)
from wo_orchestrator.orchestrator.escalation import RETRY_OPTION, prepare_escalation
from wo_orchestrator.orchestrator.events import ProgressChannel, ProgressEventBus, format_sse
from wo_orchestrator.orchestrator.failure_classifier import (
    FailureClassification,
    classify_stage_failure,
)
from wo_orchestrator.orchestrator.locks import TargetLockManager
from wo_orchestrator.orchestrator.models import (
    AgentDescriptor,
    BudgetReservation,
    EngineStatus,
    EscalationStatus,
    EscalationView,
    ExecutionOutcome,
    ExecutionResult,
    FailureClass,
    JobStatus,
    PollSummary,
    ProgressEvent,
    ProgressEventType,
    Stage,
    StructuredError,
    WorkOrderView,
)
from wo_orchestrator.orchestrator.pricing import reservation_cost_usd, usage_cost_usd
from wo_orchestrator.orchestrator.repository import OrchestratorRepository
from wo_orchestrator.orchestrator.roster import AgentRoster
from wo_orchestrator.orchestrator.routing import RoutingPolicy, capability_order
from wo_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

STATUS_RECENT_ERRORS = 10
_BRANCH_SLUG = re.compile(r"[^a-z0-9]+")
_BRANCH_MAX_CHARS = 60
_FINISHED_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ESCALATED})


class OrchestratorEngine:
    """Dispatches eligible work orders and drives each through its stages.

    Every collaborator is injected through the constructor.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        locks: TargetLockManager,
        ledger: BudgetLedger,
        policy: RoutingPolicy,
        bus: ProgressEventBus,
        cache: ResourceCache,
        roster: AgentRoster,
        generator: CodeGenerator,
        applier: CodeApplier,
        publisher: Publisher,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.locks = locks
        self.ledger = ledger
        self.policy = policy
        self.bus = bus
        self.cache = cache
        self.roster = roster
        self.generator = generator
        self.applier = applier
        self.publisher = publisher
        self.settings = settings
        self._pricing: PricingSettings = settings.pricing
        self._clock = clock
        self._interval_seconds = settings.orchestrator.poll_interval_seconds
        self._max_concurrent = settings.orchestrator.max_concurrent_executions
        self._executing: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._scan_lock = asyncio.Lock()
        self._poll_task: asyncio.Task[None] | None = None
        self._sweeper_task: asyncio.Task[None] | None = None
        self._last_poll_at: datetime | None = None
        self._total_executed = 0
        self._total_failed = 0
        self._recent_errors: deque[dict[str, Any]] = deque(
            maxlen=settings.orchestrator.recent_error_limit,
        )

    # Poll loop

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def start_polling(self, interval_seconds: float | None = None) -> bool:
        """Start the timer loop; returns False when it is already running."""

        if self.polling:
            logger.debug("Poll loop already running; start ignored")
            return False
        if interval_seconds is not None:
            if interval_seconds <= 0:
                raise ValueError(f"Poll interval must be > 0, got {interval_seconds}")
            self._interval_seconds = interval_seconds
        self._poll_task = asyncio.create_task(self._poll_loop(), name="wo-orchestrator-poll")
        if self._sweeper_task is None or self._sweeper_task.done():
            self._sweeper_task = asyncio.create_task(
                self.cache.run_sweeper(self.settings.cache.sweep_interval_seconds),
                name="wo-orchestrator-cache-sweeper",
            )
        logger.info("Poll loop started (interval=%.2fs)", self._interval_seconds)
        return True

    def stop_polling(self) -> bool:
        """Cancel the pending timer; already dispatched executions keep running."""

        if not self.polling:
            return False
        assert self._poll_task is not None
        self._poll_task.cancel()
        self._poll_task = None
        logger.info("Poll loop stopped (executing=%d)", len(self._executing))
        return True

    async def poll_once(self) -> PollSummary:
        """Run one scan unless another scan is still in progress."""

        if self._scan_lock.locked():
            logger.debug("Previous scan still running; skipping poll cycle")
            return PollSummary(skipped_overlap=True)
        async with self._scan_lock:
            return await self._scan()

    async def wait_idle(self) -> None:
        """Wait until every dispatched execution has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self, *, wait: bool = True) -> None:
        self.stop_polling()
        if self._sweeper_task is not None:
            self._sweeper_task.cancel()
            self._sweeper_task = None
        if wait:
            await self.wait_idle()
        self.bus.close()

    def get_status(self) -> EngineStatus:
        return EngineStatus(
            polling=self.polling,
            interval_seconds=self._interval_seconds,
            executing=tuple(sorted(self._executing)),
            max_concurrent_executions=self._max_concurrent,
            last_poll_at=self._last_poll_at,
            total_executed=self._total_executed,
            total_failed=self._total_failed,
            recent_errors=list(self._recent_errors)[-STATUS_RECENT_ERRORS:],
            locks=self.locks.stats(),
        )

    # Progress stream

    def subscribe_progress(self, job_id: str) -> ProgressChannel:
        return self.bus.subscribe(job_id)

    async def stream_progress(self, job_id: str) -> AsyncIterator[str]:
        """Server-sent-event frames for one job, ending after its terminal event."""

        channel = self.bus.subscribe(job_id)
        try:
            job = await asyncio.to_thread(self.repository.require_work_order, job_id)
            if job.status in _FINISHED_STATUSES and not channel.closed:
                # Finished before this subscription: nothing live will follow.
                channel.push(_final_event(job))
            async for event in channel:
                yield format_sse(event)
        finally:
            channel.close()

    # Execution

    async def execute_work_order(self, job_id: str) -> ExecutionOutcome:
        """Run one work order now, bypassing the poll scan."""

        if job_id in self._executing:
            logger.info("Work order %s is already executing; manual trigger ignored", job_id)
            return ExecutionOutcome(job_id=job_id, result=ExecutionResult.SKIPPED)
        self._executing.add(job_id)
        try:
            return await self._execute(job_id)
        finally:
            self._executing.discard(job_id)

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:  # noqa: BLE001
                logger.exception("Poll cycle failed")
            await asyncio.sleep(self._interval_seconds)

    async def _scan(self) -> PollSummary:
        summary = PollSummary()
        self._last_poll_at = self._clock()
        approved = await asyncio.to_thread(self.repository.list_by_status, JobStatus.APPROVED)
        summary.scanned = len(approved)

        for job in approved:
            if job.job_id in self._executing:
                summary.already_executing += 1
                continue
            if not await self._dependencies_met(job.job_id):
                summary.ineligible += 1
                continue
            if len(self._executing) >= self._max_concurrent:
                summary.capacity_skipped += 1
                continue
            self._dispatch(job.job_id)
            summary.dispatched += 1
            summary.dispatched_job_ids.append(job.job_id)

        logger.info(
            "Poll cycle: scanned=%d dispatched=%d ineligible=%d executing=%d capacity_skipped=%d",
            summary.scanned,
            summary.dispatched,
            summary.ineligible,
            summary.already_executing,
            summary.capacity_skipped,
        )
        return summary

    def _dispatch(self, job_id: str) -> None:
        self._executing.add(job_id)
        task = asyncio.create_task(self._run_dispatched(job_id), name=f"work-order:{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_dispatched(self, job_id: str) -> None:
        try:
            outcome = await self._execute(job_id)
            logger.info("Work order %s finished with %s", job_id, outcome.result.value)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unhandled error while executing %s", job_id)
            self._record_error(
                job_id,
                StructuredError(
                    stage=Stage.DISPATCH,
                    failure_class=FailureClass.UNCLASSIFIED,
                    message=str(error) or type(error).__name__,
                ),
            )
        finally:
            self._executing.discard(job_id)

    async def _execute(self, job_id: str) -> ExecutionOutcome:
        job = await asyncio.to_thread(self.repository.require_work_order, job_id)
        release = await self.locks.acquire(job.target_id, job_id)
        try:
            return await self._execute_locked(job_id)
        finally:
            release()

    async def _execute_locked(self, job_id: str) -> ExecutionOutcome:
        # Re-read under the lock: a previous holder may have changed this job.
        job = await asyncio.to_thread(self.repository.require_work_order, job_id)
        if job.status != JobStatus.APPROVED:
            logger.info("Work order %s is %s; nothing to execute", job_id, job.status.value)
            return ExecutionOutcome(
                job_id=job_id,
                result=ExecutionResult.SKIPPED,
                status=job.status,
            )

        if not await self._dependencies_met(job_id):
            error = StructuredError(
                stage=Stage.DISPATCH,
                failure_class=FailureClass.DEPENDENCY_UNMET,
                message="One or more dependencies have not completed.",
            )
            logger.info("Work order %s deferred: dependencies not completed", job_id)
            return ExecutionOutcome(
                job_id=job_id,
                result=ExecutionResult.SKIPPED,
                status=JobStatus.APPROVED,
                error=error,
            )

        estimate = reservation_cost_usd(job, self._pricing)
        reservation = await self.ledger.reserve(estimate, f"work_order:{job_id}", job_id=job_id)
        if not reservation.approved:
            return await self._handle_budget_rejection(job, reservation)
        if reservation.warning:
            logger.warning("Work order %s reserved inside the soft-cap band", job_id)

        claimed = await asyncio.to_thread(self.repository.claim_for_execution, job_id)
        if claimed is None:
            await self.ledger.release(reservation)
            logger.info("Work order %s was claimed elsewhere", job_id)
            return ExecutionOutcome(job_id=job_id, result=ExecutionResult.SKIPPED)
        return await self._run_stages(claimed, reservation)

    async def _handle_budget_rejection(
        self,
        job: WorkOrderView,
        reservation: BudgetReservation,
    ) -> ExecutionOutcome:
        error = StructuredError(
            stage=Stage.BUDGET,
            failure_class=FailureClass.BUDGET_REJECTED,
            message=reservation.reason or "Budget reservation rejected.",
        )
        if not reservation.fatal:
            logger.info(
                "Work order %s deferred by budget (%s): %s",
                job.job_id,
                reservation.tier.value,
                error.message,
            )
            return ExecutionOutcome(
                job_id=job.job_id,
                result=ExecutionResult.BUDGET_DEFERRED,
                status=JobStatus.APPROVED,
                error=error,
            )

        await asyncio.to_thread(
            self.repository.mark_failed,
            job.job_id,
            error=error,
            expected=(JobStatus.APPROVED,),
            extra_metadata={
                "budget_rejection": {
                    "tier": reservation.tier.value,
                    "estimated_cost_usd": reservation.estimated_cost_usd,
                    "projected_daily_spend_usd": reservation.projected_daily_spend_usd,
                },
            },
        )
        self._total_failed += 1
        self._record_error(job.job_id, error)
        self.bus.publish(
            job.job_id,
            ProgressEventType.FAILED,
            0,
            message=error.message,
            metadata={"error": error.to_dict()},
        )
        logger.error("Work order %s failed: emergency budget kill", job.job_id)
        return ExecutionOutcome(
            job_id=job.job_id,
            result=ExecutionResult.FAILED,
            status=JobStatus.FAILED,
            error=error,
        )

    async def _run_stages(  # noqa: PLR0915
        self,
        job: WorkOrderView,
        reservation: BudgetReservation,
    ) -> ExecutionOutcome:
        job_id = job.job_id
        stage = Stage.ROUTING
        agent: AgentDescriptor | None = None
        spent = 0.0

        try:
            roster = await self.roster.active_agents()
            decision = self.policy.route(
                job.complexity_score,
                roster,
                pinned_agent=job.pinned_agent,
            )
            agent = decision.agent
            await asyncio.to_thread(self.repository.record_routing, job_id, decision)
            if decision.below_confidence:
                logger.warning("Work order %s routed below confidence: %s", job_id, decision.reason)
            self.bus.publish(
                job_id,
                ProgressEventType.STARTED,
                0,
                message=f"Attempt {job.attempt} started",
                metadata={"attempt": job.attempt, "agent": agent.name, "target_id": job.target_id},
            )
            self.bus.publish(
                job_id,
                ProgressEventType.PROGRESS,
                20,
                message=f"Routed to {agent.name}",
                metadata={"stage": Stage.ROUTING.value, "reason": decision.reason},
            )

            stage = Stage.GENERATION
            generation = await self.generator.generate(
                GenerationRequest(
                    job_id=job_id,
                    title=job.title,
                    description=job.description,
                    target_id=job.target_id,
                    complexity_score=job.complexity_score,
                    agent=agent,
                    attempt=job.attempt,
                    previous_errors=_previous_errors(job.metadata),
                ),
                on_progress=self._generation_progress(job_id, agent),
            )
            spent = _generation_cost(generation, agent, fallback=reservation.estimated_cost_usd)
            self.bus.publish(
                job_id,
                ProgressEventType.PROGRESS,
                50,
                message="Change generated",
                metadata={"stage": stage.value, "files": len(generation.files)},
            )

            stage = Stage.APPLY
            self.bus.publish(
                job_id,
                ProgressEventType.PROGRESS,
                60,
                message="Applying change",
                metadata={"stage": stage.value},
            )
            applied = await self.applier.apply(
                ApplyRequest(
                    job_id=job_id,
                    target_id=job.target_id,
                    branch_name=branch_name_for(job),
                    generation=generation,
                ),
            )
            self.bus.publish(
                job_id,
                ProgressEventType.PROGRESS,
                80,
                message=f"Applied {len(applied.changed_files)} file(s)",
                metadata={"stage": stage.value, "changed_files": list(applied.changed_files)},
            )

            stage = Stage.PUBLISH
            published = await self.publisher.publish(
                PublishRequest(
                    job_id=job_id,
                    target_id=job.target_id,
                    title=job.title,
                    branch_name=applied.branch_name,
                    body=_pull_request_body(job, generation.summary, applied.changed_files),
                ),
            )
            self.bus.publish(
                job_id,
                ProgressEventType.PROGRESS,
                90,
                message="Pull request opened",
                metadata={"stage": stage.value, "pr_url": published.pr_url},
            )
        except Exception as error:  # noqa: BLE001
            if isinstance(error, StageError) and error.stage != Stage.GENERATION:
                partial = spent + error.cost_usd
            elif isinstance(error, StageError):
                partial = error.cost_usd
            else:
                partial = spent
            return await self._handle_stage_failure(
                job,
                reservation,
                stage=stage,
                agent=agent,
                error=error,
                cost_usd=partial,
            )

        try:
            await self.ledger.correct(reservation, spent)
            await asyncio.to_thread(
                self.repository.append_attempt,
                job_id,
                self._attempt_entry(job, agent, stage=None, error=None, cost_usd=spent),
            )
            completed = await asyncio.to_thread(
                self.repository.complete,
                job_id,
                branch_name=applied.branch_name,
                pr_url=published.pr_url,
                artifacts={
                    "changed_files": list(applied.changed_files),
                    "pr_number": published.pr_number,
                    "summary": generation.summary,
                    "cost_usd": round(spent, 6),
                    "prompt_tokens": generation.prompt_tokens,
                    "completion_tokens": generation.completion_tokens,
                },
            )
            if not completed:
                raise StateConflictError(
                    f"Work order left in_progress before completion: {job_id}",
                )
        except Exception as error:  # noqa: BLE001
            self._total_failed += 1
            return await self._fail_in_progress(
                job_id,
                stage=Stage.PUBLISH,
                error=error,
                agent_name=agent.name,
            )

        self._total_executed += 1
        self.bus.publish(
            job_id,
            ProgressEventType.COMPLETED,
            100,
            message="Work order completed",
            metadata={"pr_url": published.pr_url, "agent": agent.name},
        )
        logger.info("Work order %s completed by %s: %s", job_id, agent.name, published.pr_url)
        return ExecutionOutcome(
            job_id=job_id,
            result=ExecutionResult.COMPLETED,
            status=JobStatus.COMPLETED,
            agent=agent.name,
        )

    async def _handle_stage_failure(  # noqa: PLR0913
        self,
        job: WorkOrderView,
        reservation: BudgetReservation,
        *,
        stage: Stage,
        agent: AgentDescriptor | None,
        error: Exception,
        cost_usd: float,
    ) -> ExecutionOutcome:
        job_id = job.job_id
        classification = classify_stage_failure(stage=stage, error=error)
        structured = classification.to_error()
        agent_name = agent.name if agent is not None else None
        logger.warning(
            "Work order %s failed at %s (%s, rule=%s): %s",
            job_id,
            stage.value,
            classification.failure_class.value,
            classification.matched_rule,
            structured.message,
        )

        self._total_failed += 1
        self._record_error(job_id, structured)
        try:
            await self.ledger.correct(reservation, cost_usd)
            metadata = await asyncio.to_thread(
                self.repository.append_attempt,
                job_id,
                self._attempt_entry(
                    job,
                    agent,
                    stage=stage,
                    error=classification,
                    cost_usd=cost_usd,
                ),
            )
            next_agent = await self._retry_agent(job, classification, agent_name, metadata)
            if next_agent is None:
                return await self._escalate(job_id, structured, reservation, agent_name)
            requeued = await asyncio.to_thread(
                self.repository.requeue_for_retry,
                job_id,
                error=structured,
                pinned_agent=next_agent,
            )
            if not requeued:
                raise StateConflictError(f"Work order left in_progress before retry: {job_id}")
        except Exception as bookkeeping_error:  # noqa: BLE001
            return await self._fail_in_progress(
                job_id,
                stage=stage,
                error=bookkeeping_error,
                agent_name=agent_name,
            )

        self.bus.publish(
            job_id,
            ProgressEventType.PROGRESS,
            0,
            message=f"Retry scheduled with {next_agent}",
            metadata={
                "retry": True,
                "attempt": job.attempt,
                "next_agent": next_agent,
                "error": structured.to_dict(),
            },
        )
        logger.info("Work order %s requeued for retry with %s", job_id, next_agent)
        return ExecutionOutcome(
            job_id=job_id,
            result=ExecutionResult.RETRY_SCHEDULED,
            status=JobStatus.APPROVED,
            agent=agent_name,
            error=structured,
        )

    async def _retry_agent(
        self,
        job: WorkOrderView,
        classification: FailureClassification,
        agent_name: str | None,
        metadata: dict[str, Any],
    ) -> str | None:
        """Agent pinned for the next attempt, or None when the job must escalate."""

        if not classification.retryable:
            return None
        if classification.failure_class == FailureClass.PUBLISH_ERROR:
            publish_failures = sum(
                1
                for item in _current_attempts(metadata)
                if item.get("error_class") == FailureClass.PUBLISH_ERROR.value
            )
            if publish_failures > 1:
                return None
            return agent_name

        roster = await self.roster.active_agents()
        strategy = self.policy.retry_strategy(
            job_id=job.job_id,
            previous_agent=agent_name,
            attempt_number=job.attempt + 1,
            failure_reason=classification.message,
            roster=roster,
            complexity_score=job.complexity_score,
        )
        if strategy.should_escalate or strategy.next_agent is None:
            logger.info("Work order %s will escalate: %s", job.job_id, strategy.reason)
            return None
        return strategy.next_agent.name

    async def _escalate(
        self,
        job_id: str,
        error: StructuredError,
        reservation: BudgetReservation,
        agent_name: str | None,
    ) -> ExecutionOutcome:
        try:
            current = await asyncio.to_thread(self.repository.require_work_order, job_id)
            total_cost = await asyncio.to_thread(self.repository.job_cost, job_id)
            payload = prepare_escalation(
                current,
                error=error,
                total_cost_usd=total_cost,
                estimated_cost_usd=reservation.estimated_cost_usd,
            )
            escalation = await asyncio.to_thread(self.repository.create_escalation, payload)
        except Exception as escalation_error:  # noqa: BLE001
            logger.exception("Escalation could not be created for %s; failing it", job_id)
            failed = await asyncio.to_thread(
                self.repository.mark_failed,
                job_id,
                error=error,
                extra_metadata={"escalation_error": str(escalation_error)},
            )
            if not failed:
                raise StateConflictError(
                    f"Work order left in_progress before it could fail: {job_id}",
                ) from escalation_error
            self.bus.publish(
                job_id,
                ProgressEventType.FAILED,
                0,
                message=error.message,
                metadata={"error": error.to_dict()},
            )
            return ExecutionOutcome(
                job_id=job_id,
                result=ExecutionResult.FAILED,
                status=JobStatus.FAILED,
                agent=agent_name,
                error=error,
            )

        escalated = await asyncio.to_thread(
            self.repository.mark_escalated,
            job_id,
            error=error,
            escalation_id=escalation.escalation_id,
        )
        if not escalated:
            await asyncio.to_thread(
                self.repository.close_escalation,
                escalation.escalation_id,
                status=EscalationStatus.ABANDONED,
                chosen_option=None,
                decided_by="orchestrator",
                notes="Work order left in_progress before it could be escalated.",
            )
            raise StateConflictError(f"Work order left in_progress before escalation: {job_id}")
        self.bus.publish(
            job_id,
            ProgressEventType.FAILED,
            0,
            message=error.message,
            metadata={
                "error": error.to_dict(),
                "escalation_id": escalation.escalation_id,
                "trigger": escalation.trigger.value,
            },
        )
        logger.warning(
            "Work order %s escalated (%s, recommended option %s)",
            job_id,
            escalation.trigger.value,
            escalation.recommended_option,
        )
        return ExecutionOutcome(
            job_id=job_id,
            result=ExecutionResult.ESCALATED,
            status=JobStatus.ESCALATED,
            agent=agent_name,
            error=error,
            escalation_id=escalation.escalation_id,
        )

    async def _fail_in_progress(
        self,
        job_id: str,
        *,
        stage: Stage,
        error: Exception,
        agent_name: str | None,
    ) -> ExecutionOutcome:
        """Terminal failure when recording a stage outcome itself went wrong."""

        logger.error(
            "Work order %s: recording the %s outcome failed",
            job_id,
            stage.value,
            exc_info=error,
        )
        detail = str(error) or type(error).__name__
        structured = StructuredError(
            stage=stage,
            failure_class=FailureClass.UNCLASSIFIED,
            message=f"Recording the {stage.value} outcome failed: {detail}",
        )
        self._record_error(job_id, structured)
        failed = await asyncio.to_thread(
            self.repository.mark_failed,
            job_id,
            error=structured,
            expected=(JobStatus.IN_PROGRESS,),
        )
        if not failed:
            logger.warning("Work order %s already left in_progress; status kept", job_id)
        self.bus.publish(
            job_id,
            ProgressEventType.FAILED,
            0,
            message=structured.message,
            metadata={"error": structured.to_dict()},
        )
        return ExecutionOutcome(
            job_id=job_id,
            result=ExecutionResult.FAILED,
            status=JobStatus.FAILED if failed else None,
            agent=agent_name,
            error=structured,
        )

    # Escalation decisions

    async def resolve_escalation(
        self,
        escalation_id: str,
        option_id: str,
        *,
        decided_by: str,
        notes: str | None = None,
    ) -> WorkOrderView:
        """Apply a human decision; the retry option re-approves the work order."""

        escalation = await self._open_escalation(escalation_id)
        option_id = option_id.strip().upper()
        offered = {str(option.get("option_id")) for option in escalation.options}
        if option_id not in offered:
            raise ValueError(
                f"Option {option_id} is not offered by escalation {escalation_id}; "
                f"choose one of {', '.join(sorted(offered))}.",
            )
        closed = await asyncio.to_thread(
            self.repository.close_escalation,
            escalation_id,
            status=EscalationStatus.RESOLVED,
            chosen_option=option_id,
            decided_by=decided_by,
            notes=notes,
        )
        if not closed:
            raise EscalationNotFoundError(escalation_id)

        job_id = escalation.job_id
        if option_id == RETRY_OPTION:
            ordered = capability_order(await self.roster.active_agents())
            pinned = ordered[-1].name if ordered else None
            reopened = await asyncio.to_thread(
                self.repository.reopen_from_escalation,
                job_id,
                pinned_agent=pinned,
            )
            if not reopened:
                raise StateConflictError(f"Work order is no longer escalated: {job_id}")
            logger.info(
                "Escalation %s resolved: %s requeued with %s",
                escalation_id,
                job_id,
                pinned,
            )
        else:
            await self._fail_escalated(
                job_id,
                message=f"Escalation resolved with option {option_id} by {decided_by}.",
                resolution={
                    "escalation_id": escalation_id,
                    "option_id": option_id,
                    "decided_by": decided_by,
                    "notes": notes,
                },
            )
            logger.info("Escalation %s resolved with option %s", escalation_id, option_id)
        return await asyncio.to_thread(self.repository.require_work_order, job_id)

    async def abandon_escalation(
        self,
        escalation_id: str,
        *,
        decided_by: str,
        notes: str | None = None,
    ) -> WorkOrderView:
        escalation = await self._open_escalation(escalation_id)
        closed = await asyncio.to_thread(
            self.repository.close_escalation,
            escalation_id,
            status=EscalationStatus.ABANDONED,
            chosen_option=None,
            decided_by=decided_by,
            notes=notes,
        )
        if not closed:
            raise EscalationNotFoundError(escalation_id)
        await self._fail_escalated(
            escalation.job_id,
            message=f"Escalation abandoned by {decided_by}.",
            resolution={
                "escalation_id": escalation_id,
                "option_id": None,
                "decided_by": decided_by,
                "notes": notes,
            },
        )
        logger.info("Escalation %s abandoned", escalation_id)
        return await asyncio.to_thread(self.repository.require_work_order, escalation.job_id)

    async def _open_escalation(self, escalation_id: str) -> EscalationView:
        escalation = await asyncio.to_thread(self.repository.get_escalation, escalation_id)
        if escalation is None or escalation.status != EscalationStatus.OPEN:
            raise EscalationNotFoundError(escalation_id)
        return escalation

    async def _fail_escalated(
        self,
        job_id: str,
        *,
        message: str,
        resolution: dict[str, Any],
    ) -> None:
        job = await asyncio.to_thread(self.repository.require_work_order, job_id)
        error = StructuredError(
            stage=Stage(job.failure_stage) if job.failure_stage else Stage.DISPATCH,
            failure_class=job.failure_class or FailureClass.UNCLASSIFIED,
            message=message,
        )
        failed = await asyncio.to_thread(
            self.repository.mark_failed,
            job_id,
            error=error,
            expected=(JobStatus.ESCALATED,),
            extra_metadata={"escalation_resolution": resolution},
        )
        if not failed:
            raise StateConflictError(f"Work order is no longer escalated: {job_id}")

    # Helpers

    async def _dependencies_met(self, job_id: str) -> bool:
        statuses = await asyncio.to_thread(self.repository.dependency_statuses, job_id)
        return all(status == JobStatus.COMPLETED for status in statuses.values())

    def _generation_progress(
        self,
        job_id: str,
        agent: AgentDescriptor,
    ) -> Callable[[float, str], None]:
        def _report(fraction: float, message: str) -> None:
            bounded = min(1.0, max(0.0, fraction))
            self.bus.publish(
                job_id,
                ProgressEventType.PROGRESS,
                30 + int(20 * bounded),
                message=message,
                metadata={"stage": Stage.GENERATION.value, "agent": agent.name},
            )

        return _report

    def _attempt_entry(
        self,
        job: WorkOrderView,
        agent: AgentDescriptor | None,
        *,
        stage: Stage | None,
        error: FailureClassification | None,
        cost_usd: float,
    ) -> dict[str, Any]:
        return {
            "attempt_number": job.attempt,
            "agent": agent.name if agent is not None else None,
            "error_class": error.failure_class.value if error is not None else None,
            "reason_code": error.reason_code if error is not None else None,
            "stage": stage.value if stage is not None else None,
            "message": error.message if error is not None else None,
            "cost": round(cost_usd, 6),
            "timestamp": self._clock().isoformat(),
        }

    def _record_error(self, job_id: str, error: StructuredError) -> None:
        self._recent_errors.append(
            {
                "job_id": job_id,
                "at": self._clock().isoformat(),
                **error.to_dict(),
            },
        )


def build_engine(  # noqa: PLR0913
    settings: Settings,
    repository: OrchestratorRepository,
    *,
    generator: CodeGenerator,
    applier: CodeApplier,
    publisher: Publisher,
    clock: Callable[[], datetime] = utc_now,
) -> OrchestratorEngine:
    """Composition root: construct every shared component once for one engine."""

    cache = ResourceCache(coalesce=settings.cache.coalesce_fetches)
    return OrchestratorEngine(
        repository=repository,
        locks=TargetLockManager(),
        ledger=BudgetLedger(repository, settings.budget, clock=clock),
        policy=RoutingPolicy(max_attempts=settings.orchestrator.max_attempts),
        bus=ProgressEventBus(
            grace_seconds=settings.orchestrator.event_grace_seconds,
            channel_buffer_size=settings.orchestrator.progress_buffer_size,
            clock=clock,
        ),
        cache=cache,
        roster=AgentRoster(repository, cache, ttl_seconds=settings.cache.roster_ttl_seconds),
        generator=generator,
        applier=applier,
        publisher=publisher,
        settings=settings,
        clock=clock,
    )


def branch_name_for(job: WorkOrderView) -> str:
    slug = _BRANCH_SLUG.sub("-", f"{job.job_id} {job.title}".lower()).strip("-")
    return f"wo/{slug[:_BRANCH_MAX_CHARS].rstrip('-')}"


def _generation_cost(
    generation: GenerationResult,
    agent: AgentDescriptor,
    *,
    fallback: float,
) -> float:
    if generation.cost_usd is not None:
        return generation.cost_usd
    from_usage = usage_cost_usd(
        agent=agent,
        prompt_tokens=generation.prompt_tokens,
        completion_tokens=generation.completion_tokens,
    )
    return from_usage if from_usage is not None else fallback


def _final_event(job: WorkOrderView) -> ProgressEvent:
    if job.status == JobStatus.COMPLETED:
        return ProgressEvent(
            job_id=job.job_id,
            event_type=ProgressEventType.COMPLETED,
            progress=100,
            message="Work order completed",
            metadata={"status": job.status.value, "pr_url": job.pr_url},
        )
    return ProgressEvent(
        job_id=job.job_id,
        event_type=ProgressEventType.FAILED,
        progress=0,
        message=job.error_summary or f"Work order {job.status.value}",
        metadata={
            "status": job.status.value,
            "error": job.metadata.get("orchestrator_error"),
            "escalation_id": job.metadata.get("escalation_id"),
        },
    )


def _current_attempts(metadata: dict[str, Any]) -> list[dict[str, Any]]:
    """Attempt entries since the last escalation retry reopened the work order."""

    attempts = metadata.get("attempts")
    if not isinstance(attempts, list):
        return []
    epoch = metadata.get("attempts_epoch")
    start = epoch if isinstance(epoch, int) and epoch > 0 else 0
    return [item for item in attempts[start:] if isinstance(item, dict)]


def _previous_errors(metadata: dict[str, Any]) -> list[str]:
    attempts = metadata.get("attempts")
    if not isinstance(attempts, list):
        return []
    return [
        str(item["message"])
        for item in attempts
        if isinstance(item, dict) and item.get("message")
    ]


def _pull_request_body(job: WorkOrderView, summary: str, changed_files: tuple[str, ...]) -> str:
    lines = [summary or job.title, "", f"Work order: `{job.job_id}`"]
    if job.description:
        lines.extend(["", job.description])
    if changed_files:
        lines.extend(["", "Changed files:"])
        lines.extend(f"- `{path}`" for path in changed_files)
    return "\n".join(lines)
