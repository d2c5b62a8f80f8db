"""Drift reconciler: the control loop.

Each pass walks the same steps:
1. Load desired state from the YAML declarations
2. Load the previously managed set from the state file
3. Fetch live state from AWS and Kubernetes
4. Diff desired against observed and schedule the plan
5. Apply the plan (unless dry run) and persist the new state
6. Repeat on interval or on demand

A pass with no drift plans only NoOp steps and performs no backend write, so
running the loop against converged infrastructure is harmless.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from types import MappingProxyType

from .backends.base import BackendRegistry, BlockingCallRunner
from .config import Config
from .dependency import build_schedule
from .diff_normalizer import DiffNormalizer
from .differ import Plan, compute_plan
from .errors import BackendError, CycleDetected, GraphError, ReconcileError
from .executor import ApplyExecutor, ApplyStatus, ExecutionOutcome
from .fetcher import StateFetcher
from .report import PassReport, get_report_logger
from .resource_graph import ResourceGraph
from .spec_loader import SpecLoadError, load_graph
from .state import ObservedResource, ObservedState, StateFileError, StateStore

logger = logging.getLogger(__name__)

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes


class ChangeLimitExceeded(ReconcileError):
    """Raised when a plan has more actions than the configured per-pass limit."""

    pass


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    report: PassReport
    plan: Plan | None = None
    outcome: ExecutionOutcome | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Wall time of the pass, 0.0 while it is still running."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the pass succeeded (no pass error, no failed action)."""
        if self.error is not None:
            return False
        return self.outcome is None or self.outcome.success


class DriftReconciler:
    """Runs reconciliation passes on an interval or on demand.

    Passes never overlap: reconcile_once() serializes on a lock, so a trigger
    arriving mid-pass runs after the current pass finishes.

    Repeated pass failures open a circuit breaker that pauses the loop.
    """

    def __init__(
        self,
        config: Config,
        registry: BackendRegistry,
        state_store: StateStore | None = None,
        normalizer: DiffNormalizer | None = None,
    ) -> None:
        """Wire the pass pipeline.

        Args:
            config: Validated operator configuration.
            registry: Backend capabilities by kind.
            state_store: Persistence for the managed set; defaults to config.state_file.
            normalizer: Attribute normalizer for the differ.
        """
        self._config = config
        self._runner = BlockingCallRunner(
            max_concurrency=config.max_concurrent_applies,
            timeout_seconds=config.backend_call_timeout_seconds,
        )
        self._fetcher = StateFetcher(registry, self._runner)
        self._executor = ApplyExecutor(
            registry,
            self._runner,
            max_apply_retries=config.max_apply_retries,
            retry_backoff_base=config.retry_backoff_base_seconds,
            on_snapshot=self._publish_snapshot,
        )
        self._state_store = state_store or StateStore(config.state_file)
        self._normalizer = normalizer or DiffNormalizer()

        self._shutdown_event = asyncio.Event()
        self._trigger_event = asyncio.Event()
        self._cancel_event = asyncio.Event()
        self._pass_lock = asyncio.Lock()

        self._snapshot: Mapping[str, ObservedResource] = MappingProxyType({})

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        return self._config

    def status_snapshot(self) -> Mapping[str, ObservedResource]:
        """Latest observed state, as published at the last rank boundary."""
        return self._snapshot

    def close(self) -> None:
        """Release the backend worker pool. Called by run() on exit."""
        self._runner.close()

    def _publish_snapshot(self, snapshot: Mapping[str, ObservedResource]) -> None:
        self._snapshot = snapshot

    async def run(self) -> None:
        """Run the reconciliation loop until shutdown.

        A pass runs every reconcile_interval_seconds, or earlier when
        trigger() is called.

        After MAX_CONSECUTIVE_FAILURES failed passes the breaker opens and no
        pass runs for CIRCUIT_BREAKER_RESET_SECONDS.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "spec_path": str(self._config.spec_path),
                "interval_seconds": self._config.reconcile_interval_seconds,
                "max_concurrent_applies": self._config.max_concurrent_applies,
                "dry_run": self._config.dry_run,
            },
        )

        try:
            while not self._shutdown_event.is_set():
                # Circuit breaker check
                if self._circuit_open_until is not None:
                    now = datetime.now(UTC)
                    if now < self._circuit_open_until:
                        remaining = (self._circuit_open_until - now).total_seconds()
                        logger.warning(
                            "Circuit breaker open, skipping reconciliation",
                            extra={
                                "remaining_seconds": remaining,
                                "consecutive_failures": self._consecutive_failures,
                            },
                        )
                        await self._wait(min(remaining, self._config.reconcile_interval_seconds))
                        continue
                    else:
                        logger.info("Circuit breaker reset, resuming reconciliation")
                        self._circuit_open_until = None
                        self._consecutive_failures = 0

                result = await self.reconcile_once()
                self._record_for_circuit_breaker(result)

                # Wait for next cycle, a trigger, or shutdown
                await self._wait(self._config.reconcile_interval_seconds)
        finally:
            self.close()

        logger.info("Reconciler shutdown complete")

    async def _wait(self, timeout: float) -> None:
        """Sleep until timeout, trigger() or shutdown(), whichever comes first."""
        shutdown = asyncio.create_task(self._shutdown_event.wait())
        trigger = asyncio.create_task(self._trigger_event.wait())
        try:
            await asyncio.wait(
                {shutdown, trigger}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            shutdown.cancel()
            trigger.cancel()
        self._trigger_event.clear()

    def _record_for_circuit_breaker(self, result: ReconcileResult) -> None:
        if result.error is not None:
            self._consecutive_failures += 1
            if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                self._circuit_open_until = datetime.now(UTC) + timedelta(
                    seconds=CIRCUIT_BREAKER_RESET_SECONDS
                )
                logger.error(
                    "Circuit breaker opened after consecutive failures",
                    extra={
                        "consecutive_failures": self._consecutive_failures,
                        "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                    },
                )
        else:
            # Reset on success
            self._consecutive_failures = 0

    def trigger(self) -> None:
        """Request a pass now instead of at the next interval."""
        logger.info("Reconciliation triggered")
        self._trigger_event.set()

    def cancel(self) -> None:
        """Cancel the in-flight pass at the next rank boundary."""
        logger.info("Cancellation requested")
        self._cancel_event.set()

    def shutdown(self) -> None:
        """Signal the reconciler to stop, cancelling any in-flight pass."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
        self._cancel_event.set()

    async def plan(self, graph: ResourceGraph | None = None) -> tuple[Plan, ObservedState]:
        """Compute the scheduled plan without applying it.

        Args:
            graph: Desired graph; loaded from config.spec_path when omitted.

        Returns:
            The scheduled plan and the observed state it was computed against.

        Raises:
            SpecLoadError: If the declarations are invalid.
            GraphError: If the dependencies are unresolvable or cyclic.
            StateFileError: If the persisted state cannot be read.
            BackendError: If live state cannot be fetched.
        """
        if graph is None:
            graph = load_graph(self._config.spec_path)
        prior = self._state_store.load()
        observed = await self._fetcher.fetch(
            graph, prior, allow_partial=self._config.allow_partial_state
        )
        self._snapshot = observed.snapshot()
        plan = build_schedule(compute_plan(graph, observed, self._normalizer))
        return plan, observed

    async def reconcile_once(
        self,
        dry_run: bool | None = None,
        graph: ResourceGraph | None = None,
    ) -> ReconcileResult:
        """Execute a single reconciliation pass.

        Args:
            dry_run: Plan only; defaults to config.dry_run.
            graph: Desired graph; loaded from config.spec_path when omitted.

        Returns:
            ReconcileResult with the plan, apply outcome and report.
        """
        if dry_run is None:
            dry_run = self._config.dry_run

        report_logger = get_report_logger()
        report = report_logger.create_report(str(self._config.spec_path), dry_run)
        result = ReconcileResult(report=report)

        async with self._pass_lock:
            if not self._shutdown_event.is_set():
                self._cancel_event.clear()
            try:
                plan, observed = await self.plan(graph)
                result.plan = plan
                report.record_plan(plan)

                actionable = len(plan.actionable)
                if actionable > self._config.max_changes_per_pass:
                    raise ChangeLimitExceeded(
                        f"Plan has {actionable} actions, exceeding the limit of "
                        f"{self._config.max_changes_per_pass} per pass"
                    )

                if dry_run:
                    logger.info(
                        "Dry run, plan not applied",
                        extra={"actions": actionable, "ranks": len(plan.ranks)},
                    )
                else:
                    if plan.is_noop:
                        logger.info("No drift detected")
                    else:
                        outcome = await self._executor.execute(
                            plan, observed, cancel_event=self._cancel_event
                        )
                        result.outcome = outcome
                        report.record_outcome(outcome)
                        for apply_result in outcome.results:
                            if apply_result.status == ApplyStatus.SUCCEEDED:
                                report_logger.log_change_detail(report, apply_result)

                    # Persist even a partial apply so the next pass sees what changed
                    self._state_store.persist(observed)

            except SpecLoadError as e:
                logger.error("Failed to load declarations", extra={"error": str(e)})
                result.error = e
            except CycleDetected as e:
                logger.error(
                    "Dependency cycle detected, nothing applied",
                    extra={"error": str(e), "cycle_nodes": e.nodes},
                )
                result.error = e
            except GraphError as e:
                logger.error("Invalid resource graph", extra={"error": str(e)})
                result.error = e
            except ChangeLimitExceeded as e:
                logger.error("Change limit exceeded, nothing applied", extra={"error": str(e)})
                result.error = e
            except BackendError as e:
                logger.error(
                    "Backend error",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
                result.error = e
            except StateFileError as e:
                logger.error("State file error", extra={"error": str(e)})
                result.error = e
            except Exception as e:
                logger.exception("Unexpected error during reconciliation")
                result.error = e

        result.end_time = datetime.now(UTC)
        report.duration_seconds = result.duration_seconds
        if result.error is not None:
            report.record_error(result.error)
        report_logger.log_report(report)

        return result
