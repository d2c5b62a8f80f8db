"""Apply executor: runs a scheduled plan against the backends.

Ranks run strictly in order; the steps of one rank run concurrently, bounded
by the call runner. Each step is retried with exponential backoff and jitter
while the backend reports a transient failure. There is no rollback: a failed
step stays failed and everything blocked on it is skipped.

OBSERVED STATE:
The executor is the only writer of ObservedState during a pass. Each result
is folded in on the event loop thread as soon as the action completes, and a
read-only snapshot is published at every rank boundary.

CANCELLATION:
Cooperative, checked before each rank. In-flight actions finish; steps not
yet started are recorded as Cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .backends.base import BackendContext, BackendRegistry, BlockingCallRunner, ResourceBackend
from .differ import Action, Plan, PlanStep
from .errors import BackendError, PermissionDenied
from .resource_graph import ResourceKind
from .state import ObservedResource, ObservedState

logger = logging.getLogger(__name__)

DEFAULT_MAX_APPLY_RETRIES = 3
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0


class ApplyStatus(str, Enum):
    """Final state of one plan step."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "SkippedDueToDependencyFailure"
    CANCELLED = "Cancelled"


@dataclass
class ApplyResult:
    """Outcome of one non-NoOp plan step."""

    resource_id: str
    kind: ResourceKind
    action: Action
    status: ApplyStatus
    replace: bool = False
    error: str | None = None
    error_type: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == ApplyStatus.SUCCEEDED

    @property
    def key(self) -> str:
        return f"{self.action.value}:{self.resource_id}"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "resource_id": self.resource_id,
            "kind": self.kind.value,
            "action": self.action.value,
            "replace": self.replace,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        if self.error is not None:
            data["error"] = self.error
            data["error_type"] = self.error_type
        if self.started_at is not None:
            data["started_at"] = self.started_at.isoformat()
        if self.finished_at is not None:
            data["finished_at"] = self.finished_at.isoformat()
        return data


@dataclass
class ExecutionOutcome:
    """All apply results of one pass, in schedule order."""

    results: list[ApplyResult] = field(default_factory=list)
    cancelled: bool = False

    def by_status(self, status: ApplyStatus) -> list[ApplyResult]:
        return [r for r in self.results if r.status == status]

    @property
    def failed(self) -> list[ApplyResult]:
        return self.by_status(ApplyStatus.FAILED)

    @property
    def skipped(self) -> list[ApplyResult]:
        return self.by_status(ApplyStatus.SKIPPED)

    @property
    def success(self) -> bool:
        return not self.cancelled and all(r.succeeded for r in self.results)

    def result(self, action: Action, resource_id: str) -> ApplyResult | None:
        for r in self.results:
            if r.action == action and r.resource_id == resource_id:
                return r
        return None


class ApplyExecutor:
    """Executes scheduled plans.

    Args:
        registry: Backend capabilities by kind.
        runner: Bounded runner for blocking backend calls.
        max_apply_retries: Attempts per action, including the first.
        retry_backoff_base: Seconds before the second attempt; doubles after.
        on_snapshot: Called with a read-only ObservedState snapshot at every
            rank boundary.
    """

    def __init__(
        self,
        registry: BackendRegistry,
        runner: BlockingCallRunner,
        max_apply_retries: int = DEFAULT_MAX_APPLY_RETRIES,
        retry_backoff_base: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS,
        on_snapshot: Callable[[Mapping[str, ObservedResource]], None] | None = None,
    ) -> None:
        if max_apply_retries < 1:
            raise ValueError("max_apply_retries must be at least 1")
        self._registry = registry
        self._runner = runner
        self._max_apply_retries = max_apply_retries
        self._retry_backoff_base = retry_backoff_base
        self._on_snapshot = on_snapshot

    async def execute(
        self,
        plan: Plan,
        observed: ObservedState,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionOutcome:
        """Apply every non-NoOp step of ``plan``, rank by rank.

        Args:
            plan: Plan scheduled by the dependency graph builder.
            observed: Observed state, updated in place as actions complete.
            cancel_event: When set, no further rank is started.

        Returns:
            ExecutionOutcome with exactly one result per non-NoOp step.

        Raises:
            ValueError: If the plan has actions but no schedule.
        """
        if plan.actionable and not plan.ranks:
            raise ValueError("Plan has not been scheduled")

        outcome = ExecutionOutcome()
        # Keys of steps that failed or were skipped
        unsuccessful: set[str] = set()

        for index, rank in enumerate(plan.ranks):
            if cancel_event is not None and cancel_event.is_set():
                outcome.cancelled = True
                remaining = [step for later in plan.ranks[index:] for step in later]
                logger.warning(
                    "Apply cancelled, remaining steps not started",
                    extra={"rank": index, "remaining_steps": len(remaining)},
                )
                outcome.results.extend(
                    self._unattempted(step, ApplyStatus.CANCELLED) for step in remaining
                )
                break

            runnable: list[PlanStep] = []
            for step in rank:
                failed_blockers = sorted(step.blocked_by & unsuccessful)
                if failed_blockers:
                    logger.warning(
                        "Skipping step, a dependency did not succeed",
                        extra={
                            "resource_id": step.resource_id,
                            "action": step.action.value,
                            "failed_blockers": failed_blockers,
                        },
                    )
                    result = self._unattempted(step, ApplyStatus.SKIPPED)
                    result.error = f"blocked by {', '.join(failed_blockers)}"
                    outcome.results.append(result)
                    unsuccessful.add(step.key)
                else:
                    runnable.append(step)

            logger.debug(
                "Executing rank",
                extra={"rank": index, "step_count": len(runnable)},
            )
            results = await asyncio.gather(*(self._apply_step(step, observed) for step in runnable))
            for result in results:
                outcome.results.append(result)
                if not result.succeeded:
                    unsuccessful.add(result.key)

            self._publish(observed)

        logger.info(
            "Apply finished",
            extra={
                "succeeded": len(outcome.by_status(ApplyStatus.SUCCEEDED)),
                "failed": len(outcome.failed),
                "skipped": len(outcome.skipped),
                "cancelled": len(outcome.by_status(ApplyStatus.CANCELLED)),
            },
        )
        return outcome

    def _publish(self, observed: ObservedState) -> None:
        if self._on_snapshot is not None:
            self._on_snapshot(observed.snapshot())

    @staticmethod
    def _unattempted(step: PlanStep, status: ApplyStatus) -> ApplyResult:
        return ApplyResult(
            resource_id=step.resource_id,
            kind=step.kind,
            action=step.action,
            status=status,
            replace=step.replace,
        )

    async def _apply_step(self, step: PlanStep, observed: ObservedState) -> ApplyResult:
        result = ApplyResult(
            resource_id=step.resource_id,
            kind=step.kind,
            action=step.action,
            status=ApplyStatus.FAILED,
            replace=step.replace,
            started_at=datetime.now(UTC),
        )

        try:
            backend = self._registry.get(step.kind)
            result.attributes = await self._apply_with_retry(step, backend, observed, result)
        except BackendError as e:
            self._record_failure(result, e)
            if isinstance(e, PermissionDenied):
                logger.error(
                    "PERMISSION DENIED: check the operator's IAM/RBAC grants",
                    extra=self._failure_extra(step, result),
                )
            else:
                logger.error("Action failed", extra=self._failure_extra(step, result))
            return result
        except Exception as e:
            # A capability bug fails its own step; the rest of the rank carries on
            self._record_failure(result, e)
            logger.exception(
                "Action raised an unexpected error", extra=self._failure_extra(step, result)
            )
            return result

        result.finished_at = datetime.now(UTC)
        result.status = ApplyStatus.SUCCEEDED
        self._fold(step, result, observed)
        logger.info(
            "Action succeeded",
            extra={
                "resource_id": step.resource_id,
                "action": step.action.value,
                "replace": step.replace,
                "attempts": result.attempts,
            },
        )
        return result

    @staticmethod
    def _record_failure(result: ApplyResult, error: Exception) -> None:
        result.finished_at = datetime.now(UTC)
        result.error = str(error) or repr(error)
        result.error_type = type(error).__name__

    @staticmethod
    def _failure_extra(step: PlanStep, result: ApplyResult) -> dict[str, Any]:
        return {
            "resource_id": step.resource_id,
            "action": step.action.value,
            "error_type": result.error_type,
            "error": result.error,
            "attempts": result.attempts,
        }

    async def _apply_with_retry(
        self,
        step: PlanStep,
        backend: ResourceBackend,
        observed: ObservedState,
        result: ApplyResult,
    ) -> dict[str, Any]:
        """Run one action with exponential backoff retry on transient errors.

        Raises:
            BackendError: The last error if all attempts fail, or the first
                non-transient error.
        """
        last_error: BackendError | None = None

        for attempt in range(1, self._max_apply_retries + 1):
            result.attempts = attempt
            try:
                return await self._invoke(step, backend, observed)
            except BackendError as e:
                last_error = e
                if not e.transient:
                    raise

                if attempt < self._max_apply_retries:
                    # Exponential backoff with jitter
                    backoff = self._retry_backoff_base * (2 ** (attempt - 1))
                    jitter = random.uniform(0, backoff * 0.2)
                    wait_time = backoff + jitter

                    logger.warning(
                        "Action failed, retrying",
                        extra={
                            "resource_id": step.resource_id,
                            "action": step.action.value,
                            "attempt": attempt,
                            "max_attempts": self._max_apply_retries,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )

                    await asyncio.sleep(wait_time)

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error

    async def _invoke(
        self, step: PlanStep, backend: ResourceBackend, observed: ObservedState
    ) -> dict[str, Any]:
        resource = step.resource
        ctx = BackendContext(resource, observed.snapshot(), step.prior_attributes)
        operation = f"{step.action.value.lower()} {resource.id}"

        match step.action:
            case Action.CREATE:
                return await self._runner.call(
                    resource.kind, operation, backend.create, resource, ctx
                )
            case Action.UPDATE:
                return await self._runner.call(
                    resource.kind, operation, backend.update, resource, step.prior_attributes, ctx
                )
            case Action.DELETE:
                await self._runner.call(resource.kind, operation, backend.delete, resource, ctx)
                return {}
            case _:
                raise ValueError(f"Cannot execute action {step.action.value}")

    @staticmethod
    def _fold(step: PlanStep, result: ApplyResult, observed: ObservedState) -> None:
        """Fold a successful result into observed state."""
        if step.action == Action.DELETE:
            # The record of a replaced resource already describes the new instance
            if not step.replace:
                observed.mark_deleted(step.resource_id)
            return
        observed.set(
            ObservedResource(
                resource_id=step.resource_id,
                kind=step.kind,
                exists=True,
                attributes=result.attributes,
                dependencies=step.resource.dependencies,
            )
        )
