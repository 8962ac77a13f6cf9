"""
Retry / Escalation Controller
=============================
Drives the Submission Gateway until the operation lands, a policy is
exhausted, or the caller cancels.

States:
    idle -> attempting -> succeeded
                       -> retry_wait -> attempting
                       -> falling_back -> attempting
                       -> exhausted
                       -> cancelled

Every attempt re-derives signed transactions from the same instruction
groups (fresh blockhash, current fee). Groups that already landed on the
sequential path are never resent.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from config.settings import Settings
from splforge.execution.schemas import ExecutionContext, InstructionGroup
from splforge.shared.execution.execution_result import (
    COLLABORATOR_ERRORS,
    FALLBACK_KINDS,
    ErrorKind,
    OrchestrationError,
    SigningError,
    SubmissionMethod,
    SubmissionResult,
    as_orchestration_error,
)
from splforge.shared.execution.retry_policy import RetryPolicy, policy_for
from splforge.shared.system.logging import Logger
from splforge.shared.system.progress_bus import ProgressBus, ProgressEvent, ProgressStage


class ControllerState(Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    RETRY_WAIT = "retry_wait"
    FALLING_BACK = "falling_back"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


@dataclass
class ControllerOutcome:
    """Final result of a controller run, merged across attempts."""

    result: SubmissionResult
    state: ControllerState
    attempts: int = 0
    fell_back: bool = False
    errors: List[OrchestrationError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.result.success

    @property
    def error(self) -> Optional[OrchestrationError]:
        return self.result.error

    @property
    def cancelled(self) -> bool:
        return self.state == ControllerState.CANCELLED


class RetryController:
    """
    Usage:
        controller = RetryController(bundler, gateway, progress=bus)
        outcome = await controller.run(groups, payer, ctx)
    """

    def __init__(
        self,
        bundler: Any,
        gateway: Any,
        policies: Optional[Mapping[ErrorKind, RetryPolicy]] = None,
        progress: Optional[ProgressBus] = None,
        max_global_retries: Optional[int] = None,
        jitter_max: Optional[float] = None,
        max_tip: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.bundler = bundler
        self.gateway = gateway
        self.policies = policies
        self.progress = progress
        self.max_global_retries = (
            Settings.MAX_GLOBAL_RETRIES if max_global_retries is None else max_global_retries
        )
        self.jitter_max = Settings.RETRY_JITTER_MAX_S if jitter_max is None else jitter_max
        self.max_tip = max_tip or Settings.MAX_TIP_LAMPORTS
        self._sleep = sleep
        self._rng = rng or random.Random()

        # Live state per operation id; runs may overlap on one controller
        self._active: Dict[str, ControllerState] = {}

        # Statistics
        self._runs = 0
        self._retries = 0
        self._fallbacks = 0
        self._finished: Dict[str, int] = {}

    def _emit(self, stage: ProgressStage, ctx: ExecutionContext, **data: Any) -> None:
        if self.progress is not None:
            self.progress.emit(ProgressEvent(stage, ctx.operation_id, data))

    def _delay(self, policy: RetryPolicy, attempt: int) -> float:
        delay = policy.delay_for(attempt)
        if policy.jitter and self.jitter_max > 0:
            delay += self._rng.uniform(0, self.jitter_max)
        return delay

    def state_of(self, operation_id: str) -> ControllerState:
        """Current state of a running operation; IDLE when none is running."""
        return self._active.get(operation_id, ControllerState.IDLE)

    async def run(
        self,
        groups: List[InstructionGroup],
        payer: str,
        ctx: ExecutionContext,
    ) -> ControllerOutcome:
        self._runs += 1
        self._active[ctx.operation_id] = ControllerState.IDLE
        try:
            return await self._run(groups, payer, ctx)
        finally:
            self._active.pop(ctx.operation_id, None)

    async def _run(
        self,
        groups: List[InstructionGroup],
        payer: str,
        ctx: ExecutionContext,
    ) -> ControllerOutcome:
        landed: Dict[int, str] = {}
        errors: List[OrchestrationError] = []
        attempts = 0
        retries = 0
        fell_back = False
        last: Optional[SubmissionResult] = None

        def enter(state: ControllerState) -> None:
            self._active[ctx.operation_id] = state

        def finish(state: ControllerState, error: Optional[OrchestrationError] = None) -> ControllerOutcome:
            enter(state)
            self._finished[state.value] = self._finished.get(state.value, 0) + 1
            order = sorted(landed)
            result = SubmissionResult(
                success=state == ControllerState.SUCCEEDED,
                method=last.method if last else SubmissionMethod.SEQUENTIAL,
                ids=[landed[i] for i in order],
                bundle_id=last.bundle_id if last else None,
                landed_groups=order,
                attempted_groups=last.attempted_groups if last else [],
                error=error,
                latency_ms=last.latency_ms if last else 0.0,
            )
            return ControllerOutcome(result, state, attempts, fell_back, errors)

        def cancelled() -> ControllerOutcome:
            reason = ctx.cancel_token.reason or "cancelled"
            Logger.warning(f"[RETRY] {ctx.operation_id} cancelled after {attempts} attempt(s): {reason}")
            return finish(ControllerState.CANCELLED, OrchestrationError(
                ErrorKind.UNKNOWN, f"Operation cancelled: {reason}", {"cancelled": True},
            ))

        while True:
            if ctx.cancel_token.cancelled:
                return cancelled()

            enter(ControllerState.ATTEMPTING)
            try:
                plan = await self.bundler.bundle(groups, payer, ctx, skip=landed.keys())
            except SigningError:
                # Never retried
                raise
            except COLLABORATOR_ERRORS as e:
                # Blockhash fetch failed: nothing was sent on this attempt
                attempts += 1
                atomic = self.bundler.will_bundle(len(groups), ctx, landed.keys())
                error = as_orchestration_error(e)
                Logger.warning(
                    f"[RETRY] {ctx.operation_id} could not prepare attempt {ctx.attempt}: "
                    f"{error.kind.value}: {error.message}"
                )
            else:
                if not plan.transactions:
                    return finish(ControllerState.SUCCEEDED)

                attempts += 1
                atomic = plan.atomic
                self._emit(
                    ProgressStage.ATTEMPT_STARTED, ctx,
                    attempt=ctx.attempt, atomic=plan.atomic, fallback=ctx.fallback,
                    transactions=len(plan.transactions),
                )
                last = await self.gateway.submit(plan, ctx)

                for index, signature in zip(last.landed_groups, last.ids):
                    if index not in landed:
                        landed[index] = signature
                        self._emit(ProgressStage.TRANSACTION_LANDED, ctx, group=index, signature=signature)

                if last.success:
                    Logger.success(
                        f"[RETRY] {ctx.operation_id} landed via {last.method.value} "
                        f"(attempt {ctx.attempt}{', fallback' if ctx.fallback else ''})"
                    )
                    return finish(ControllerState.SUCCEEDED)

                error = last.error or OrchestrationError(ErrorKind.UNKNOWN, "Submission failed without error")

            errors.append(error)
            self._emit(
                ProgressStage.ATTEMPT_FAILED, ctx,
                attempt=ctx.attempt, kind=error.kind.value, message=error.message,
            )

            policy = policy_for(error.kind, self.policies)
            if policy is not None and ctx.attempt < policy.max_retries:
                if retries >= self.max_global_retries:
                    Logger.warning(
                        f"[RETRY] {ctx.operation_id} hit global retry ceiling ({self.max_global_retries})"
                    )
                    return finish(ControllerState.EXHAUSTED, error)

                enter(ControllerState.RETRY_WAIT)
                delay = self._delay(policy, ctx.attempt)
                Logger.info(
                    f"[RETRY] {error.kind.value} on attempt {ctx.attempt}/{policy.max_retries}; "
                    f"retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
                retries += 1
                self._retries += 1
                if ctx.cancel_token.cancelled:
                    return cancelled()

                if policy.escalate_fee:
                    ctx.escalate(policy.fee_multiplier, self.max_tip)
                    self._emit(
                        ProgressStage.FEE_ESCALATED, ctx,
                        fee_micro_lamports=ctx.fee_micro_lamports, tip_lamports=ctx.tip_lamports,
                    )
                ctx.attempt += 1
                continue

            if atomic and not ctx.fallback and error.kind in FALLBACK_KINDS:
                enter(ControllerState.FALLING_BACK)
                ctx.fallback = True
                ctx.attempt = 1
                fell_back = True
                self._fallbacks += 1
                Logger.warning(
                    f"[RETRY] Atomic path exhausted ({error.kind.value}); falling back to sequential"
                )
                self._emit(ProgressStage.FALLBACK, ctx, kind=error.kind.value)
                continue

            Logger.error(
                f"[RETRY] {ctx.operation_id} exhausted: {error.kind.value} after {attempts} attempt(s)"
            )
            return finish(ControllerState.EXHAUSTED, error)

    def get_stats(self) -> dict:
        return {
            "runs": self._runs,
            "retries": self._retries,
            "fallbacks": self._fallbacks,
            "active": len(self._active),
            "finished": dict(self._finished),
        }
