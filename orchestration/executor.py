import logging
import threading
from collections import OrderedDict
from enum import Enum
from typing import List, Optional

import click

from orchestration.calls import CallBuilder
from orchestration.exceptions import (
    CancelledError,
    OrchestrationError,
    PlanError,
    UnresolvedReferenceError,
    ValidationError,
)
from orchestration.ledger import Ledger, ResolvedAddress
from orchestration.params import ParameterResolver, ResolvedParameters, describe
from orchestration.plan import DeploymentStep, Plan
from orchestration.transactions import TransactionSubmitter

logger = logging.getLogger(__name__)


class StepState(Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"
    BLOCKED = "blocked"
    VALIDATED = "validated"  # dry runs only

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {StepState.DONE, StepState.SKIPPED, StepState.FAILED, StepState.BLOCKED, StepState.VALIDATED}
)

VALIDATION_ERRORS = (ValidationError, UnresolvedReferenceError, PlanError)


class StepResult:
    """Observable progress of one step through the executor's state machine."""

    def __init__(self, step: DeploymentStep):
        self.step = step
        self.state = StepState.PENDING
        self.entry: Optional[ResolvedAddress] = None
        self.error: Optional[Exception] = None
        self.blocked_by: Optional[str] = None
        self.transactions = 0

    @property
    def name(self) -> str:
        return self.step.name

    @property
    def address(self) -> Optional[str]:
        return self.entry.address if self.entry else None

    def transition(self, state: StepState) -> None:
        logger.debug("%s: %s -> %s", self.name, self.state.value, state.value)
        self.state = state

    def __repr__(self):
        return f"StepResult({self.name}, {self.state.value})"


class StepExecutor:
    """
    Drives each step of a plan through
    pending -> validating -> submitting -> confirming -> done,
    skipping steps already in the ledger and blocking dependents of failed steps.

    Completed steps are never rolled back when a later step fails.
    """

    def __init__(
        self,
        plan: Plan,
        ledger: Ledger,
        resolver: ParameterResolver,
        call_builder: CallBuilder,
        submitter: Optional[TransactionSubmitter] = None,
        confirmations: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.plan = plan
        self.ledger = ledger
        self.resolver = resolver
        self.call_builder = call_builder
        self.submitter = submitter
        self.confirmations = confirmations
        self.cancel = cancel or threading.Event()

    def _new_results(self) -> "OrderedDict[str, StepResult]":
        return OrderedDict((step.name, StepResult(step)) for step in self.plan.execution_order())

    def preflight(self, collect: bool = False) -> List[StepResult]:
        """
        Validates every pending step without sending anything.

        References to dependencies that have not run yet resolve to the zero
        address. Unless `collect` is set, the first validation error is raised.
        """
        results = self._new_results()
        snapshot = self.ledger.snapshot()
        for name, result in results.items():
            if name in snapshot:
                result.entry = snapshot[name]
                result.transition(StepState.SKIPPED)
                continue
            result.transition(StepState.VALIDATING)
            try:
                resolved = self.resolver.resolve(result.step, snapshot, eager=True)
                self.call_builder.build(result.step, resolved)
            except VALIDATION_ERRORS as e:
                if not collect:
                    raise
                result.error = e
                result.transition(StepState.FAILED)
                continue
            result.transition(StepState.VALIDATED)
        return list(results.values())

    def execute(self) -> List[StepResult]:
        if self.submitter is None:
            raise OrchestrationError("A transaction submitter is required to execute a plan.")

        results = self._new_results()
        for name, result in results.items():
            blocker = self._blocker(result.step, results)
            if blocker is not None:
                result.blocked_by = blocker
                result.transition(StepState.BLOCKED)
                click.echo(f"(!) {name} blocked by {blocker}")
                continue
            self._execute_step(result)
        return list(results.values())

    def _blocker(self, step: DeploymentStep, results: "OrderedDict[str, StepResult]"):
        for dependency in step.depends_on:
            if results[dependency].state in (StepState.FAILED, StepState.BLOCKED):
                return dependency
        return None

    def _execute_step(self, result: StepResult) -> None:
        step = result.step

        existing = self.ledger.get(step.name)
        if existing is not None:
            result.entry = existing
            result.transition(StepState.SKIPPED)
            click.echo(f"(i) {step.name} already recorded at {existing.address}; skipping.")
            return

        try:
            if self.cancel.is_set():
                raise CancelledError("Run cancelled before the step started.")
            result.transition(StepState.VALIDATING)
            resolved = self.resolver.resolve(step, self.ledger.snapshot())
            call = self.call_builder.build(step, resolved)
            self._announce(step, resolved)

            result.transition(StepState.SUBMITTING)
            sent_before = self.submitter.transaction_count(step.name)
            try:
                entry = self.submitter.submit(
                    call,
                    confirmations=self.confirmations,
                    cancel=self.cancel,
                    on_broadcast=lambda attempt: result.transition(StepState.CONFIRMING),
                )
            finally:
                result.transactions = self.submitter.transaction_count(step.name) - sent_before

            entry = entry._replace(kind=step.kind.value, contract=step.contract)
            result.entry = self.ledger.put(step.name, entry)
            result.transition(StepState.DONE)
            click.echo(f"(i) {step.name} done at {entry.address} (tx {entry.tx_hash}).")
        except OrchestrationError as e:
            result.error = e
            result.transition(StepState.FAILED)
            logger.error("Step %s failed: %s", step.name, e)
            click.echo(f"(!) {step.name} failed: {e}")
        except click.Abort:
            raise
        except Exception as e:
            result.error = e
            result.transition(StepState.FAILED)
            logger.exception("Step %s failed unexpectedly", step.name)
            click.echo(f"(!) {step.name} failed: {type(e).__name__}: {e}")

    def _announce(self, step: DeploymentStep, resolved: ResolvedParameters) -> None:
        subject = step.contract or ""
        if step.method:
            subject = f"{subject}.{step.method}"
        click.echo(f"\n{step.kind.value.capitalize()} {step.name} ({subject})")
        for name, value in describe(resolved).items():
            click.echo(f"\t{name}={value}")
