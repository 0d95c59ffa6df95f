import logging
import threading
from collections import Counter, OrderedDict
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional

import click

from orchestration.artifacts import ArtifactStore
from orchestration.calls import CallBuilder
from orchestration.chain import ChainClient
from orchestration.config import OrchestratorConfig
from orchestration.exceptions import OrchestrationError, PlanError
from orchestration.executor import StepExecutor, StepResult, StepState
from orchestration.ledger import Ledger
from orchestration.params import ParameterResolver
from orchestration.plan import Plan
from orchestration.transactions import NonceSequencer, TransactionSubmitter

logger = logging.getLogger(__name__)

SUCCESSFUL_STATES = frozenset({StepState.DONE, StepState.SKIPPED, StepState.VALIDATED})


class RunReport:
    """Terminal state of every step of a run, plus the addresses of completed ones."""

    def __init__(self, plan_id: str, results: List[StepResult], dry_run: bool = False):
        self.plan_id = plan_id
        self.results = results
        self.dry_run = dry_run

    @property
    def states(self) -> Dict[str, StepState]:
        return OrderedDict((r.name, r.state) for r in self.results)

    @property
    def counts(self) -> Dict[StepState, int]:
        return Counter(r.state for r in self.results)

    @property
    def addresses(self) -> Dict[str, str]:
        return OrderedDict(
            (r.name, r.address) for r in self.results if r.state == StepState.DONE
        )

    @property
    def transactions(self) -> int:
        return sum(r.transactions for r in self.results)

    @property
    def succeeded(self) -> bool:
        return all(r.state in SUCCESSFUL_STATES for r in self.results)

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def __getitem__(self, step_name: str) -> StepResult:
        for result in self.results:
            if result.name == step_name:
                return result
        raise KeyError(step_name)

    def table(self) -> str:
        """Per-step status table."""
        rows = [("STEP", "KIND", "STATUS", "ADDRESS / DETAIL")]
        for r in self.results:
            if r.state == StepState.BLOCKED:
                detail = f"blocked by {r.blocked_by}"
            elif r.error is not None:
                detail = f"{type(r.error).__name__}: {r.error}"
            else:
                detail = r.address or ""
            rows.append((r.name, r.step.kind.value, r.state.value, detail))
        widths = [max(len(row[i]) for row in rows) for i in range(3)]
        lines = [
            "  ".join(cell.ljust(width) for cell, width in zip(row[:3], widths)) + "  " + row[3]
            for row in rows
        ]
        return "\n".join(line.rstrip() for line in lines)

    def summary(self) -> str:
        counts = self.counts
        parts = [f"{state.value}={counts[state]}" for state in StepState if counts.get(state)]
        mode = "dry run" if self.dry_run else "run"
        return f"Plan {self.plan_id} {mode}: {', '.join(parts)}"


class Orchestrator:
    """
    Loads a plan, validates it and drives the step executor.

    Validation and structural errors abort before anything is sent; per-step
    runtime failures are reported in the RunReport instead.
    """

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        client: Optional[ChainClient] = None,
        artifacts: Optional[ArtifactStore] = None,
        sequencer: Optional[NonceSequencer] = None,
    ):
        self.config = config or OrchestratorConfig()
        self.client = client
        self.artifacts = artifacts
        self.sequencer = sequencer or NonceSequencer()

    def _artifacts_for(self, plan: Plan) -> Optional[ArtifactStore]:
        if self.artifacts is not None:
            return self.artifacts
        if plan.artifacts_dir is not None:
            return ArtifactStore(plan.artifacts_dir)
        return None

    def _check_chain(self, plan: Plan) -> None:
        if self.client is None or plan.chain_id is None:
            return
        if plan.chain_id != self.client.chain_id:
            raise PlanError(
                f"chain_id in plan file ({plan.chain_id}) does not match "
                f"chain_id of current network ({self.client.chain_id})."
            )

    def build_executor(
        self,
        plan: Plan,
        plan_id: Optional[str] = None,
        confirmations: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
        config: Optional[OrchestratorConfig] = None,
    ) -> StepExecutor:
        config = config or self.config
        plan_id = plan_id or plan.plan_id
        chain_id = plan.chain_id
        if chain_id is None and self.client is not None:
            chain_id = self.client.chain_id
        ledger = Ledger.open(plan_id=plan_id, directory=config.ledger_dir, chain_id=chain_id)
        artifacts = self._artifacts_for(plan)
        deployer = self.client.sender if self.client is not None else None
        submitter = None
        if self.client is not None:
            submitter = TransactionSubmitter(self.client, config=config, sequencer=self.sequencer)
        return StepExecutor(
            plan=plan,
            ledger=ledger,
            resolver=ParameterResolver(plan, artifacts=artifacts, deployer=deployer),
            call_builder=CallBuilder(artifacts, client=self.client),
            submitter=submitter,
            confirmations=confirmations if confirmations is not None else config.confirmations,
            cancel=cancel,
        )

    def run(
        self,
        plan: Plan,
        dry_run: bool = False,
        plan_id: Optional[str] = None,
        confirmations: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> RunReport:
        plan.validate()  # raises CyclicPlanError before any transaction
        self._check_chain(plan)
        config = self.config.merged(**plan.settings) if plan.settings else self.config
        executor = self.build_executor(plan, plan_id, confirmations, cancel, config=config)
        plan_id = executor.ledger.plan_id

        if dry_run:
            click.echo(f"Validating plan {plan_id} ({len(plan)} steps, dry run)...")
            results = executor.preflight(collect=True)
            return RunReport(plan_id=plan_id, results=results, dry_run=True)

        if self.client is None:
            raise OrchestrationError("A chain client is required unless running dry.")

        click.echo(f"Validating plan {plan_id} ({len(plan)} steps)...")
        executor.preflight()
        click.echo(f"Executing plan {plan_id} as {self.client.sender}...")
        results = executor.execute()
        report = RunReport(plan_id=plan_id, results=results)
        logger.info(report.summary())
        return report

    def run_many(
        self,
        plans: List[Plan],
        max_workers: int = 4,
        dry_run: bool = False,
        confirmations: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[RunReport]:
        """
        Runs independent plans concurrently. Each plan is still executed
        sequentially; nonces for a shared signing account go through one sequencer.
        """
        plan_ids = [plan.plan_id for plan in plans]
        duplicates = {plan_id for plan_id in plan_ids if plan_ids.count(plan_id) > 1}
        if duplicates:
            repeated = ", ".join(sorted(duplicates))
            raise PlanError(f"Plans must have distinct ids; repeated: {repeated}")

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = [
                pool.submit(
                    self.run, plan, dry_run=dry_run, confirmations=confirmations, cancel=cancel
                )
                for plan in plans
            ]
            return [future.result() for future in futures]


def load_plans(filepaths: List[Path], plan_id: Optional[str] = None) -> List[Plan]:
    if plan_id and len(filepaths) > 1:
        raise PlanError("--plan-id can only be used with a single plan file.")
    return [Plan.from_yaml(filepath, plan_id=plan_id) for filepath in filepaths]
