from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict

from orchestration.constants import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_CONFIRMATIONS,
    DEFAULT_FEE_BUMP,
    DEFAULT_GAS_MULTIPLIER,
    DEFAULT_LEDGER_DIR,
    DEFAULT_MAX_FEE_BUMPS,
    DEFAULT_MAX_POLL_INTERVAL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_RETRY_BACKOFF,
    DEFAULT_STUCK_AFTER,
    MIN_FEE_BUMP,
)
from orchestration.exceptions import PlanError


@dataclass(frozen=True)
class OrchestratorConfig:
    """Submission and persistence settings for a run."""

    confirmations: int = DEFAULT_CONFIRMATIONS
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_poll_interval: float = DEFAULT_MAX_POLL_INTERVAL
    confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff: float = DEFAULT_RETRY_BACKOFF
    stuck_after: int = DEFAULT_STUCK_AFTER
    fee_bump: float = DEFAULT_FEE_BUMP
    max_fee_bumps: int = DEFAULT_MAX_FEE_BUMPS
    gas_multiplier: float = DEFAULT_GAS_MULTIPLIER
    ledger_dir: Path = field(default=DEFAULT_LEDGER_DIR)

    def __post_init__(self):
        if self.confirmations < 0:
            raise PlanError("confirmations must be zero or more.")
        if self.max_retries < 0:
            raise PlanError("max_retries must be zero or more.")
        if self.fee_bump < MIN_FEE_BUMP:
            raise PlanError(f"fee_bump must be at least {MIN_FEE_BUMP}.")
        if self.gas_multiplier < 1:
            raise PlanError("gas_multiplier must be at least 1.")
        object.__setattr__(self, "ledger_dir", Path(self.ledger_dir))

    @classmethod
    def from_dict(cls, settings: Dict[str, Any]) -> "OrchestratorConfig":
        return cls().merged(**settings)

    def merged(self, **overrides) -> "OrchestratorConfig":
        """Returns a copy with every non-None override applied."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise PlanError(f"Unknown orchestrator setting(s): {', '.join(sorted(unknown))}")
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
