"""Errors raised while loading, validating and executing deployment plans."""

from typing import Optional, Sequence


class OrchestrationError(Exception):
    """Base exception for orchestration errors."""


#
# Plan structure
#


class PlanError(OrchestrationError, ValueError):
    """Raised when a plan document is malformed."""


class CyclicPlanError(PlanError):
    """Raised when step dependencies do not form a DAG."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


#
# Parameters
#


class ValidationError(OrchestrationError, ValueError):
    """Raised when a step parameter is malformed or out of range."""

    def __init__(self, field: str, message: str, step: Optional[str] = None):
        self.field = field
        self.message = message
        self.step = step
        location = f"{step}.{field}" if step else field
        super().__init__(f"Invalid parameter '{location}': {message}")


class UnresolvedReferenceError(OrchestrationError, LookupError):
    """Raised when a step reference points to a step missing from the ledger."""

    def __init__(self, reference: str, step: Optional[str] = None):
        self.reference = reference
        self.step = step
        super().__init__(
            f"Step '{step}' references '{reference}' which has no ledger entry; "
            "check the plan's dependency order."
        )


#
# Ledger
#


class DuplicateStepError(OrchestrationError, ValueError):
    """Raised when a ledger entry already exists for a step."""

    def __init__(self, plan_id: str, step_name: str):
        self.plan_id = plan_id
        self.step_name = step_name
        super().__init__(f"Ledger already has an entry for '{step_name}' in plan '{plan_id}'.")


#
# Transactions
#


class TransactionError(OrchestrationError):
    """Base exception for transaction submission errors."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        self.tx_hash = tx_hash
        super().__init__(message)


class TransientNetworkError(TransactionError, ConnectionError):
    """Raised for retryable RPC failures (connection reset, rate limiting)."""


class TransactionRejectedError(TransactionError):
    """Raised when the network deterministically rejects a transaction."""


class RevertedError(TransactionRejectedError):
    """Raised when a call or transaction reverts."""


class ConfirmationTimeoutError(TransactionError, TimeoutError):
    """Raised when a transaction is not confirmed within the configured timeout."""


class CancelledError(TransactionError):
    """Raised when the caller aborts a confirmation wait."""
