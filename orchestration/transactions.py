import logging
import random
import threading
import time
import typing
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address, to_hex

from orchestration.chain import ChainClient, FeeParams, TxParams, TxReceipt
from orchestration.config import OrchestratorConfig
from orchestration.exceptions import (
    CancelledError,
    ConfirmationTimeoutError,
    RevertedError,
    TransactionRejectedError,
    TransientNetworkError,
)
from orchestration.ledger import ResolvedAddress, utc_timestamp

logger = logging.getLogger(__name__)


class CallSpec(typing.NamedTuple):
    """A single on-chain call; `to` is None for contract creation."""

    step_name: str
    data: bytes
    to: Optional[ChecksumAddress] = None
    value: int = 0
    record_as: Optional[ChecksumAddress] = None

    @property
    def is_deployment(self) -> bool:
        return self.to is None


class GasParams(typing.NamedTuple):
    gas_limit: int
    max_fee: int
    max_priority_fee: int


class TxStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"


class TxAttempt:
    """One broadcast of a step's transaction; kept for the duration of the run only."""

    def __init__(self, step: str, attempt_number: int, nonce: int, gas_params: GasParams):
        self.step = step
        self.attempt_number = attempt_number
        self.nonce = nonce
        self.gas_params = gas_params
        self.status = TxStatus.PENDING
        self.tx_hash: Optional[str] = None

    def __repr__(self):
        return (
            f"TxAttempt(step={self.step}, attempt={self.attempt_number}, "
            f"nonce={self.nonce}, status={self.status.value}, tx_hash={self.tx_hash})"
        )


class NonceSequencer:
    """
    Hands out nonces for each signing account.

    A sequencer owns an account's counter while `reserve` is held, so concurrent
    plans signing with the same account cannot collide.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[ChecksumAddress, threading.Lock] = dict()
        self._next: Dict[ChecksumAddress, int] = dict()

    def _lock_for(self, address: ChecksumAddress) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(address, threading.Lock())

    @contextmanager
    def reserve(self, client: ChainClient) -> Iterator["NonceReservation"]:
        address = to_checksum_address(client.sender)
        with self._lock_for(address):
            chain_nonce = client.get_transaction_count(address)
            nonce = max(chain_nonce, self._next.get(address, 0))
            reservation = NonceReservation(address, nonce)
            yield reservation
            if reservation.used:
                self._next[address] = nonce + 1


class NonceReservation:
    def __init__(self, address: ChecksumAddress, nonce: int):
        self.address = address
        self.nonce = nonce
        self.used = False


class TransactionSubmitter:
    """
    Estimates, signs, broadcasts and confirms a single call.

    Transient RPC failures are retried with jittered exponential backoff.
    Deterministic rejections (reverts, bad nonces, insufficient funds) are raised
    immediately. A transaction that stays out of blocks for `stuck_after` polls is
    replaced at the same nonce with bumped fees.
    """

    def __init__(
        self,
        client: ChainClient,
        config: Optional[OrchestratorConfig] = None,
        sequencer: Optional[NonceSequencer] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.client = client
        self.config = config or OrchestratorConfig()
        self.sequencer = sequencer or NonceSequencer()
        self.clock = clock
        self.rng = rng or random.Random()
        self.attempts: List[TxAttempt] = list()

    #
    # Retry helpers
    #

    def _backoff(self, retry: int) -> float:
        delay = min(self.config.retry_backoff * (2**retry), self.config.max_poll_interval)
        return delay * (0.5 + self.rng.random() / 2)

    def _wait(self, seconds: float, cancel: threading.Event, tx_hash: Optional[str] = None):
        if cancel.wait(seconds):
            raise CancelledError("Confirmation wait cancelled by caller.", tx_hash=tx_hash)

    def _with_retries(self, description: str, fn, cancel: threading.Event):
        retry = 0
        while True:
            try:
                return fn()
            except TransientNetworkError as e:
                if retry >= self.config.max_retries:
                    logger.error("%s failed after %d retries: %s", description, retry, e)
                    raise
                delay = self._backoff(retry)
                retry += 1
                logger.warning(
                    "%s failed (%s); retry %d/%d in %.2fs",
                    description,
                    e,
                    retry,
                    self.config.max_retries,
                    delay,
                )
                self._wait(delay, cancel)

    #
    # Submission
    #

    def _base_tx(self, call: CallSpec) -> TxParams:
        tx = {
            "from": self.client.sender,
            "data": to_hex(call.data),
            "value": call.value,
        }
        if call.to is not None:
            tx["to"] = call.to
        return tx

    def _signed_tx(self, base: TxParams, nonce: int, gas: GasParams) -> TxParams:
        tx = dict(base)
        tx.update(
            {
                "chainId": self.client.chain_id,
                "nonce": nonce,
                "gas": gas.gas_limit,
                "maxFeePerGas": gas.max_fee,
                "maxPriorityFeePerGas": gas.max_priority_fee,
                "type": 2,
            }
        )
        return tx

    def submit(
        self,
        call: CallSpec,
        confirmations: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
        on_broadcast: Optional[Callable[[TxAttempt], None]] = None,
    ) -> ResolvedAddress:
        """
        Returns the outcome once the transaction is `confirmations` blocks deep.

        Raises ConfirmationTimeoutError when the deadline passes first; the caller's
        ledger is not touched so the step can be retried safely.
        """
        confirmations = self.config.confirmations if confirmations is None else confirmations
        cancel = cancel or threading.Event()
        base = self._base_tx(call)

        estimate = self._with_retries(
            f"Gas estimation for {call.step_name}",
            lambda: self.client.estimate_gas(base),
            cancel,
        )
        gas_limit = int(estimate * self.config.gas_multiplier)
        fees: FeeParams = self._with_retries(
            "Fee suggestion", self.client.suggest_fees, cancel
        )

        with self.sequencer.reserve(self.client) as reservation:
            attempt = self._broadcast(call, base, reservation.nonce, gas_limit, fees, 1, cancel)
            reservation.used = True
        if on_broadcast is not None:
            on_broadcast(attempt)

        return self._confirm(call, base, attempt, confirmations, cancel)

    def _broadcast(
        self,
        call: CallSpec,
        base: TxParams,
        nonce: int,
        gas_limit: int,
        fees: FeeParams,
        attempt_number: int,
        cancel: threading.Event,
    ) -> TxAttempt:
        gas = GasParams(gas_limit, fees.max_fee, fees.max_priority_fee)
        attempt = TxAttempt(call.step_name, attempt_number, nonce, gas)
        tx = self._signed_tx(base, nonce, gas)
        attempt.tx_hash = self._with_retries(
            f"Broadcast of {call.step_name}", lambda: self.client.send_transaction(tx), cancel
        )
        self.attempts.append(attempt)
        logger.info(
            "Sent %s (attempt %d, nonce %d, max fee %d): %s",
            call.step_name,
            attempt_number,
            nonce,
            gas.max_fee,
            attempt.tx_hash,
        )
        return attempt

    def _poll_receipt(self, attempts: List[TxAttempt], cancel: threading.Event):
        """Returns (attempt, receipt) for whichever broadcast got included, if any."""
        for attempt in attempts:
            receipt = self._with_retries(
                f"Receipt lookup for {attempt.tx_hash}",
                lambda: self.client.get_transaction_receipt(attempt.tx_hash),
                cancel,
            )
            if receipt is not None:
                return attempt, receipt
        return None, None

    def _confirm(
        self,
        call: CallSpec,
        base: TxParams,
        first_attempt: TxAttempt,
        confirmations: int,
        cancel: threading.Event,
    ) -> ResolvedAddress:
        deadline = self.clock() + self.config.confirmation_timeout
        attempts = [first_attempt]
        interval = self.config.poll_interval
        polls_without_inclusion = 0

        while True:
            if self.clock() >= deadline:
                for attempt in attempts:
                    attempt.status = TxStatus.TIMED_OUT
                raise ConfirmationTimeoutError(
                    f"{call.step_name} not confirmed within "
                    f"{self.config.confirmation_timeout}s",
                    tx_hash=attempts[-1].tx_hash,
                )

            try:
                attempt, receipt = self._poll_receipt(attempts, cancel)
                head = None
                if receipt is not None:
                    head = self._with_retries("Block number", self.client.get_block_number, cancel)
            except TransientNetworkError as e:
                raise ConfirmationTimeoutError(
                    f"{call.step_name} confirmation could not be observed: {e}",
                    tx_hash=attempts[-1].tx_hash,
                ) from e

            if receipt is not None:
                polls_without_inclusion = 0
                if not receipt.succeeded:
                    attempt.status = TxStatus.REVERTED
                    raise RevertedError(
                        f"{call.step_name} reverted in block {receipt.block_number}",
                        tx_hash=receipt.tx_hash,
                    )
                depth = head - receipt.block_number
                if depth >= confirmations:
                    attempt.status = TxStatus.CONFIRMED
                    return self._outcome(call, receipt)
                logger.debug(
                    "%s included in block %d; %d/%d confirmations",
                    call.step_name,
                    receipt.block_number,
                    depth,
                    confirmations,
                )
            else:
                polls_without_inclusion += 1
                if (
                    polls_without_inclusion >= self.config.stuck_after
                    and len(attempts) <= self.config.max_fee_bumps
                ):
                    replacement = self._replace(call, base, attempts[-1], cancel)
                    if replacement not in attempts:
                        attempts.append(replacement)
                    polls_without_inclusion = 0

            self._wait(interval, cancel, tx_hash=attempts[-1].tx_hash)
            interval = min(interval * 2 or self.config.poll_interval, self.config.max_poll_interval)

    def _replace(
        self, call: CallSpec, base: TxParams, stuck: TxAttempt, cancel: threading.Event
    ) -> TxAttempt:
        fees = FeeParams(stuck.gas_params.max_fee, stuck.gas_params.max_priority_fee)
        bumped = fees.bump(self.config.fee_bump)
        logger.warning(
            "%s stuck at nonce %d; replacing with max fee %d -> %d",
            call.step_name,
            stuck.nonce,
            fees.max_fee,
            bumped.max_fee,
        )
        try:
            return self._broadcast(
                call,
                base,
                stuck.nonce,
                stuck.gas_params.gas_limit,
                bumped,
                stuck.attempt_number + 1,
                cancel,
            )
        except TransactionRejectedError as e:
            if "nonce too low" in str(e).lower():
                # an earlier broadcast was mined in the meantime; keep polling it
                logger.info("Replacement for %s not needed: %s", call.step_name, e)
                return stuck
            raise

    def _outcome(self, call: CallSpec, receipt: TxReceipt) -> ResolvedAddress:
        address = receipt.contract_address if call.is_deployment else (call.record_as or call.to)
        if address is None:
            raise RevertedError(
                f"{call.step_name} was mined without creating a contract",
                tx_hash=receipt.tx_hash,
            )
        return ResolvedAddress(
            step_name=call.step_name,
            address=to_checksum_address(address),
            block_number=receipt.block_number,
            tx_hash=receipt.tx_hash,
            timestamp=utc_timestamp(),
        )

    def transaction_count(self, step_name: str) -> int:
        return sum(1 for attempt in self.attempts if attempt.step == step_name)
