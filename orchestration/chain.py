"""
Chain RPC boundary.

The orchestrator only ever talks to the network through ChainClient, so tests
and alternative providers can swap the implementation without touching the
submitter.
"""

import functools
import logging
import typing
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import click
import requests
from eth_account import Account
from eth_typing import ChecksumAddress
from eth_utils import keccak, to_checksum_address, to_hex
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception

from orchestration.exceptions import (
    OrchestrationError,
    RevertedError,
    TransactionRejectedError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

TxParams = Dict[str, Any]

TRANSIENT_MESSAGES = (
    "rate limit",
    "too many requests",
    "429",
    "timeout",
    "timed out",
    "connection reset",
    "temporarily unavailable",
    "header not found",
)

REJECTION_MESSAGES = (
    "nonce too low",
    "nonce too high",
    "insufficient funds",
    "replacement transaction underpriced",
    "intrinsic gas too low",
    "exceeds block gas limit",
    "invalid sender",
)

ALREADY_KNOWN_MESSAGES = ("already known", "known transaction")


class FeeParams(typing.NamedTuple):
    """EIP-1559 fee caps, in wei."""

    max_fee: int
    max_priority_fee: int

    def bump(self, factor: float) -> "FeeParams":
        return FeeParams(
            max_fee=int(self.max_fee * factor) + 1,
            max_priority_fee=int(self.max_priority_fee * factor) + 1,
        )


class TxReceipt(typing.NamedTuple):
    tx_hash: str
    block_number: int
    status: int
    contract_address: Optional[ChecksumAddress] = None
    gas_used: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainClient(ABC):
    """Opaque network service: latency, rate limits and reorgs are expected."""

    @property
    @abstractmethod
    def chain_id(self) -> int:
        raise NotImplementedError

    @property
    @abstractmethod
    def sender(self) -> ChecksumAddress:
        """Address of the account that signs submitted transactions."""
        raise NotImplementedError

    @abstractmethod
    def get_block_number(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def estimate_gas(self, tx: TxParams) -> int:
        raise NotImplementedError

    @abstractmethod
    def suggest_fees(self) -> FeeParams:
        raise NotImplementedError

    @abstractmethod
    def get_transaction_count(self, address: ChecksumAddress) -> int:
        """Next nonce for the address, including pending transactions."""
        raise NotImplementedError

    @abstractmethod
    def send_transaction(self, tx: TxParams) -> str:
        """Signs and broadcasts; returns the transaction hash."""
        raise NotImplementedError

    @abstractmethod
    def get_transaction_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Returns None while the transaction is not included."""
        raise NotImplementedError

    @abstractmethod
    def get_storage_at(self, address: ChecksumAddress, slot: int) -> bytes:
        raise NotImplementedError


#
# Signing
#


class Signer(ABC):
    @property
    @abstractmethod
    def address(self) -> ChecksumAddress:
        raise NotImplementedError

    @abstractmethod
    def sign_transaction(self, tx: TxParams) -> bytes:
        """Returns the raw signed transaction."""
        raise NotImplementedError


class LocalAccountSigner(Signer):
    """Signs with an in-memory eth-account key."""

    def __init__(self, account):
        self._account = account

    @classmethod
    def from_key(cls, private_key: str) -> "LocalAccountSigner":
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> ChecksumAddress:
        return to_checksum_address(self._account.address)

    def sign_transaction(self, tx: TxParams) -> bytes:
        signed = self._account.sign_transaction(tx)
        # eth-account < 0.13 only exposes the camelCase attribute
        raw = getattr(signed, "raw_transaction", None) or signed.rawTransaction
        return bytes(raw)


#
# Error mapping
#


def _message(error: Exception) -> str:
    if error.args and isinstance(error.args[0], dict):
        return str(error.args[0].get("message", error.args[0]))
    return str(error)


def classify_rpc_error(error: Exception) -> OrchestrationError:
    """Maps a provider exception onto the orchestration error taxonomy."""
    if isinstance(error, OrchestrationError):
        return error
    if isinstance(error, ContractLogicError):
        return RevertedError(f"Execution reverted: {_message(error)}")
    if isinstance(
        error, (requests.ConnectionError, requests.Timeout, ConnectionError, TimeoutError)
    ):
        return TransientNetworkError(f"Network error: {error}")
    if isinstance(error, requests.HTTPError):
        status = getattr(error.response, "status_code", None)
        if status == 429 or (status is not None and status >= 500):
            return TransientNetworkError(f"HTTP {status} from RPC endpoint")
        return TransactionRejectedError(f"HTTP error from RPC endpoint: {error}")

    message = _message(error).lower()
    if "revert" in message:
        return RevertedError(f"Execution reverted: {_message(error)}")
    if any(fragment in message for fragment in REJECTION_MESSAGES):
        return TransactionRejectedError(f"Transaction rejected: {_message(error)}")
    if any(fragment in message for fragment in TRANSIENT_MESSAGES):
        return TransientNetworkError(f"Transient RPC error: {_message(error)}")
    return TransactionRejectedError(f"RPC error: {_message(error)}")


def _rpc(method):
    """Re-raises provider errors as orchestration errors."""

    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except OrchestrationError:
            raise
        except (Web3Exception, ValueError, requests.RequestException, OSError) as e:
            raise classify_rpc_error(e) from e

    return wrapper


class Web3ChainClient(ChainClient):
    """ChainClient backed by a web3.py connection."""

    def __init__(self, web3: Web3, signer: Signer):
        self.web3 = web3
        self.signer = signer
        self._chain_id: Optional[int] = None

    @classmethod
    def from_rpc_url(cls, rpc_url: str, signer: Signer) -> "Web3ChainClient":
        return cls(web3=Web3(Web3.HTTPProvider(rpc_url)), signer=signer)

    @property
    @_rpc
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(self.web3.eth.chain_id)
        return self._chain_id

    @property
    def sender(self) -> ChecksumAddress:
        return self.signer.address

    @_rpc
    def get_block_number(self) -> int:
        return int(self.web3.eth.block_number)

    @_rpc
    def estimate_gas(self, tx: TxParams) -> int:
        params = {k: v for k, v in tx.items() if k in ("from", "to", "data", "value")}
        return int(self.web3.eth.estimate_gas(params))

    @_rpc
    def suggest_fees(self) -> FeeParams:
        latest = self.web3.eth.get_block("latest")
        base_fee = latest.get("baseFeePerGas")
        priority_fee = int(self.web3.eth.max_priority_fee)
        if base_fee is None:
            # pre-London chain; legacy gas price doubles as both caps
            gas_price = int(self.web3.eth.gas_price)
            return FeeParams(max_fee=gas_price, max_priority_fee=gas_price)
        return FeeParams(max_fee=2 * int(base_fee) + priority_fee, max_priority_fee=priority_fee)

    @_rpc
    def get_transaction_count(self, address: ChecksumAddress) -> int:
        return int(self.web3.eth.get_transaction_count(address, "pending"))

    def _sign(self, tx: TxParams) -> bytes:
        try:
            return self.signer.sign_transaction(tx)
        except (OrchestrationError, click.Abort):
            raise
        except Exception as e:
            raise TransactionRejectedError(f"Signing failed: {e}") from e

    def send_transaction(self, tx: TxParams) -> str:
        raw = self._sign(tx)
        tx_hash = to_hex(keccak(raw))
        try:
            return self._send_raw(raw)
        except TransactionRejectedError as e:
            if any(fragment in str(e).lower() for fragment in ALREADY_KNOWN_MESSAGES):
                logger.info("Transaction %s already in mempool", tx_hash)
                return tx_hash
            raise

    @_rpc
    def _send_raw(self, raw: bytes) -> str:
        return to_hex(self.web3.eth.send_raw_transaction(raw))

    @_rpc
    def get_transaction_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        if receipt is None or receipt.get("blockNumber") is None:
            return None
        contract_address = receipt.get("contractAddress")
        return TxReceipt(
            tx_hash=to_hex(HexBytes(receipt["transactionHash"])),
            block_number=int(receipt["blockNumber"]),
            status=int(receipt.get("status", 1)),
            contract_address=to_checksum_address(contract_address) if contract_address else None,
            gas_used=int(receipt.get("gasUsed", 0)),
        )

    @_rpc
    def get_storage_at(self, address: ChecksumAddress, slot: int) -> bytes:
        return bytes(self.web3.eth.get_storage_at(address, slot))
