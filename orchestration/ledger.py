import threading
import typing
from collections import OrderedDict, defaultdict
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, NamedTuple, Optional

import click
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from orchestration.constants import LEDGER_FILE_SUFFIX
from orchestration.exceptions import DuplicateStepError, PlanError
from orchestration.utils import _dump_json_atomic, _load_json

ChainId = int
StepName = str

STANDARD_LEDGER_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}


class ResolvedAddress(NamedTuple):
    """Outcome of a confirmed step; written once, never mutated."""

    step_name: StepName
    address: ChecksumAddress
    block_number: int
    tx_hash: str
    timestamp: str = ""
    kind: Optional[str] = None
    contract: Optional[str] = None

    def to_json(self) -> Dict:
        return {
            "address": self.address,
            "tx_hash": self.tx_hash,
            "block_number": int(self.block_number),
            "timestamp": self.timestamp,
            "kind": self.kind,
            "contract": self.contract,
        }

    @classmethod
    def from_json(cls, step_name: StepName, data: Dict) -> "ResolvedAddress":
        return cls(
            step_name=step_name,
            address=to_checksum_address(data["address"]),
            block_number=int(data["block_number"]),
            tx_hash=data["tx_hash"],
            timestamp=data.get("timestamp", ""),
            kind=data.get("kind"),
            contract=data.get("contract"),
        )


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# Ledgers opened on the same file share one lock, whichever instance writes.
_FILE_LOCKS: Dict[Path, threading.Lock] = dict()
_FILE_LOCKS_GUARD = threading.Lock()


def _lock_for(filepath: Path) -> threading.Lock:
    key = filepath.resolve()
    with _FILE_LOCKS_GUARD:
        return _FILE_LOCKS.setdefault(key, threading.Lock())


class Ledger:
    """
    Durable, append-only record of completed steps for one plan.

    Entries are keyed by step name inside a JSON file named after the plan id,
    so an interrupted run can be resumed by re-reading the file.
    Reads go through an immutable snapshot and never take the lock.
    """

    def __init__(self, plan_id: str, filepath: Path, chain_id: Optional[ChainId] = None):
        self.plan_id = plan_id
        self.filepath = Path(filepath)
        self.chain_id = chain_id
        self._lock = _lock_for(self.filepath)
        self._entries: Mapping[StepName, ResolvedAddress] = MappingProxyType(self._read())

    @classmethod
    def open(
        cls, plan_id: str, directory: Path, chain_id: Optional[ChainId] = None
    ) -> "Ledger":
        filepath = Path(directory) / f"{plan_id}{LEDGER_FILE_SUFFIX}"
        return cls(plan_id=plan_id, filepath=filepath, chain_id=chain_id)

    def _read(self) -> "OrderedDict[StepName, ResolvedAddress]":
        entries = OrderedDict()
        if not self.filepath.exists():
            return entries
        data = _load_json(self.filepath)
        if data.get("plan_id") != self.plan_id:
            raise PlanError(
                f"Ledger at {self.filepath} belongs to plan '{data.get('plan_id')}', "
                f"not '{self.plan_id}'."
            )
        recorded_chain_id = data.get("chain_id")
        if self.chain_id is None:
            self.chain_id = recorded_chain_id
        elif recorded_chain_id is not None and int(recorded_chain_id) != self.chain_id:
            raise PlanError(
                f"Ledger at {self.filepath} was recorded on chain {recorded_chain_id}, "
                f"not {self.chain_id}."
            )
        for step_name, entry in data.get("steps", dict()).items():
            entries[step_name] = ResolvedAddress.from_json(step_name, entry)
        return entries

    def _write(self, entries: Mapping[StepName, ResolvedAddress]) -> None:
        data = OrderedDict(plan_id=self.plan_id)
        if self.chain_id is not None:
            data["chain_id"] = self.chain_id
        data["steps"] = OrderedDict((name, e.to_json()) for name, e in entries.items())
        _dump_json_atomic(data, self.filepath, **STANDARD_LEDGER_JSON_FORMAT)

    def get(self, step_name: StepName) -> Optional[ResolvedAddress]:
        return self._entries.get(step_name)

    def put(self, step_name: StepName, entry: ResolvedAddress) -> ResolvedAddress:
        """
        Records a step outcome.

        The file is re-read under the lock before writing so that a concurrent
        writer's entries are kept and an existing entry is never overwritten.
        """
        with self._lock:
            current = self._read()
            if step_name in current:
                self._entries = MappingProxyType(current)
                raise DuplicateStepError(plan_id=self.plan_id, step_name=step_name)
            current[step_name] = entry._replace(step_name=step_name)
            self._write(current)
            self._entries = MappingProxyType(current)
        return current[step_name]

    def snapshot(self) -> Mapping[StepName, ResolvedAddress]:
        """Immutable view of the entries written so far."""
        return self._entries

    def refresh(self) -> None:
        with self._lock:
            self._entries = MappingProxyType(self._read())

    def entries(self) -> List[ResolvedAddress]:
        return list(self._entries.values())

    def __contains__(self, step_name: StepName) -> bool:
        return step_name in self._entries

    def __len__(self) -> int:
        return len(self._entries)


#
# Registry export
#


class RegistryEntry(NamedTuple):
    """Represents a single entry in an exported contract registry."""

    chain_id: ChainId
    name: str
    address: ChecksumAddress
    tx_hash: str
    block_number: int


def write_registry(entries: List[RegistryEntry], filepath: Path, silent: bool = False) -> Path:
    """Writes a registry file keyed by chain id, merging with an existing file."""

    if not entries:
        if not silent:
            click.echo("No entries provided.")
        return filepath

    # Sort registry entries to enforce common order
    entries = sorted(entries, key=lambda entry: (str(entry.chain_id), entry.name))

    data = defaultdict(dict)
    for entry in entries:
        data[str(entry.chain_id)][entry.name] = {
            "address": entry.address,
            "tx_hash": entry.tx_hash,
            "block_number": int(entry.block_number),
        }

    filepath.parent.mkdir(parents=True, exist_ok=True)

    # If the file already exists, attempt to merge the data, if not create a new file
    if filepath.exists():
        if not silent:
            click.echo(f"Updating existing registry at {filepath}.")
        existing_data = _load_json(filepath)

        if any(chain_id in existing_data for chain_id in data):
            filepath = filepath.with_suffix(".unmerged.json")
            if not silent:
                click.echo(
                    "Cannot merge registries with overlapping chain IDs.\n"
                    f"Writing to {filepath} to avoid overwriting existing data."
                )
        else:
            existing_data.update(data)
            data = existing_data
    elif not silent:
        click.echo(f"Creating new registry at {filepath}.")

    _dump_json_atomic(data, filepath, **STANDARD_LEDGER_JSON_FORMAT)
    return filepath


def registry_from_ledger(
    ledger: Ledger,
    output_filepath: Path,
    registry_names: Optional[typing.Dict[StepName, str]] = None,
) -> Path:
    """Exports a ledger as a registry, optionally renaming steps."""
    if ledger.chain_id is None:
        raise PlanError(f"Ledger for plan '{ledger.plan_id}' has no chain id.")
    registry_names = registry_names or dict()
    entries = [
        RegistryEntry(
            chain_id=ledger.chain_id,
            name=registry_names.get(entry.step_name, entry.step_name),
            address=entry.address,
            tx_hash=entry.tx_hash,
            block_number=entry.block_number,
        )
        for entry in ledger.entries()
    ]
    output_filepath = write_registry(entries=entries, filepath=output_filepath)
    click.echo(f"(i) Registry written to {output_filepath}!")
    return output_filepath
