import typing
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from eth_abi import encode, is_encodable
from eth_utils import (
    function_abi_to_4byte_selector,
    is_address,
    is_hex,
    to_bytes,
    to_checksum_address,
)
from eth_utils.abi import collapse_if_tuple

from orchestration.exceptions import PlanError
from orchestration.utils import _load_json

ABI = List[Dict[str, Any]]


class ContractArtifact(typing.NamedTuple):
    """Compiled contract output consumed from the build toolchain."""

    name: str
    abi: ABI
    bytecode: bytes

    @classmethod
    def from_file(cls, name: str, filepath: Path) -> "ContractArtifact":
        data = _load_json(filepath)
        if isinstance(data, list):
            # bare ABI file
            return cls(name=name, abi=data, bytecode=b"")
        bytecode = data.get("bytecode", "")
        if isinstance(bytecode, dict):
            # foundry output nests the creation code under 'object'
            bytecode = bytecode.get("object", "")
        return cls(name=name, abi=data.get("abi", list()), bytecode=_hex_to_bytes(bytecode))

    @property
    def constructor_inputs(self) -> List[Dict[str, Any]]:
        for entry in self.abi:
            if entry.get("type") == "constructor":
                return entry.get("inputs", list())
        return list()

    def method_abis(self, method_name: str) -> ABI:
        return [
            entry
            for entry in self.abi
            if entry.get("type") == "function" and entry.get("name") == method_name
        ]


class ArtifactStore:
    """
    Looks up compiled contract artifacts by contract name.

    Supports hardhat (artifacts/contracts/X.sol/X.json), foundry (out/X.sol/X.json)
    and flat (X.json) layouts.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._cache: Dict[str, ContractArtifact] = dict()

    def _find(self, contract_name: str) -> Optional[Path]:
        flat = self.directory / f"{contract_name}.json"
        if flat.exists():
            return flat
        candidates = self.directory.rglob(f"{contract_name}.json")
        matches = sorted(p for p in candidates if not p.name.endswith(".dbg.json"))
        if len(matches) > 1:
            raise PlanError(
                f"Artifact for {contract_name} is ambiguous - "
                f"found {len(matches)} candidates under {self.directory}"
            )
        return matches[0] if matches else None

    def get(self, contract_name: str) -> ContractArtifact:
        if contract_name not in self._cache:
            filepath = self._find(contract_name)
            if filepath is None:
                raise PlanError(f"No artifact found for contract '{contract_name}'.")
            self._cache[contract_name] = ContractArtifact.from_file(contract_name, filepath)
        return self._cache[contract_name]

    def __contains__(self, contract_name: str) -> bool:
        return contract_name in self._cache or self._find(contract_name) is not None


def _hex_to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if not value:
        return b""
    return to_bytes(hexstr=value)


def abi_type(abi_input: Dict[str, Any]) -> str:
    """Canonical type string, collapsing tuples into '(type,...)' form."""
    return collapse_if_tuple(abi_input)


def normalize_arg(abi_input: Dict[str, Any], value: Any) -> Any:
    """Converts plan-friendly values (hex strings, structs as mappings) into ABI values."""
    return _normalize(abi_input["type"], abi_input.get("components"), value)


def _normalize(type_str: str, components: Optional[List[Dict[str, Any]]], value: Any) -> Any:
    if type_str.endswith("]"):
        if not isinstance(value, (list, tuple)):
            return value
        inner = type_str[: type_str.rindex("[")]
        return [_normalize(inner, components, v) for v in value]

    if type_str == "tuple":
        components = components or list()
        if isinstance(value, dict):
            missing = [c["name"] for c in components if c["name"] not in value]
            if missing:
                raise ValueError(f"missing struct field(s): {', '.join(missing)}")
            value = [value[c["name"]] for c in components]
        if isinstance(value, (list, tuple)) and len(value) == len(components):
            return tuple(
                _normalize(c["type"], c.get("components"), v) for c, v in zip(components, value)
            )
        return value

    if type_str.startswith("bytes") and isinstance(value, str) and is_hex(value):
        return to_bytes(hexstr=value)

    if type_str == "address" and isinstance(value, str) and is_address(value):
        return to_checksum_address(value)

    return value


def check_encodable(inputs: Sequence[Dict[str, Any]], args: Sequence[Any]) -> Optional[str]:
    """Returns the name of the first input whose value does not encode, or None."""
    for position, (abi_input, arg) in enumerate(zip(inputs, args)):
        try:
            normalized = normalize_arg(abi_input, arg)
        except (KeyError, TypeError, ValueError):
            return abi_input.get("name") or str(position)
        if not is_encodable(abi_type(abi_input), normalized):
            return abi_input.get("name") or str(position)
    return None


def select_method_abi(method_abis: ABI, args: Sequence[Any]) -> Dict[str, Any]:
    """Picks the overload whose inputs match the given arguments."""
    if len(method_abis) == 0:
        raise ValueError("No method abis provided for validation of args")

    for abi in method_abis:
        inputs = abi.get("inputs", list())
        if len(inputs) == len(args) and check_encodable(inputs, args) is None:
            return abi
    raise ValueError(
        f"Could not find ABI for '{method_abis[0]['name']}' with {len(args)} arg(s) "
        "and given type(s)"
    )


def encode_arguments(inputs: Sequence[Dict[str, Any]], args: Sequence[Any]) -> bytes:
    types = [abi_type(abi_input) for abi_input in inputs]
    values = [normalize_arg(abi_input, arg) for abi_input, arg in zip(inputs, args)]
    return encode(types, values)


def encode_function_call(method_abi: Dict[str, Any], args: Sequence[Any]) -> bytes:
    selector = function_abi_to_4byte_selector(method_abi)
    return selector + encode_arguments(method_abi.get("inputs", list()), args)


def encode_method_call(abi: ABI, method_name: str, args: Sequence[Any]) -> bytes:
    method_abis = [e for e in abi if e.get("type") == "function" and e.get("name") == method_name]
    if not method_abis:
        raise PlanError(f"Method '{method_name}' not found in ABI.")
    return encode_function_call(select_method_abi(method_abis, args), args)


def encode_deployment(artifact: ContractArtifact, args: Sequence[Any]) -> bytes:
    """Creation bytecode followed by the ABI-encoded constructor arguments."""
    if not artifact.bytecode:
        raise PlanError(f"Artifact for {artifact.name} has no creation bytecode.")
    return artifact.bytecode + encode_arguments(artifact.constructor_inputs, args)
