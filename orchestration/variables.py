import re
import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Iterator, List, Optional

from eth_utils import to_checksum_address

from orchestration.artifacts import ArtifactStore, encode_method_call
from orchestration.constants import DEPLOYER_VARIABLE, ENCODE_KEY, ZERO_ADDRESS
from orchestration.exceptions import OrchestrationError, PlanError, UnresolvedReferenceError

if typing.TYPE_CHECKING:
    from orchestration.ledger import ResolvedAddress


class ResolutionContext:
    """Everything a variable may need to resolve itself for a single step."""

    def __init__(
        self,
        step_name: str,
        contract_name: Optional[str],
        entries: typing.Mapping[str, "ResolvedAddress"],
        constants: typing.Dict[str, Any] = None,
        deployer: Optional[str] = None,
        artifacts: Optional[ArtifactStore] = None,
        eager: bool = False,
        dependencies: typing.Iterable[str] = (),
    ):
        self.step_name = step_name
        self.contract_name = contract_name
        self.entries = entries
        self.constants = constants or dict()
        self.deployer = deployer
        self.artifacts = artifacts
        self.eager = eager
        self.dependencies = frozenset(dependencies)


class PendingAddress(str):
    """Zero address standing in for a dependency that has not been executed yet."""

    def __new__(cls, step_name: str):
        address = super().__new__(cls, ZERO_ADDRESS)
        address.step_name = step_name
        return address


# Variables


class Variable(ABC):
    VARIABLE_PREFIX = "$"

    @abstractmethod
    def resolve(self, context: ResolutionContext) -> Any:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        return isinstance(param, str) and param.startswith(cls.VARIABLE_PREFIX)


class StepReference(Variable):
    PATTERN = re.compile(r"^ref\((?P<name>[^()\s]+)\)$")

    def __init__(self, step_name: str):
        self.step_name = step_name

    @classmethod
    def is_reference(cls, param: Any) -> bool:
        return isinstance(param, str) and cls.PATTERN.match(param.strip()) is not None

    @classmethod
    def from_string(cls, param: str) -> "StepReference":
        return cls(cls.PATTERN.match(param.strip()).group("name"))

    def resolve(self, context: ResolutionContext) -> Any:
        """Resolves to the address recorded in the ledger for the referenced step."""
        entry = context.entries.get(self.step_name)
        if entry is not None:
            return to_checksum_address(entry.address)
        if context.eager and self.step_name in context.dependencies:
            # dependency not yet executed - eager validation
            return PendingAddress(self.step_name)
        raise UnresolvedReferenceError(reference=self.step_name, step=context.step_name)

    def __repr__(self):
        return f"ref({self.step_name})"


class DeployerAccount(Variable):
    def resolve(self, context: ResolutionContext) -> Any:
        if context.deployer is None:
            return ZERO_ADDRESS
        return to_checksum_address(context.deployer)


class Constant(Variable):
    def __init__(self, constant_name: str):
        self.constant_name = constant_name

    @classmethod
    def is_constant(cls, value: str) -> bool:
        """Returns True if the variable names a plan constant."""
        return value.isupper()

    def resolve(self, context: ResolutionContext) -> Any:
        try:
            return context.constants[self.constant_name]
        except KeyError:
            raise PlanError(f"Constant '{self.constant_name}' not found in plan.")


class Encode(Variable):
    """ABI-encoded calldata, e.g. the initializer payload handed to a proxy."""

    def __init__(self, method_name: str, method_args: List[Any], contract_name: Optional[str]):
        self.method_name = method_name
        self.method_args = method_args
        self.contract_name = contract_name

    @classmethod
    def is_encode(cls, value: Any) -> bool:
        return isinstance(value, dict) and list(value) == [ENCODE_KEY]

    @classmethod
    def from_config(cls, value: dict) -> "Encode":
        encode_config = value[ENCODE_KEY]
        if not isinstance(encode_config, dict) or "method" not in encode_config:
            raise PlanError(f"'{ENCODE_KEY}' requires a mapping with at least a 'method' key.")
        args = encode_config.get("args") or list()
        return cls(
            method_name=encode_config["method"],
            method_args=[parse_value(arg) for arg in args],
            contract_name=encode_config.get("contract"),
        )

    def resolve(self, context: ResolutionContext) -> Any:
        contract_name = self.contract_name or context.contract_name
        if context.artifacts is None:
            raise PlanError(f"Cannot encode {contract_name}.{self.method_name}: no artifacts.")
        artifact = context.artifacts.get(contract_name)
        resolved_args = [resolve_value(arg, context) for arg in self.method_args]
        try:
            calldata = encode_method_call(artifact.abi, self.method_name, resolved_args)
        except OrchestrationError:
            raise
        except ValueError as e:
            raise PlanError(f"Cannot encode {contract_name}.{self.method_name}: {e}")
        return "0x" + calldata.hex()

    def to_config(self) -> dict:
        encode_config = OrderedDict(method=self.method_name)
        if self.contract_name:
            encode_config["contract"] = self.contract_name
        encode_config["args"] = [unparse_value(arg) for arg in self.method_args]
        return {ENCODE_KEY: dict(encode_config)}


def _variable_from_value(value: str) -> Variable:
    variable = value[len(Variable.VARIABLE_PREFIX) :]
    if variable == DEPLOYER_VARIABLE:
        return DeployerAccount()
    if Constant.is_constant(variable):
        return Constant(variable)
    raise PlanError(f"Unknown variable '{value}'.")


def parse_value(value: Any) -> Any:
    """Turns a raw plan value into a tree of literals and variables."""
    if isinstance(value, list):
        return [parse_value(v) for v in value]
    if Encode.is_encode(value):
        return Encode.from_config(value)
    if isinstance(value, dict):
        return OrderedDict((k, parse_value(v)) for k, v in value.items())
    if StepReference.is_reference(value):
        return StepReference.from_string(value)
    if Variable.is_variable(value):
        return _variable_from_value(value)
    return value  # literally a value


def unparse_value(value: Any) -> Any:
    """Inverse of parse_value."""
    if isinstance(value, list):
        return [unparse_value(v) for v in value]
    if isinstance(value, dict):
        return {k: unparse_value(v) for k, v in value.items()}
    if isinstance(value, StepReference):
        return repr(value)
    if isinstance(value, DeployerAccount):
        return Variable.VARIABLE_PREFIX + DEPLOYER_VARIABLE
    if isinstance(value, Constant):
        return Variable.VARIABLE_PREFIX + value.constant_name
    if isinstance(value, Encode):
        return value.to_config()
    return value


def resolve_value(value: Any, context: ResolutionContext) -> Any:
    """Resolves a single parameter value, recursing into lists and structs."""
    if isinstance(value, list):
        return [resolve_value(v, context) for v in value]
    if isinstance(value, dict):
        return OrderedDict((k, resolve_value(v, context)) for k, v in value.items())
    if isinstance(value, Variable):
        return value.resolve(context)
    return value


def iter_variables(value: Any) -> Iterator[Variable]:
    """Yields every variable in a parsed value tree."""
    if isinstance(value, list):
        for v in value:
            yield from iter_variables(v)
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_variables(v)
    elif isinstance(value, Encode):
        yield value
        for arg in value.method_args:
            yield from iter_variables(arg)
    elif isinstance(value, Variable):
        yield value
