import re
import typing
from collections import OrderedDict
from typing import Any, Dict, List, Mapping, Optional

from eth_utils import is_checksum_address, is_hex_address, to_checksum_address

from orchestration.artifacts import ArtifactStore, check_encodable
from orchestration.exceptions import PlanError, ValidationError
from orchestration.plan import DeploymentStep, FieldSchema, Plan, StepKind
from orchestration.variables import PendingAddress, ResolutionContext, resolve_value

if typing.TYPE_CHECKING:
    from orchestration.ledger import ResolvedAddress

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
ADDRESS_LIKE_PATTERN = re.compile(r"^0x[0-9a-fA-F]{38,42}$")


class ResolvedParameters(typing.NamedTuple):
    """A step's parameters with every variable substituted and validated."""

    step_name: str
    values: "OrderedDict[str, Any]"
    target: Optional[str] = None

    def args(self) -> List[Any]:
        return list(self.values.values())


def _looks_like_address(value: str) -> bool:
    return ADDRESS_LIKE_PATTERN.match(value) is not None


def _normalize_for_uniqueness(value: Any) -> Any:
    if isinstance(value, PendingAddress):
        # distinct from every other step once the referenced step has run
        return ("ref", value.step_name)
    if isinstance(value, str) and ADDRESS_PATTERN.match(value):
        return value.lower()
    if isinstance(value, (list, dict)):
        return repr(value)
    return value


def _validate_address(field: str, value: Any) -> str:
    if not isinstance(value, str) or not is_hex_address(value):
        raise ValidationError(field, f"'{value}' is not a valid address")
    if value != value.lower() and value[2:] != value[2:].upper() and not is_checksum_address(value):
        raise ValidationError(field, f"'{value}' has an invalid EIP-55 checksum")
    return to_checksum_address(value)


def _validate_value(field: str, value: Any, schema: Mapping[str, FieldSchema]) -> Any:
    """Recursively validates a resolved value; returns it with addresses checksummed."""
    field_schema = schema.get(field, FieldSchema())

    if field_schema.type == "address":
        return _validate_address(field, value)

    if isinstance(value, bool):
        return value

    if isinstance(value, int):
        if field_schema.min is not None and value < field_schema.min:
            raise ValidationError(field, f"{value} is below the minimum of {field_schema.min}")
        if field_schema.max is not None and value > field_schema.max:
            raise ValidationError(field, f"{value} is above the maximum of {field_schema.max}")
        return value

    if field_schema.min is not None or field_schema.max is not None:
        raise ValidationError(field, f"expected an integer, got '{value}'")

    if isinstance(value, str):
        if ADDRESS_PATTERN.match(value):
            return _validate_address(field, value)
        if _looks_like_address(value) and field_schema.type not in ("bytes", "string"):
            raise ValidationError(field, f"'{value}' is not a valid address")
        return value

    if isinstance(value, list):
        if not value and not field_schema.allow_empty:
            raise ValidationError(field, "list must not be empty")
        if field_schema.unique:
            seen = set()
            for item in value:
                key = _normalize_for_uniqueness(item)
                if key in seen:
                    raise ValidationError(field, f"duplicate entry '{item}'")
                seen.add(key)
        return [_validate_value(f"{field}[{i}]", v, schema) for i, v in enumerate(value)]

    if isinstance(value, dict):
        return OrderedDict(
            (key, _validate_value(f"{field}.{key}", v, schema)) for key, v in value.items()
        )

    return value


class ParameterResolver:
    """
    Resolves and validates a step's declarative parameters against a ledger snapshot.

    Resolution is pure: nothing is written and no network call is made.
    """

    def __init__(
        self,
        plan: Plan,
        artifacts: Optional[ArtifactStore] = None,
        deployer: Optional[str] = None,
    ):
        self.plan = plan
        self.artifacts = artifacts
        self.deployer = deployer

    def _context(
        self, step: DeploymentStep, entries: Mapping[str, "ResolvedAddress"], eager: bool
    ) -> ResolutionContext:
        return ResolutionContext(
            step_name=step.name,
            contract_name=step.contract,
            entries=entries,
            constants=self.plan.constants,
            deployer=self.deployer,
            artifacts=self.artifacts,
            eager=eager,
            dependencies=self.plan.dependencies(step.name),
        )

    def resolve(
        self,
        step: DeploymentStep,
        entries: Mapping[str, "ResolvedAddress"],
        eager: bool = False,
    ) -> ResolvedParameters:
        """
        Substitutes ledger addresses, constants and the deployer account into
        the step's parameters, then validates them.

        With eager=True, references to not-yet-executed dependencies resolve to
        the zero address so the remainder of the step can be checked ahead of time.
        """
        context = self._context(step, entries, eager)
        try:
            target = None
            if step.target is not None:
                raw_target = resolve_value(step.target, context)
                target = _validate_address("target", raw_target)

            values = OrderedDict()
            for name, value in step.parameters.items():
                try:
                    resolved = resolve_value(value, context)
                except PlanError as e:
                    raise ValidationError(name, str(e))
                values[name] = _validate_value(name, resolved, step.schema)

            self._validate_abi(step, values)
        except ValidationError as e:
            if e.step is not None:
                raise
            raise ValidationError(e.field, e.message, step=step.name) from e
        return ResolvedParameters(step_name=step.name, values=values, target=target)

    def _validate_abi(self, step: DeploymentStep, values: "OrderedDict[str, Any]") -> None:
        """Checks names, arity and types against the contract ABI."""
        if step.kind == StepKind.UPGRADE:
            _validate_address("implementation", values["implementation"])
            unknown = set(values) - {"implementation", "data"}
            if unknown:
                raise ValidationError(sorted(unknown)[0], "unexpected upgrade parameter")
            return

        if self.artifacts is None:
            return
        try:
            artifact = self.artifacts.get(step.contract)
        except PlanError as e:
            raise ValidationError("contract", str(e))

        args = list(values.values())
        if step.kind == StepKind.DEPLOY:
            inputs = artifact.constructor_inputs
            if len(inputs) != len(args):
                raise ValidationError(
                    "parameters",
                    f"{step.contract} constructor requires {len(inputs)} parameter(s), "
                    f"got {len(args)}",
                )
            for position, (abi_input, name) in enumerate(zip(inputs, values)):
                if abi_input.get("name") and abi_input["name"] != name:
                    raise ValidationError(
                        name,
                        f"does not match the expected ABI name '{abi_input['name']}' "
                        f"at position {position}",
                    )
            offending = check_encodable(inputs, args)
            if offending is not None:
                raise ValidationError(offending, "value does not match the ABI type")
            return

        method_abis = artifact.method_abis(step.method)
        if not method_abis:
            raise ValidationError("method", f"'{step.method}' not found in {step.contract} ABI")
        candidates = [abi for abi in method_abis if len(abi.get("inputs", [])) == len(args)]
        if not candidates:
            raise ValidationError(
                "parameters", f"no '{step.method}' overload takes {len(args)} argument(s)"
            )
        for abi in candidates:
            offending = check_encodable(abi["inputs"], args)
            if offending is None:
                return
        raise ValidationError(offending, "value does not match the ABI type")


def describe(resolved: ResolvedParameters) -> Dict[str, Any]:
    """Flat view used when echoing a step before submission."""
    description = OrderedDict()
    if resolved.target:
        description["target"] = resolved.target
    description.update(resolved.values)
    return description
