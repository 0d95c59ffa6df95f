import typing
from collections import OrderedDict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from orchestration.constants import DEFAULT_INITIALIZER, PLAN_ID_PATTERN
from orchestration.exceptions import CyclicPlanError, PlanError
from orchestration.utils import _load_yaml
from orchestration.variables import (
    Constant,
    StepReference,
    iter_variables,
    parse_value,
    unparse_value,
)


class StepKind(Enum):
    DEPLOY = "deploy"
    INITIALIZE = "initialize"
    UPGRADE = "upgrade"
    CONFIGURE = "configure"


class FieldSchema(typing.NamedTuple):
    """Declared bounds for a single (possibly nested, dotted) parameter."""

    min: Optional[int] = None
    max: Optional[int] = None
    type: Optional[str] = None
    allow_empty: bool = False
    unique: bool = True

    @classmethod
    def from_config(cls, field: str, config: Any) -> "FieldSchema":
        if not isinstance(config, dict):
            raise PlanError(f"Schema for '{field}' must be a mapping.")
        unknown = set(config) - set(cls._fields)
        if unknown:
            raise PlanError(f"Unknown schema keys for '{field}': {', '.join(sorted(unknown))}")
        return cls(**config)

    def to_config(self) -> Dict[str, Any]:
        defaults = FieldSchema()
        return {k: v for k, v in self._asdict().items() if v != getattr(defaults, k)}


class DeploymentStep(typing.NamedTuple):
    """One atomic on-chain action."""

    name: str
    kind: StepKind
    contract: Optional[str]
    parameters: "OrderedDict[str, Any]"
    depends_on: Tuple[str, ...] = ()
    target: Any = None
    method: Optional[str] = None
    value: int = 0
    schema: Dict[str, FieldSchema] = {}

    REQUIRED_KEYS = ("name", "kind")
    OPTIONAL_KEYS = (
        "contract",
        "parameters",
        "depends_on",
        "target",
        "method",
        "value",
        "schema",
    )

    @classmethod
    def from_config(cls, config: Any) -> "DeploymentStep":
        if not isinstance(config, dict):
            raise PlanError("Malformed step; expected a mapping.")
        missing = [key for key in cls.REQUIRED_KEYS if key not in config]
        if missing:
            raise PlanError(f"Step is missing required field(s): {', '.join(missing)}")
        name = config["name"]
        unknown = set(config) - set(cls.REQUIRED_KEYS) - set(cls.OPTIONAL_KEYS)
        if unknown:
            raise PlanError(f"Step '{name}' has unknown field(s): {', '.join(sorted(unknown))}")

        try:
            kind = StepKind(str(config["kind"]).lower())
        except ValueError:
            raise PlanError(f"Step '{name}' has unknown kind '{config['kind']}'.")

        raw_parameters = config.get("parameters") or OrderedDict()
        if not isinstance(raw_parameters, dict):
            raise PlanError(f"Parameters of step '{name}' must be a mapping of name to value.")
        parameters = OrderedDict(
            (param, parse_value(value)) for param, value in raw_parameters.items()
        )

        depends_on = config.get("depends_on") or list()
        if isinstance(depends_on, str):
            depends_on = [depends_on]

        schema = {
            field: FieldSchema.from_config(field, field_config)
            for field, field_config in (config.get("schema") or dict()).items()
        }

        method = config.get("method")
        if kind == StepKind.INITIALIZE and not method:
            method = DEFAULT_INITIALIZER

        step = cls(
            name=name,
            kind=kind,
            contract=config.get("contract"),
            parameters=parameters,
            depends_on=tuple(depends_on),
            target=parse_value(config.get("target")),
            method=method,
            value=int(config.get("value") or 0),
            schema=schema,
        )
        step._validate_shape()
        return step

    def _validate_shape(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise PlanError("Step names must be non-empty strings.")
        if self.kind != StepKind.UPGRADE and not self.contract:
            raise PlanError(f"Step '{self.name}' ({self.kind.value}) requires a 'contract'.")
        if self.kind != StepKind.DEPLOY and self.target is None:
            raise PlanError(f"Step '{self.name}' ({self.kind.value}) requires a 'target'.")
        if self.kind == StepKind.CONFIGURE and not self.method:
            raise PlanError(f"Step '{self.name}' (configure) requires a 'method'.")
        if self.kind == StepKind.UPGRADE and "implementation" not in self.parameters:
            raise PlanError(f"Step '{self.name}' (upgrade) requires an 'implementation' parameter.")
        if self.name in self.depends_on:
            raise CyclicPlanError([self.name, self.name])

    def references(self) -> List[str]:
        """Names of the steps referenced by this step's parameters and target."""
        values = [self.target, *self.parameters.values()]
        names = [v.step_name for v in iter_variables(values) if isinstance(v, StepReference)]
        return list(OrderedDict.fromkeys(names))

    def constants(self) -> List[str]:
        values = [self.target, *self.parameters.values()]
        return [v.constant_name for v in iter_variables(values) if isinstance(v, Constant)]

    def to_config(self) -> Dict[str, Any]:
        config = OrderedDict(name=self.name, kind=self.kind.value)
        if self.contract:
            config["contract"] = self.contract
        if self.target is not None:
            config["target"] = unparse_value(self.target)
        if self.method and not (
            self.kind == StepKind.INITIALIZE and self.method == DEFAULT_INITIALIZER
        ):
            config["method"] = self.method
        if self.value:
            config["value"] = self.value
        config["parameters"] = {k: unparse_value(v) for k, v in self.parameters.items()}
        if self.schema:
            config["schema"] = {k: v.to_config() for k, v in self.schema.items()}
        config["depends_on"] = list(self.depends_on)
        return dict(config)


class Plan:
    """An ordered, dependency-validated set of deployment steps."""

    def __init__(
        self,
        plan_id: str,
        steps: List[DeploymentStep],
        chain_id: Optional[int] = None,
        constants: Optional[Dict[str, Any]] = None,
        artifacts_dir: Optional[Path] = None,
        settings: Optional[Dict[str, Any]] = None,
    ):
        self.plan_id = plan_id
        self.steps = list(steps)
        self.chain_id = chain_id
        self.constants = constants or dict()
        self.artifacts_dir = artifacts_dir
        self.settings = settings or dict()
        self._steps_by_name = OrderedDict()
        self.validate()

    @classmethod
    def from_yaml(cls, filepath: Path, plan_id: Optional[str] = None) -> "Plan":
        config = _load_yaml(filepath)
        plan = cls.from_config(config, plan_id=plan_id, base_dir=Path(filepath).parent)
        return plan

    @classmethod
    def from_config(
        cls, config: Any, plan_id: Optional[str] = None, base_dir: Optional[Path] = None
    ) -> "Plan":
        if not isinstance(config, dict):
            raise PlanError("Malformed plan document.")

        plan_info = config.get("plan") or dict()
        plan_id = plan_id or plan_info.get("id")
        if not plan_id:
            raise PlanError("plan id is not set in plan file.")
        if not PLAN_ID_PATTERN.match(str(plan_id)):
            raise PlanError(f"Plan id '{plan_id}' cannot be used as a ledger file name.")
        chain_id = plan_info.get("chain_id")

        raw_steps = config.get("steps")
        if not raw_steps:
            raise PlanError("Plan file missing 'steps' field.")

        constants = config.get("constants") or dict()
        for constant in constants:
            if not Constant.is_constant(constant):
                raise PlanError(f"Constant names must be upper case, got '{constant}'.")

        artifacts_dir = None
        artifacts_config = config.get("artifacts") or dict()
        if "dir" in artifacts_config:
            artifacts_dir = Path(artifacts_config["dir"])
            if base_dir is not None and not artifacts_dir.is_absolute():
                artifacts_dir = base_dir / artifacts_dir

        return cls(
            plan_id=str(plan_id),
            steps=[DeploymentStep.from_config(step) for step in raw_steps],
            chain_id=int(chain_id) if chain_id is not None else None,
            constants=dict(constants),
            artifacts_dir=artifacts_dir,
            settings=dict(config.get("orchestrator") or dict()),
        )

    def to_config(self) -> Dict[str, Any]:
        plan_info = {"id": self.plan_id}
        if self.chain_id is not None:
            plan_info["chain_id"] = self.chain_id
        config = OrderedDict(plan=plan_info)
        if self.artifacts_dir is not None:
            config["artifacts"] = {"dir": str(self.artifacts_dir)}
        if self.settings:
            config["orchestrator"] = dict(self.settings)
        if self.constants:
            config["constants"] = dict(self.constants)
        config["steps"] = [step.to_config() for step in self.steps]
        return dict(config)

    #
    # Validation
    #

    def validate(self) -> None:
        """Checks names, references and constants, then rejects dependency cycles."""
        self._steps_by_name = OrderedDict()
        for step in self.steps:
            if step.name in self._steps_by_name:
                raise PlanError(f"Duplicate step name '{step.name}'.")
            self._steps_by_name[step.name] = step

        for step in self.steps:
            for dependency in step.depends_on:
                if dependency not in self._steps_by_name:
                    raise PlanError(f"Step '{step.name}' depends on unknown step '{dependency}'.")
            for reference in step.references():
                if reference not in self._steps_by_name:
                    raise PlanError(f"Step '{step.name}' references unknown step '{reference}'.")
            for constant in step.constants():
                if constant not in self.constants:
                    raise PlanError(f"Constant '{constant}' not found in plan.")

        cycle = self.find_cycle()
        if cycle:
            raise CyclicPlanError(cycle)

    def find_cycle(self) -> Optional[List[str]]:
        """Returns one dependency cycle (first node repeated at the end) or None."""
        WHITE, GREY, BLACK = 0, 1, 2
        colour = {name: WHITE for name in self._steps_by_name}
        path: List[str] = list()

        def visit(name: str) -> Optional[List[str]]:
            colour[name] = GREY
            path.append(name)
            for dependency in self._steps_by_name[name].depends_on:
                if colour[dependency] == GREY:
                    return path[path.index(dependency) :] + [dependency]
                if colour[dependency] == WHITE:
                    cycle = visit(dependency)
                    if cycle:
                        return cycle
            path.pop()
            colour[name] = BLACK
            return None

        for name in self._steps_by_name:
            if colour[name] == WHITE:
                cycle = visit(name)
                if cycle:
                    # report in execution direction: dependency -> dependent
                    return list(reversed(cycle))
        return None

    #
    # Traversal
    #

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)

    def get(self, name: str) -> DeploymentStep:
        try:
            return self._steps_by_name[name]
        except KeyError:
            raise PlanError(f"Unknown step '{name}'.")

    def execution_order(self) -> List[DeploymentStep]:
        """Topological order; ties are broken by declaration order."""
        remaining = OrderedDict((step.name, set(step.depends_on)) for step in self.steps)
        ordered = list()
        while remaining:
            ready = next(name for name, deps in remaining.items() if not deps)
            ordered.append(self._steps_by_name[ready])
            del remaining[ready]
            for deps in remaining.values():
                deps.discard(ready)
        return ordered

    def dependencies(self, name: str) -> List[str]:
        """Transitive dependencies of a step."""
        seen = OrderedDict()
        stack = list(self.get(name).depends_on)
        while stack:
            dependency = stack.pop()
            if dependency in seen:
                continue
            seen[dependency] = None
            stack.extend(self._steps_by_name[dependency].depends_on)
        return list(seen)
