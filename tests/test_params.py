import pytest
from eth_abi import decode
from eth_utils import function_abi_to_4byte_selector, to_bytes

from orchestration.constants import ZERO_ADDRESS
from orchestration.exceptions import UnresolvedReferenceError, ValidationError
from orchestration.ledger import ResolvedAddress
from orchestration.params import ParameterResolver, _validate_value, describe
from orchestration.plan import FieldSchema
from tests.conftest import (
    DEPLOYER,
    GUARDIAN,
    STRATEGIST,
    STRATEGY_ABI,
    USDC,
    WFTM,
    make_address,
    token_step,
    vault_step,
)

TOKEN_ADDRESS = make_address("token-contract")
VAULT_ADDRESS = make_address("vault-contract")


def _entry(step_name, address):
    return ResolvedAddress(step_name=step_name, address=address, block_number=101, tx_hash="0x01")


def _flip_first_letter(address):
    position = next(i for i, c in enumerate(address) if i > 1 and c.isalpha())
    return address[:position] + address[position].swapcase() + address[position + 1 :]


def _initializer_args(data):
    return decode(["address", "address[]"], to_bytes(hexstr=data)[4:])


@pytest.fixture()
def entries():
    return {"token": _entry("token", TOKEN_ADDRESS)}


@pytest.fixture()
def resolver(make_plan, ern_plan_steps, ern_constants, artifacts):
    plan = make_plan(ern_plan_steps, constants=ern_constants)
    return ParameterResolver(plan, artifacts=artifacts, deployer=DEPLOYER)


def test_resolve_substitutes_ledger_addresses(resolver, entries):
    step = resolver.plan.get("vault")
    resolved = resolver.resolve(step, entries)

    assert resolved.step_name == "vault"
    assert resolved.target is None
    assert resolved.values["_want"] == TOKEN_ADDRESS
    assert resolved.args() == [TOKEN_ADDRESS, "Ern WFTM Vault", 10**21, [STRATEGIST]]


def test_resolve_lowercase_ledger_entry_is_checksummed(resolver):
    entries = {"token": _entry("token", TOKEN_ADDRESS.lower())}
    resolved = resolver.resolve(resolver.plan.get("vault"), entries)
    assert resolved.values["_want"] == TOKEN_ADDRESS


def test_unresolved_reference(resolver):
    with pytest.raises(UnresolvedReferenceError) as excinfo:
        resolver.resolve(resolver.plan.get("vault"), entries={})
    assert excinfo.value.reference == "token"
    assert excinfo.value.step == "vault"


def test_eager_resolution_uses_zero_address_for_pending_dependencies(resolver):
    resolved = resolver.resolve(resolver.plan.get("add_strategy"), entries={}, eager=True)
    assert resolved.target == ZERO_ADDRESS
    assert resolved.values["_strategy"] == ZERO_ADDRESS


def test_eager_resolution_still_requires_declared_dependencies(make_plan, artifacts):
    plan = make_plan([token_step(), vault_step(depends_on=())])
    resolver = ParameterResolver(plan, artifacts=artifacts)
    with pytest.raises(UnresolvedReferenceError):
        resolver.resolve(plan.get("vault"), entries={}, eager=True)


def test_constants_and_deployer(resolver):
    entries = {"strategy": _entry("strategy", GUARDIAN)}
    swap_path = resolver.resolve(resolver.plan.get("swap_path"), entries)
    assert swap_path.target == GUARDIAN
    assert swap_path.values["_path"] == [WFTM, USDC]

    entries = {
        "strategy_impl": _entry("strategy_impl", GUARDIAN),
        "vault": _entry("vault", VAULT_ADDRESS),
    }
    proxy = resolver.resolve(resolver.plan.get("strategy"), entries)
    initializer = [abi for abi in STRATEGY_ABI if abi["name"] == "initialize"][0]
    selector = "0x" + function_abi_to_4byte_selector(initializer).hex()
    assert proxy.values["implementation"] == GUARDIAN
    assert proxy.values["_data"].startswith(selector)
    vault, strategists = _initializer_args(proxy.values["_data"])
    assert vault == VAULT_ADDRESS
    assert list(strategists) == [DEPLOYER, STRATEGIST]


def test_deployer_defaults_to_zero_address(make_plan, artifacts, ern_plan_steps, ern_constants):
    plan = make_plan(ern_plan_steps, constants=ern_constants)
    resolver = ParameterResolver(plan, artifacts=artifacts)
    proxy = resolver.resolve(plan.get("strategy"), entries={}, eager=True)
    vault, strategists = _initializer_args(proxy.values["_data"])
    assert vault == ZERO_ADDRESS
    assert list(strategists) == [ZERO_ADDRESS, STRATEGIST]


def test_schema_bounds(resolver):
    step = resolver.plan.get("add_strategy")
    entries = {"vault": _entry("vault", VAULT_ADDRESS), "strategy": _entry("strategy", GUARDIAN)}
    step = step._replace(parameters={**step.parameters, "_allocBPS": 10001})

    with pytest.raises(ValidationError) as excinfo:
        resolver.resolve(step, entries)
    assert excinfo.value.field == "_allocBPS"
    assert excinfo.value.step == "add_strategy"
    assert "maximum of 10000" in str(excinfo.value)


def test_invalid_checksum_is_rejected(make_plan, artifacts):
    bad_checksum = _flip_first_letter(STRATEGIST)
    plan = make_plan([token_step(), vault_step()])
    step = plan.get("vault")
    step = step._replace(parameters={**step.parameters, "_strategists": [bad_checksum]})
    resolver = ParameterResolver(plan, artifacts=artifacts)

    with pytest.raises(ValidationError) as excinfo:
        resolver.resolve(step, {"token": _entry("token", TOKEN_ADDRESS)})
    assert excinfo.value.field == "_strategists[0]"
    assert "checksum" in excinfo.value.message


def test_list_validation(resolver, entries):
    step = resolver.plan.get("vault")

    duplicated = step._replace(
        parameters={**step.parameters, "_strategists": [STRATEGIST, STRATEGIST.lower()]}
    )
    with pytest.raises(ValidationError, match="duplicate entry") as excinfo:
        resolver.resolve(duplicated, entries)
    assert excinfo.value.field == "_strategists"

    empty = step._replace(parameters={**step.parameters, "_strategists": []})
    with pytest.raises(ValidationError, match="must not be empty"):
        resolver.resolve(empty, entries)

    allowed = empty._replace(schema={"_strategists": FieldSchema(allow_empty=True)})
    assert resolver.resolve(allowed, entries).values["_strategists"] == []


def test_constructor_names_and_arity(resolver, entries):
    step = resolver.plan.get("vault")

    renamed = step._replace(
        parameters={("_token" if k == "_want" else k): v for k, v in step.parameters.items()}
    )
    with pytest.raises(ValidationError) as excinfo:
        resolver.resolve(renamed, entries)
    assert excinfo.value.field == "_token"
    assert "_want" in excinfo.value.message

    short = step._replace(parameters={"_want": step.parameters["_want"]})
    with pytest.raises(ValidationError, match="requires 4 parameter"):
        resolver.resolve(short, entries)


def test_type_mismatch_names_field(resolver, entries):
    step = resolver.plan.get("vault")
    step = step._replace(parameters={**step.parameters, "_tvlCap": "lots"})
    with pytest.raises(ValidationError) as excinfo:
        resolver.resolve(step, entries)
    assert excinfo.value.field == "_tvlCap"


def test_method_overloads(make_plan, artifacts):
    set_guardian = {
        "name": "set_guardian",
        "kind": "configure",
        "contract": "Vault",
        "target": "ref(token)",
        "method": "setGuardian",
        "parameters": {"_guardian": GUARDIAN, "_active": True},
        "depends_on": ["token"],
    }
    plan = make_plan([token_step(), set_guardian])
    resolver = ParameterResolver(plan, artifacts=artifacts)
    entries = {"token": _entry("token", TOKEN_ADDRESS)}

    resolved = resolver.resolve(plan.get("set_guardian"), entries)
    assert resolved.args() == [GUARDIAN, True]

    step = plan.get("set_guardian")
    too_many = step._replace(parameters={**step.parameters, "_extra": 1})
    with pytest.raises(ValidationError, match="no 'setGuardian' overload takes 3"):
        resolver.resolve(too_many, entries)

    unknown = step._replace(method="setKeeper")
    with pytest.raises(ValidationError) as excinfo:
        resolver.resolve(unknown, entries)
    assert excinfo.value.field == "method"


def test_missing_artifact(make_plan, artifacts):
    plan = make_plan([{"name": "router", "kind": "deploy", "contract": "Router"}])
    resolver = ParameterResolver(plan, artifacts=artifacts)
    with pytest.raises(ValidationError) as excinfo:
        resolver.resolve(plan.get("router"), entries={})
    assert excinfo.value.field == "contract"


def test_nested_values_use_dotted_fields():
    schema = {"route.fee": FieldSchema(max=3000), "route.hops": FieldSchema(unique=False)}
    value = {"fee": 500, "hops": [WFTM, WFTM]}
    assert _validate_value("route", value, schema) == {"fee": 500, "hops": [WFTM, WFTM]}

    with pytest.raises(ValidationError) as excinfo:
        _validate_value("route", {"fee": 10000, "hops": []}, schema)
    assert excinfo.value.field == "route.fee"


def test_malformed_address_like_value():
    with pytest.raises(ValidationError, match="not a valid address"):
        _validate_value("_want", "0x" + "ab" * 19 + "a", {})


def test_integer_bounds_require_integers():
    with pytest.raises(ValidationError, match="expected an integer"):
        _validate_value("_tvlCap", "1000", {"_tvlCap": FieldSchema(min=1)})


def test_describe(resolver):
    entries = {"vault": _entry("vault", VAULT_ADDRESS), "strategy": _entry("strategy", GUARDIAN)}
    resolved = resolver.resolve(resolver.plan.get("add_strategy"), entries)
    assert describe(resolved) == {
        "target": VAULT_ADDRESS,
        "_strategy": GUARDIAN,
        "_allocBPS": 9500,
    }


def _swap_path_plan(make_plan, path):
    return make_plan(
        [
            token_step(name="wftm"),
            token_step(name="usdc"),
            {"name": "strategy", "kind": "deploy", "contract": "Strategy"},
            {
                "name": "path",
                "kind": "configure",
                "contract": "Strategy",
                "target": "ref(strategy)",
                "method": "updateSwapPath",
                "parameters": {"_tokenIn": "ref(wftm)", "_tokenOut": "ref(usdc)", "_path": path},
                "depends_on": ["wftm", "usdc", "strategy"],
            },
        ]
    )


def test_eager_resolution_of_list_with_pending_references(make_plan, artifacts):
    plan = _swap_path_plan(make_plan, ["ref(wftm)", "ref(usdc)"])
    resolver = ParameterResolver(plan, artifacts=artifacts)

    resolved = resolver.resolve(plan.get("path"), entries={}, eager=True)
    assert resolved.values["_path"] == [ZERO_ADDRESS, ZERO_ADDRESS]

    entries = {"wftm": _entry("wftm", WFTM), "usdc": _entry("usdc", USDC)}
    resolved = resolver.resolve(plan.get("path"), entries=entries, eager=True)
    assert resolved.values["_path"] == [WFTM, USDC]
    assert resolved.target == ZERO_ADDRESS


def test_eager_resolution_rejects_repeated_pending_reference(make_plan, artifacts):
    plan = _swap_path_plan(make_plan, ["ref(wftm)", "ref(wftm)"])
    resolver = ParameterResolver(plan, artifacts=artifacts)

    with pytest.raises(ValidationError) as excinfo:
        resolver.resolve(plan.get("path"), entries={}, eager=True)
    assert excinfo.value.field == "_path"
