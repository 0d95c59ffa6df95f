from typing import Optional

from eth_utils import is_hex, to_bytes, to_checksum_address

from orchestration.artifacts import (
    ArtifactStore,
    encode_deployment,
    encode_function_call,
    select_method_abi,
)
from orchestration.chain import ChainClient
from orchestration.constants import (
    EIP1967_ADMIN_SLOT,
    EIP1967_IMPLEMENTATION_SLOT,
    EMPTY_BYTES32,
    PROXY_ADMIN_UPGRADE_ABI,
    UUPS_UPGRADE_ABI,
    ZERO_ADDRESS,
)
from orchestration.exceptions import PlanError, ValidationError
from orchestration.params import ResolvedParameters
from orchestration.plan import DeploymentStep, StepKind
from orchestration.transactions import CallSpec


def _slot_address(slot_value: bytes) -> Optional[str]:
    slot_value = bytes(slot_value).rjust(32, b"\x00")
    if slot_value == EMPTY_BYTES32:
        return None
    return to_checksum_address(slot_value[-20:])


def _as_bytes(field: str, value) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str) and (value == "" or is_hex(value)):
        return to_bytes(hexstr=value) if value else b""
    raise ValidationError(field, f"'{value}' is not hex-encoded bytes")


class CallBuilder:
    """Turns a resolved step into the call the submitter broadcasts."""

    def __init__(self, artifacts: Optional[ArtifactStore], client: Optional[ChainClient] = None):
        self.artifacts = artifacts
        self.client = client

    def _artifact(self, step: DeploymentStep):
        if self.artifacts is None:
            raise ValidationError("contract", "no artifacts directory configured", step=step.name)
        try:
            return self.artifacts.get(step.contract)
        except PlanError as e:
            raise ValidationError("contract", str(e), step=step.name)

    def build(self, step: DeploymentStep, resolved: ResolvedParameters) -> CallSpec:
        if step.kind == StepKind.DEPLOY:
            return self._deploy(step, resolved)
        if step.kind == StepKind.UPGRADE:
            return self._upgrade(step, resolved)
        return self._transact(step, resolved)

    def _deploy(self, step: DeploymentStep, resolved: ResolvedParameters) -> CallSpec:
        artifact = self._artifact(step)
        try:
            data = encode_deployment(artifact, resolved.args())
        except PlanError as e:
            raise ValidationError("contract", str(e), step=step.name)
        return CallSpec(step_name=step.name, data=data, value=step.value)

    def _transact(self, step: DeploymentStep, resolved: ResolvedParameters) -> CallSpec:
        artifact = self._artifact(step)
        args = resolved.args()
        try:
            method_abi = select_method_abi(artifact.method_abis(step.method), args)
        except ValueError as e:
            raise ValidationError("method", str(e), step=step.name)
        return CallSpec(
            step_name=step.name,
            data=encode_function_call(method_abi, args),
            to=resolved.target,
            value=step.value,
        )

    def _upgrade(self, step: DeploymentStep, resolved: ResolvedParameters) -> CallSpec:
        """
        UUPS proxies are upgraded by calling the proxy itself; if the EIP1967 admin
        slot is populated the proxy is transparent and the upgrade goes through its
        ProxyAdmin instead.
        """
        proxy = resolved.target
        implementation = resolved.values["implementation"]
        data = _as_bytes("data", resolved.values.get("data"))

        admin = None
        if self.client is not None and proxy != ZERO_ADDRESS:
            current = _slot_address(self.client.get_storage_at(proxy, EIP1967_IMPLEMENTATION_SLOT))
            if current is None:
                raise ValidationError(
                    "target",
                    f"implementation slot for {proxy} is empty. "
                    "Are you sure this is an EIP1967-compatible proxy?",
                    step=step.name,
                )
            if current == implementation:
                raise ValidationError(
                    "implementation",
                    f"proxy {proxy} already points to {implementation}",
                    step=step.name,
                )
            admin = _slot_address(self.client.get_storage_at(proxy, EIP1967_ADMIN_SLOT))

        if admin is not None:
            return CallSpec(
                step_name=step.name,
                data=encode_function_call(PROXY_ADMIN_UPGRADE_ABI, [proxy, implementation, data]),
                to=admin,
                value=step.value,
                record_as=proxy,
            )
        return CallSpec(
            step_name=step.name,
            data=encode_function_call(UUPS_UPGRADE_ABI, [implementation, data]),
            to=proxy,
            value=step.value,
        )
