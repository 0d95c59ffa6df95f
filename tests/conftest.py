import json
import threading
from collections import defaultdict

import pytest
from eth_utils import keccak, to_checksum_address, to_hex

from orchestration.artifacts import ArtifactStore
from orchestration.chain import ChainClient, FeeParams, TxReceipt
from orchestration.config import OrchestratorConfig
from orchestration.constants import EMPTY_BYTES32
from orchestration.exceptions import RevertedError, TransactionRejectedError
from orchestration.orchestrator import Orchestrator
from orchestration.plan import Plan

# Common constants
CHAIN_ID = 1337
GWEI = 10**9
GAS_ESTIMATE = 100_000
START_BLOCK = 100


def make_address(seed):
    return to_checksum_address("0x" + keccak(text=str(seed))[-20:].hex())


DEPLOYER = make_address("deployer")
STRATEGIST = make_address("strategist")
GUARDIAN = make_address("guardian")
WFTM = make_address("wftm")
USDC = make_address("usdc")

TOKEN_BYTECODE = "0x6080604052aa01"
VAULT_BYTECODE = "0x6080604052bb02"
STRATEGY_BYTECODE = "0x6080604052cc03"
PROXY_BYTECODE = "0x6080604052dd04"


def _input(name, type_):
    return {"name": name, "type": type_, "internalType": type_}


def _function(name, *inputs):
    return {
        "type": "function",
        "name": name,
        "inputs": list(inputs),
        "outputs": [],
        "stateMutability": "nonpayable",
    }


def _constructor(*inputs):
    return {"type": "constructor", "inputs": list(inputs), "stateMutability": "nonpayable"}


TOKEN_ABI = [
    _constructor(_input("_supply", "uint256")),
    _function("approve", _input("spender", "address"), _input("amount", "uint256")),
]

VAULT_ABI = [
    _constructor(
        _input("_want", "address"),
        _input("_name", "string"),
        _input("_tvlCap", "uint256"),
        _input("_strategists", "address[]"),
    ),
    _function("addStrategy", _input("_strategy", "address"), _input("_allocBPS", "uint256")),
    _function("setGuardian", _input("_guardian", "address")),
    _function("setGuardian", _input("_guardian", "address"), _input("_active", "bool")),
]

STRATEGY_ABI = [
    _function("initialize", _input("_vault", "address"), _input("_strategists", "address[]")),
    _function(
        "updateSwapPath",
        _input("_tokenIn", "address"),
        _input("_tokenOut", "address"),
        _input("_path", "address[]"),
    ),
]

PROXY_ABI = [
    _constructor(_input("implementation", "address"), _input("_data", "bytes")),
]


class FakeChainClient(ChainClient):
    """
    In-memory chain: every broadcast is mined into its own block unless dropped,
    and the head advances by one block on every block number query.
    """

    def __init__(self, chain_id=CHAIN_ID, sender=DEPLOYER):
        self._chain_id = chain_id
        self._sender = sender
        self.block_number = START_BLOCK
        self.nonce = 0
        self.sent = list()
        self.receipts = dict()
        self.storage = dict()
        self.calls = defaultdict(int)
        self.failures = defaultdict(list)
        self.revert_when = None
        self.fail_on_mine = None
        self.drop_sends = 0
        self._lock = threading.RLock()

    @property
    def chain_id(self):
        return self._chain_id

    @property
    def sender(self):
        return self._sender

    def fail(self, method, error, times=1):
        """Queues `error` to be raised by the next `times` calls of `method`."""
        self.failures[method].extend([error] * times)

    def _enter(self, method):
        self.calls[method] += 1
        if self.failures[method]:
            raise self.failures[method].pop(0)

    def get_block_number(self):
        with self._lock:
            self._enter("get_block_number")
            self.block_number += 1
            return self.block_number

    def estimate_gas(self, tx):
        with self._lock:
            self._enter("estimate_gas")
            if self.revert_when is not None and self.revert_when(tx):
                raise RevertedError("Execution reverted: estimate failed")
            return GAS_ESTIMATE

    def suggest_fees(self):
        with self._lock:
            self._enter("suggest_fees")
            return FeeParams(max_fee=2 * GWEI, max_priority_fee=GWEI)

    def get_transaction_count(self, address):
        with self._lock:
            self._enter("get_transaction_count")
            return self.nonce

    def send_transaction(self, tx):
        with self._lock:
            self._enter("send_transaction")
            if tx["nonce"] < self.nonce:
                raise TransactionRejectedError("Transaction rejected: nonce too low")
            self.sent.append(dict(tx))
            tx_hash = to_hex(keccak(text=f"{tx['nonce']}:{len(self.sent)}"))
            if self.drop_sends:
                self.drop_sends -= 1
                return tx_hash
            self.block_number += 1
            self.nonce = max(self.nonce, tx["nonce"] + 1)
            reverted = self.fail_on_mine is not None and self.fail_on_mine(tx)
            contract_address = None
            if "to" not in tx and not reverted:
                contract_address = make_address(f"{tx['from']}:{tx['nonce']}")
            self.receipts[tx_hash] = TxReceipt(
                tx_hash=tx_hash,
                block_number=self.block_number,
                status=0 if reverted else 1,
                contract_address=contract_address,
                gas_used=GAS_ESTIMATE,
            )
            return tx_hash

    def get_transaction_receipt(self, tx_hash):
        with self._lock:
            self._enter("get_transaction_receipt")
            return self.receipts.get(tx_hash)

    def get_storage_at(self, address, slot):
        with self._lock:
            self._enter("get_storage_at")
            return self.storage.get((to_checksum_address(address), slot), EMPTY_BYTES32)

    def set_slot_address(self, address, slot, value):
        self.storage[(to_checksum_address(address), slot)] = bytes(12) + bytes.fromhex(value[2:])

    def sent_to(self, address):
        return [tx for tx in self.sent if tx.get("to") == address]


def write_artifact(path, abi, bytecode):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"abi": abi, "bytecode": bytecode}))
    return path


def token_step(name="token", supply=10**24, **kwargs):
    step = {"name": name, "kind": "deploy", "contract": "Token", "parameters": {"_supply": supply}}
    step.update(kwargs)
    return step


def vault_step(name="vault", want="ref(token)", depends_on=("token",), **kwargs):
    step = {
        "name": name,
        "kind": "deploy",
        "contract": "Vault",
        "parameters": {
            "_want": want,
            "_name": "Ern WFTM Vault",
            "_tvlCap": 10**21,
            "_strategists": [STRATEGIST],
        },
        "depends_on": list(depends_on),
    }
    step.update(kwargs)
    return step


def approve_step(name="C", token="A", spender="$deployer", depends_on=("A",)):
    return {
        "name": name,
        "kind": "configure",
        "contract": "Token",
        "target": f"ref({token})",
        "method": "approve",
        "parameters": {"spender": spender, "amount": 10**18},
        "depends_on": list(depends_on),
    }


def plan_config(steps, plan_id="test-plan", chain_id=CHAIN_ID, **sections):
    config = {"plan": {"id": plan_id}, "steps": list(steps)}
    if chain_id is not None:
        config["plan"]["chain_id"] = chain_id
    config.update(sections)
    return config


# Fixtures
@pytest.fixture()
def artifacts_dir(tmp_path):
    directory = tmp_path / "artifacts"
    # hardhat layout for some contracts, flat files for others
    write_artifact(directory / "contracts" / "Token.sol" / "Token.json", TOKEN_ABI, TOKEN_BYTECODE)
    write_artifact(directory / "contracts" / "Vault.sol" / "Vault.json", VAULT_ABI, VAULT_BYTECODE)
    write_artifact(directory / "Strategy.json", STRATEGY_ABI, STRATEGY_BYTECODE)
    write_artifact(directory / "ERC1967Proxy.json", PROXY_ABI, PROXY_BYTECODE)
    return directory


@pytest.fixture()
def artifacts(artifacts_dir):
    return ArtifactStore(artifacts_dir)


@pytest.fixture()
def ledger_dir(tmp_path):
    return tmp_path / "ledgers"


@pytest.fixture()
def config(ledger_dir):
    return OrchestratorConfig(
        confirmations=1,
        poll_interval=0,
        max_poll_interval=0,
        confirmation_timeout=60,
        max_retries=3,
        retry_backoff=0,
        stuck_after=2,
        ledger_dir=ledger_dir,
    )


@pytest.fixture()
def chain():
    return FakeChainClient()


@pytest.fixture()
def orchestrator(config, chain, artifacts):
    return Orchestrator(config=config, client=chain, artifacts=artifacts)


@pytest.fixture()
def make_plan(artifacts_dir):
    def _make_plan(steps, plan_id="test-plan", chain_id=CHAIN_ID, **sections):
        sections.setdefault("artifacts", {"dir": str(artifacts_dir)})
        return Plan.from_config(plan_config(steps, plan_id=plan_id, chain_id=chain_id, **sections))

    return _make_plan


@pytest.fixture()
def ern_plan_steps():
    """Vault, then strategy behind a proxy, then registration and swap path."""
    return [
        token_step(),
        vault_step(),
        {"name": "strategy_impl", "kind": "deploy", "contract": "Strategy"},
        {
            "name": "strategy",
            "kind": "deploy",
            "contract": "ERC1967Proxy",
            "parameters": {
                "implementation": "ref(strategy_impl)",
                "_data": {
                    "$encode": {
                        "contract": "Strategy",
                        "method": "initialize",
                        "args": ["ref(vault)", ["$deployer", STRATEGIST]],
                    }
                },
            },
            "depends_on": ["strategy_impl", "vault"],
        },
        {
            "name": "add_strategy",
            "kind": "configure",
            "contract": "Vault",
            "target": "ref(vault)",
            "method": "addStrategy",
            "parameters": {"_strategy": "ref(strategy)", "_allocBPS": 9500},
            "schema": {"_allocBPS": {"min": 0, "max": 10000}},
            "depends_on": ["vault", "strategy"],
        },
        {
            "name": "swap_path",
            "kind": "configure",
            "contract": "Strategy",
            "target": "ref(strategy)",
            "method": "updateSwapPath",
            "parameters": {"_tokenIn": "$WFTM", "_tokenOut": "$USDC", "_path": ["$WFTM", "$USDC"]},
            "depends_on": ["strategy"],
        },
    ]


@pytest.fixture()
def ern_constants():
    return {"WFTM": WFTM, "USDC": USDC}


@pytest.fixture()
def abc_steps():
    """A, then B and C which both depend on A."""
    return [
        token_step(name="A"),
        vault_step(name="B", want="ref(A)", depends_on=["A"]),
        approve_step(),
    ]
