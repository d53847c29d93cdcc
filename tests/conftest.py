import itertools
from collections import defaultdict
from typing import Any, Callable, List, NamedTuple, Optional

import pytest
from eth_utils import keccak, to_checksum_address, to_hex

from jeonse_deployment.chain import ChainClient, PreparedTransaction, Receipt, RetryPolicy
from jeonse_deployment.constants import (
    ADMIN_ROLE,
    CONSTRUCTOR_PARAMS_DIR,
    DEFAULT_ADMIN_ROLE,
    DEFAULT_CONFIRMATIONS,
    RECEIPT_TIMEOUT,
    ContractKind,
)
from jeonse_deployment.errors import RpcTimeoutError, TransactionWouldRevertError
from jeonse_deployment.manifest import ManifestStore
from jeonse_deployment.orchestrator import Orchestrator
from jeonse_deployment.params import DeploymentConfig
from jeonse_deployment.roles import ROLES
from jeonse_deployment.utils import ContractArtifact, _load_yaml

# Common constants
DEPLOYER = to_checksum_address("0x" + "d1" * 20)
NEW_OWNER = to_checksum_address("0x" + "0e" * 20)
STRANGER = to_checksum_address("0x" + "5a" * 20)
CHAIN_ID = 1001
GAS_PRICE = 25 * 10**9
ONE_KAIA = 10**18

FAST_RETRY = RetryPolicy(attempts=3, backoff=0)

VAULT_CONSTRUCTOR_INPUTS = [
    {"name": "_propertyOracle", "type": "address", "internalType": "address"},
    {"name": "_complianceModule", "type": "address", "internalType": "address"},
    {"name": "_investmentPool", "type": "address", "internalType": "address"},
]


class Action(NamedTuple):
    method: str  # deploy, grantRole or revokeRole
    target: str  # contract name for deployments, contract address otherwise
    role: Any = None
    principal: Any = None
    args: tuple = ()


class FakeChain(ChainClient):
    """
    In-memory AccessControl chain. A deployment grants the sender DEFAULT_ADMIN_ROLE
    and ADMIN_ROLE on the new contract; grantRole and revokeRole revert unless the
    sender holds DEFAULT_ADMIN_ROLE on the target.

    Faults are injected with `reverts` (predicates on the mined action),
    `estimate_reverts` (predicates on an action refused while building it),
    `broadcast_failures` (callables returning an exception to raise, or None)
    and `receipt_timeouts` (number of receipt waits that time out).
    """

    def __init__(self, sender=DEPLOYER, chain_id=CHAIN_ID, balance=100 * ONE_KAIA):
        self.account = sender
        self._chain_id = chain_id
        self.balances = defaultdict(int, {sender: balance})
        self.price = GAS_PRICE
        self.code = dict()
        self.roles = defaultdict(set)
        self.block = 100
        self._counter = itertools.count()
        self._pending = dict()
        self._receipts = dict()
        self.mined: List[Action] = list()
        self.reverts: List[Callable[[Action], bool]] = list()
        self.estimate_reverts: List[Callable[[Action], bool]] = list()
        self.broadcast_failures: List[Callable[[Action], Optional[Exception]]] = list()
        self.receipt_timeouts = 0

    @property
    def sender(self):
        return self.account

    @property
    def chain_id(self):
        return self._chain_id

    def block_number(self):
        return self.block

    def get_balance(self, address):
        return self.balances[address]

    def gas_price(self):
        return self.price

    def get_code(self, address):
        return self.code.get(address, b"")

    def has_role(self, address, role, principal):
        return (role, principal) in self.roles[address]

    def _prepare(self, action: Action, description: str) -> PreparedTransaction:
        if any(revert(action) for revert in self.estimate_reverts):
            raise TransactionWouldRevertError(description, "execution reverted")
        tx_hash = to_hex(keccak(text=f"{description}:{next(self._counter)}"))
        self._pending[tx_hash] = action
        return PreparedTransaction(tx_hash=tx_hash, raw=b"", description=description)

    def build_deployment(self, artifact, args, gas_price):
        action = Action("deploy", artifact.name, args=tuple(args))
        return self._prepare(action, f"deploy {artifact.name}")

    def build_role_transaction(self, address, method, role, principal, gas_price):
        return self._prepare(Action(method, address, role, principal), f"{method} {role} {principal}")

    def broadcast(self, transaction):
        if transaction.tx_hash in self._receipts:
            return transaction.tx_hash  # already known
        action = self._pending[transaction.tx_hash]
        for failure in self.broadcast_failures:
            error = failure(action)
            if error is not None:
                raise error
        del self._pending[transaction.tx_hash]
        self._receipts[transaction.tx_hash] = self._mine(transaction.tx_hash, action)
        return transaction.tx_hash

    def _mine(self, tx_hash, action: Action) -> Receipt:
        self.block += 1
        reverted = any(revert(action) for revert in self.reverts)
        address = None
        if action.method == "deploy":
            if not reverted:
                address = to_checksum_address(keccak(text=tx_hash)[-20:])
                self.code[address] = b"\x60\x80\x60\x40"
                self.roles[address] |= {
                    (ROLES[DEFAULT_ADMIN_ROLE], self.sender),
                    (ROLES[ADMIN_ROLE], self.sender),
                }
        else:
            authorized = (ROLES[DEFAULT_ADMIN_ROLE], self.sender) in self.roles[action.target]
            reverted = reverted or not authorized
            if not reverted:
                membership = (action.role, action.principal)
                if action.method == "grantRole":
                    self.roles[action.target].add(membership)
                else:
                    self.roles[action.target].discard(membership)
        if not reverted:
            self.mined.append(action)
        return Receipt(
            tx_hash=tx_hash, status=0 if reverted else 1, block_number=self.block, contract_address=address
        )

    def wait_for_receipt(self, tx_hash, timeout=RECEIPT_TIMEOUT, confirmations=DEFAULT_CONFIRMATIONS):
        if self.receipt_timeouts:
            self.receipt_timeouts -= 1
            raise RpcTimeoutError("Timed out waiting for receipt", tx_hash=tx_hash)
        return self._receipts[tx_hash]

    # helpers

    def actions(self, method: str) -> List[Action]:
        return [action for action in self.mined if action.method == method]

    def holds(self, address, role_name: str, principal) -> bool:
        return (ROLES[role_name], principal) in self.roles[address]


def fake_artifact(kind: ContractKind, build_dir=None) -> ContractArtifact:
    abi = list()
    if kind == ContractKind.VAULT:
        abi.append(
            {"type": "constructor", "inputs": VAULT_CONSTRUCTOR_INPUTS, "stateMutability": "nonpayable"}
        )
    return ContractArtifact(name=kind.value, abi=abi, bytecode="0x6080604052")


# Fixtures
@pytest.fixture
def params():
    return _load_yaml(CONSTRUCTOR_PARAMS_DIR / "kairos.yml")


@pytest.fixture
def config(params, tmp_path):
    config = DeploymentConfig.from_config(params)
    config.manifest_filepath = tmp_path / "deployments" / "kairos.json"
    return config


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def store(config):
    return ManifestStore(config.manifest_filepath)


@pytest.fixture
def orchestrator(chain, config, store):
    return Orchestrator(
        chain, config, store=store, autosign=True, retry=FAST_RETRY, artifact_loader=fake_artifact
    )


@pytest.fixture
def deployed(orchestrator):
    orchestrator.deploy()
    return orchestrator.load()
