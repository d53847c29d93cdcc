import pytest

from jeonse_deployment.constants import DEPLOYMENT_GAS_ESTIMATE, LOCALHOST, ContractKind
from jeonse_deployment.deployer import Transactor
from jeonse_deployment.errors import (
    ConfigurationError,
    DeploymentRevertedError,
    InsufficientFundsError,
    RpcTimeoutError,
)
from jeonse_deployment.orchestrator import Orchestrator
from tests.conftest import DEPLOYER, FAST_RETRY, GAS_PRICE, STRANGER, FakeChain

ORDER = [
    ContractKind.PROPERTY_ORACLE,
    ContractKind.COMPLIANCE_MODULE,
    ContractKind.INVESTMENT_POOL,
    ContractKind.VAULT,
]


def deployed_names(chain):
    return [action.target for action in chain.actions("deploy")]


def test_deploy(orchestrator, chain, store):
    result = orchestrator.deploy()
    assert result.report.passed
    assert [entry.kind for entry in result.deployed] == ORDER
    assert deployed_names(chain) == [kind.value for kind in ORDER]

    manifest = store.load()
    assert list(manifest.contracts) == ORDER
    assert manifest.deployer == DEPLOYER
    assert manifest.chain_id == 1001
    assert not manifest.unverified
    addresses = manifest.addresses
    assert manifest.contracts[ContractKind.VAULT].constructor_args == [
        addresses[ContractKind.PROPERTY_ORACLE],
        addresses[ContractKind.COMPLIANCE_MODULE],
        addresses[ContractKind.INVESTMENT_POOL],
    ]
    for address in addresses.values():
        assert chain.get_code(address)
    assert not store.lock_path.exists()


def test_second_run_sends_nothing(orchestrator, chain, store):
    orchestrator.deploy()
    sent = len(chain.mined)
    before = store.load()

    result = orchestrator.deploy()
    assert result.deployed == []
    assert result.report.passed
    assert len(chain.mined) == sent
    assert store.load().contracts == before.contracts


def test_resume_after_crash(orchestrator, chain, store):
    def killed(action):
        if action.method == "deploy" and action.target == ContractKind.INVESTMENT_POOL.value:
            return RuntimeError("process killed")

    chain.broadcast_failures.append(killed)
    with pytest.raises(RuntimeError):
        orchestrator.deploy()
    assert list(store.load().contracts) == ORDER[:2]
    assert not store.lock_path.exists()

    chain.broadcast_failures.clear()
    result = orchestrator.deploy()
    assert [entry.kind for entry in result.deployed] == ORDER[2:]
    assert deployed_names(chain) == [kind.value for kind in ORDER]
    assert result.report.passed


def test_insufficient_funds(orchestrator, chain, store):
    chain.balances[DEPLOYER] = DEPLOYMENT_GAS_ESTIMATE * GAS_PRICE - 1
    with pytest.raises(InsufficientFundsError) as error:
        orchestrator.deploy()
    assert error.value.required == DEPLOYMENT_GAS_ESTIMATE * GAS_PRICE
    assert chain.mined == []
    assert store.load().contracts == {}


def test_reverted_deployment(orchestrator, chain, store):
    chain.reverts.append(lambda action: action.target == ContractKind.INVESTMENT_POOL.value)
    with pytest.raises(DeploymentRevertedError) as error:
        orchestrator.deploy()
    assert error.value.kind == ContractKind.INVESTMENT_POOL
    assert error.value.tx_hash in str(error.value)
    assert list(store.load().contracts) == ORDER[:2]


def test_deployment_refused_by_gas_estimation(orchestrator, chain, store):
    chain.estimate_reverts.append(lambda action: action.target == ContractKind.VAULT.value)
    with pytest.raises(DeploymentRevertedError) as error:
        orchestrator.deploy()
    assert error.value.kind == ContractKind.VAULT
    assert error.value.tx_hash is None
    assert "not sent" in str(error.value)
    assert list(store.load().contracts) == ORDER[:3]
    assert deployed_names(chain) == [kind.value for kind in ORDER[:3]]


def test_receipt_timeout_is_retried(orchestrator, chain):
    chain.receipt_timeouts = FAST_RETRY.attempts - 1
    result = orchestrator.deploy()
    assert result.report.passed
    assert deployed_names(chain) == [kind.value for kind in ORDER]


def test_receipt_timeout_exhausted(orchestrator, chain, store):
    chain.receipt_timeouts = FAST_RETRY.attempts
    with pytest.raises(RpcTimeoutError) as error:
        orchestrator.deploy()
    assert error.value.tx_hash
    assert store.load().contracts == {}


def test_gas_price_ceiling(chain):
    assert Transactor(chain).gas_price() == GAS_PRICE
    assert Transactor(chain, gas_price_ceiling=GAS_PRICE // 2).gas_price() == GAS_PRICE // 2
    assert Transactor(chain, gas_price_ceiling=GAS_PRICE * 2).gas_price() == GAS_PRICE


def test_check_balance(orchestrator):
    check = orchestrator.check_balance()
    assert check.address == DEPLOYER
    assert check.pending == 4
    assert check.required == 4 * DEPLOYMENT_GAS_ESTIMATE * GAS_PRICE
    assert check.sufficient

    orchestrator.deploy()
    check = orchestrator.check_balance()
    assert check.pending == 0
    assert check.required == 0


def test_chain_id_mismatch(config, store):
    with pytest.raises(ConfigurationError, match="does not match"):
        Orchestrator(FakeChain(chain_id=8217), config, store=store)


def test_local_network_skips_chain_id_check(config, store):
    config.network = LOCALHOST
    Orchestrator(FakeChain(chain_id=1337), config, store=store)


def test_only_the_manifest_deployer_can_resume(orchestrator, chain):
    chain.broadcast_failures.append(lambda action: RuntimeError("killed") if action.method == "deploy" else None)
    with pytest.raises(RuntimeError):
        orchestrator.deploy()

    chain.broadcast_failures.clear()
    chain.account = STRANGER
    with pytest.raises(ConfigurationError, match="signing account"):
        orchestrator.deploy()
    assert chain.mined == []


def test_deploy_without_roles(orchestrator, chain):
    result = orchestrator.deploy(provision_roles=False)
    assert result.report is None
    assert chain.actions("grantRole") == []
    assert len(result.deployed) == 4
