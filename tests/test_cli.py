import json

import pytest
import yaml
from click.testing import CliRunner

from jeonse_deployment.cli import cli
from jeonse_deployment.constants import PRIVATE_KEY_ENVVAR, VAULT_ROLE, ContractKind
from jeonse_deployment.manifest import ManifestStore
from jeonse_deployment.roles import ROLES
from tests.conftest import DEPLOYER, NEW_OWNER, VAULT_CONSTRUCTOR_INPUTS


@pytest.fixture
def params_filepath(params, tmp_path):
    build_dir = tmp_path / "artifacts"
    for kind in ContractKind:
        abi = list()
        if kind == ContractKind.VAULT:
            abi.append({"type": "constructor", "inputs": VAULT_CONSTRUCTOR_INPUTS})
        artifact_dir = build_dir / f"{kind.value}.sol"
        artifact_dir.mkdir(parents=True)
        (artifact_dir / f"{kind.value}.json").write_text(json.dumps({"abi": abi, "bytecode": "6080604052"}))

    params["build"] = {"dir": str(build_dir)}
    params["artifacts"] = {"dir": str(tmp_path / "deployments"), "filename": "kairos.json"}
    filepath = tmp_path / "kairos.yml"
    filepath.write_text(yaml.safe_dump(params, sort_keys=False))
    return filepath


@pytest.fixture
def manifest_store(tmp_path):
    return ManifestStore(tmp_path / "deployments" / "kairos.json")


@pytest.fixture(autouse=True)
def connected(chain, monkeypatch):
    monkeypatch.setattr("jeonse_deployment.cli._connect", lambda network, rpc_url: chain)


def invoke(*args, **kwargs):
    return CliRunner().invoke(cli, [str(arg) for arg in args], **kwargs)


def deploy(params_filepath):
    return invoke("deploy", "-n", "kairos", "-p", params_filepath, "--auto")


def test_deploy(params_filepath, manifest_store, chain):
    result = deploy(params_filepath)
    assert result.exit_code == 0, result.output
    assert "Verification passed" in result.output
    assert "https://kairos.kaiascan.io/address/" in result.output
    assert f"Account: {DEPLOYER}" in result.output
    assert len(manifest_store.load().contracts) == 4
    assert len(chain.actions("deploy")) == 4


def test_deploy_aborted_at_confirmation(params_filepath, chain):
    result = invoke("deploy", "-n", "kairos", "-p", params_filepath, input="n\n")
    assert result.exit_code == 1
    assert "Deploy PropertyOracle?" in result.output
    assert chain.mined == []


def test_verify(params_filepath, chain, manifest_store):
    deploy(params_filepath)
    result = invoke("verify", "-n", "kairos", "-p", params_filepath)
    assert result.exit_code == 0, result.output
    assert "[OK] JeonseVault" in result.output

    manifest = manifest_store.load()
    pool = manifest.addresses[ContractKind.INVESTMENT_POOL]
    chain.roles[pool].discard((ROLES[VAULT_ROLE], manifest.addresses[ContractKind.VAULT]))
    result = invoke("verify", "-n", "kairos", "-p", params_filepath)
    assert result.exit_code == 1
    assert "[MISMATCH] InvestmentPool" in result.output
    assert "missing grant VAULT_ROLE" in result.output


def test_verify_with_stale_lock(params_filepath, manifest_store):
    deploy(params_filepath)
    manifest_store.lock_path.write_text("4242")
    result = invoke("verify", "-n", "kairos", "-p", params_filepath)
    assert result.exit_code == 0, result.output
    assert "WARNING" not in result.output

    manifest = manifest_store.load()
    manifest.unverified = True
    manifest_store.save(manifest)
    result = invoke("verify", "-n", "kairos", "-p", params_filepath)
    assert result.exit_code == 0, result.output
    assert "Verification passed" in result.output
    assert "WARNING: The unverified flag was left set" in result.output
    assert manifest_store.load().unverified

    manifest_store.lock_path.unlink()
    result = invoke("verify", "-n", "kairos", "-p", params_filepath)
    assert "Cleared the manifest's unverified flag" in result.output
    assert not manifest_store.load().unverified


def test_verify_before_deploy(params_filepath):
    result = invoke("verify", "-n", "kairos", "-p", params_filepath)
    assert result.exit_code == 1
    assert "deploy first" in result.output


def test_transfer_ownership(params_filepath, manifest_store):
    deploy(params_filepath)
    result = invoke("transfer-ownership", "-n", "kairos", "-p", params_filepath, "--auto", "--to", NEW_OWNER.lower())
    assert result.exit_code == 0, result.output
    assert f"{NEW_OWNER} is now the owner" in result.output
    assert manifest_store.load().current_owner == NEW_OWNER


def test_transfer_to_current_owner_reports_mismatches(params_filepath, manifest_store, chain):
    deploy(params_filepath)
    manifest = manifest_store.load()
    pool = manifest.addresses[ContractKind.INVESTMENT_POOL]
    chain.roles[pool].discard((ROLES[VAULT_ROLE], manifest.addresses[ContractKind.VAULT]))

    result = invoke("transfer-ownership", "-n", "kairos", "-p", params_filepath, "--auto", "--to", DEPLOYER)
    assert result.exit_code == 1
    assert "[MISMATCH] InvestmentPool" in result.output
    assert "is now the owner" not in result.output
    assert manifest_store.load().current_owner == DEPLOYER


def test_transfer_ownership_rejects_bad_address(params_filepath):
    result = invoke("transfer-ownership", "-n", "kairos", "-p", params_filepath, "--to", "0x1234")
    assert result.exit_code == 2
    assert "not a valid address" in result.output


def test_check_balance(params_filepath, chain):
    result = invoke("check-balance", "-n", "kairos", "-p", params_filepath)
    assert result.exit_code == 0, result.output
    assert "4 pending deployment(s)" in result.output

    chain.balances[DEPLOYER] = 0
    result = invoke("check-balance", "-n", "kairos", "-p", params_filepath)
    assert result.exit_code == 1
    assert "Insufficient balance" in result.output


def test_export_env(params_filepath, manifest_store, tmp_path):
    deploy(params_filepath)
    env_filepath = tmp_path / ".env.local"
    result = invoke("export-env", "-n", "kairos", "-p", params_filepath, "-o", env_filepath)
    assert result.exit_code == 0, result.output

    contents = env_filepath.read_text()
    vault = manifest_store.load().addresses[ContractKind.VAULT]
    assert f"NEXT_PUBLIC_JEONSE_VAULT_ADDRESS={vault}" in contents
    assert "NEXT_PUBLIC_CHAIN_ID=1001" in contents
    assert "NEXT_PUBLIC_KAIA_RPC_URL=https://public-en-kairos.node.kaia.io" in contents


def test_export_env_without_deployment(params_filepath, tmp_path):
    result = invoke("export-env", "-n", "kairos", "-p", params_filepath, "-o", tmp_path / ".env.local")
    assert result.exit_code == 1
    assert "no deployed contracts" in result.output


def test_params_for_another_network(params_filepath):
    result = invoke("verify", "-n", "kaia", "-p", params_filepath)
    assert result.exit_code == 1
    assert "is for kairos, not kaia" in result.output


def test_missing_private_key(params_filepath, monkeypatch):
    monkeypatch.undo()
    monkeypatch.delenv(PRIVATE_KEY_ENVVAR, raising=False)
    result = invoke("verify", "-n", "kairos", "-p", params_filepath)
    assert result.exit_code == 2
    assert f"{PRIVATE_KEY_ENVVAR} is not set" in result.output
