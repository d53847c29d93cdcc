import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import click

from jeonse_deployment.chain import ChainClient, Web3ChainClient
from jeonse_deployment.constants import CONSTRUCTOR_PARAMS_DIR, NETWORKS, PRIVATE_KEY_ENVVAR
from jeonse_deployment.errors import (
    ConfigurationError,
    DeploymentError,
    ManifestLockedError,
    VerificationMismatchError,
)
from jeonse_deployment.manifest import ManifestStore
from jeonse_deployment.options import (
    auto_option,
    confirmations_option,
    env_filepath_option,
    gas_price_ceiling_option,
    manifest_option,
    network_option,
    new_owner_option,
    params_option,
    rpc_url_option,
    skip_roles_option,
)
from jeonse_deployment.orchestrator import Orchestrator, export_env
from jeonse_deployment.params import DeploymentConfig
from jeonse_deployment.utils import explorer_url
from jeonse_deployment.verifier import VerificationReport


def _connect(network: str, rpc_url: Optional[str]) -> ChainClient:
    private_key = os.environ.get(PRIVATE_KEY_ENVVAR)
    if not private_key:
        raise click.UsageError(f"{PRIVATE_KEY_ENVVAR} is not set.")
    rpc_url = rpc_url or NETWORKS[network].rpc_url
    return Web3ChainClient.connect(rpc_url=rpc_url, private_key=private_key)


def _load_config(network: str, params_filepath: Optional[Path], manifest_filepath: Optional[Path]):
    params_filepath = params_filepath or CONSTRUCTOR_PARAMS_DIR / f"{network}.yml"
    config = DeploymentConfig.from_yaml(params_filepath)
    if config.network != network:
        raise ConfigurationError(
            f"Parameters file {params_filepath} is for {config.network}, not {network}."
        )
    if manifest_filepath:
        config.manifest_filepath = manifest_filepath
    return config


def _orchestrator(
    network, rpc_url, params_filepath, manifest_filepath, **kwargs
) -> Orchestrator:
    config = _load_config(network, params_filepath, manifest_filepath)
    chain = _connect(network, rpc_url)
    click.echo(
        "\n".join(
            [
                f"Account: {chain.sender}",
                f"Network: {network}",
                f"Chain ID: {chain.chain_id}",
                f"Config: {config.path}",
                f"Manifest: {config.manifest_filepath}",
            ]
        )
    )
    return Orchestrator(chain=chain, config=config, store=ManifestStore(config.manifest_filepath), **kwargs)


@contextmanager
def _surface_errors():
    try:
        yield
    except DeploymentError as error:
        raise click.ClickException(str(error)) from error


def _echo_report(report: VerificationReport) -> None:
    for kind, contract in report.per_contract.items():
        status = "OK" if not contract.mismatches else "MISMATCH"
        code = "code present" if contract.code_present else "no code"
        held = len(contract.expected_roles & contract.actual_roles)
        click.echo(
            f"[{status}] {kind} at {contract.address}: {code}, "
            f"{held}/{len(contract.expected_roles)} expected roles held"
        )
    if report.passed:
        click.echo("(i) Verification passed.")
        return
    click.echo(f"\n{len(report.mismatches)} mismatch(es):")
    for number, mismatch in enumerate(report.mismatches, start=1):
        click.echo(f"\t{number}. {mismatch}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log every chain interaction.")
def cli(verbose):
    """Deploys and administers the JeonseVault contract suite."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@network_option
@rpc_url_option
@params_option
@manifest_option
@gas_price_ceiling_option
@confirmations_option
@auto_option
@skip_roles_option
def deploy(
    network,
    rpc_url,
    params_filepath,
    manifest_filepath,
    gas_price_ceiling,
    confirmations,
    auto,
    skip_roles,
):
    """Deploy missing contracts, provision roles and verify."""
    with _surface_errors():
        orchestrator = _orchestrator(
            network,
            rpc_url,
            params_filepath,
            manifest_filepath,
            autosign=auto,
            gas_price_ceiling=gas_price_ceiling,
            confirmations=confirmations,
        )
        if auto:
            click.echo("WARNING: Autosign is enabled. Transactions will be signed automatically.")
        result = orchestrator.deploy(provision_roles=not skip_roles)

    manifest = orchestrator.load()
    click.echo(f"\n(i) Deployed {len(result.deployed)} contract(s); manifest at {orchestrator.store.filepath}")
    for kind, entry in manifest.contracts.items():
        click.echo(f"\t{kind}: {entry.address} (tx {entry.tx_hash})")
        url = explorer_url(network, entry.address)
        if url:
            click.echo(f"\t\t{url}")

    if result.report is not None:
        _echo_report(result.report)
        if not result.report.passed:
            raise SystemExit(1)


@cli.command()
@network_option
@rpc_url_option
@params_option
@manifest_option
def verify(network, rpc_url, params_filepath, manifest_filepath):
    """Compare on-chain code and roles against the manifest. Exits 1 on any mismatch."""
    with _surface_errors():
        orchestrator = _orchestrator(network, rpc_url, params_filepath, manifest_filepath)
        report = orchestrator.verify()
        _echo_report(report)
        if report.passed and orchestrator.load().unverified:
            try:
                if orchestrator.clear_unverified(report):
                    click.echo("(i) Cleared the manifest's unverified flag.")
            except ManifestLockedError as error:
                click.echo(f"WARNING: The unverified flag was left set. {error}")
    if not report.passed:
        raise SystemExit(1)


@cli.command(name="transfer-ownership")
@network_option
@rpc_url_option
@params_option
@manifest_option
@gas_price_ceiling_option
@confirmations_option
@auto_option
@new_owner_option
def transfer_ownership(
    network,
    rpc_url,
    params_filepath,
    manifest_filepath,
    gas_price_ceiling,
    confirmations,
    auto,
    new_owner,
):
    """Move every administrative role to a new owner, keeping functional roles in place."""
    with _surface_errors():
        orchestrator = _orchestrator(
            network,
            rpc_url,
            params_filepath,
            manifest_filepath,
            autosign=auto,
            gas_price_ceiling=gas_price_ceiling,
            confirmations=confirmations,
        )
        try:
            report = orchestrator.transfer_ownership(new_owner)
        except VerificationMismatchError as error:
            _echo_report(error.report)
            raise SystemExit(1)
        _echo_report(report)
    click.echo(f"(i) {new_owner} is now the owner of every contract.")


@cli.command(name="check-balance")
@network_option
@rpc_url_option
@params_option
@manifest_option
@gas_price_ceiling_option
def check_balance(network, rpc_url, params_filepath, manifest_filepath, gas_price_ceiling):
    """Check that the deployer can pay for the contracts still to deploy."""
    with _surface_errors():
        orchestrator = _orchestrator(
            network, rpc_url, params_filepath, manifest_filepath, gas_price_ceiling=gas_price_ceiling
        )
        check = orchestrator.check_balance()
    click.echo(f"Balance: {check.balance} wei")
    click.echo(f"Estimated cost of {check.pending} pending deployment(s): {check.required} wei")
    if not check.sufficient:
        click.echo(f"Insufficient balance; at least {check.required} wei required.")
        raise SystemExit(1)
    click.echo("(i) Balance sufficient.")


@cli.command(name="export-env")
@network_option
@params_option
@manifest_option
@rpc_url_option
@env_filepath_option
def export_env_command(network, params_filepath, manifest_filepath, rpc_url, env_filepath):
    """Write the deployed addresses as frontend environment variables."""
    with _surface_errors():
        config = _load_config(network, params_filepath, manifest_filepath)
        manifest = ManifestStore(config.manifest_filepath).load()
        filepath = export_env(manifest, filepath=env_filepath, rpc_url=rpc_url or "")
    click.echo(f"(i) Environment written to {filepath}")


if __name__ == "__main__":
    cli()
