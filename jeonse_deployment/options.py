from pathlib import Path

import click

from jeonse_deployment.constants import (
    DEFAULT_CONFIRMATIONS,
    ENV_FILENAME,
    GAS_PRICE_CEILING_ENVVAR,
    RPC_URL_ENVVAR,
    SUPPORTED_NETWORKS,
)
from jeonse_deployment.types import ChecksumAddress, MinInt

network_option = click.option(
    "--network",
    "-n",
    help="Network to deploy to; selects the default parameters file and RPC endpoint.",
    type=click.Choice(SUPPORTED_NETWORKS),
    required=True,
)

rpc_url_option = click.option(
    "--rpc-url",
    help="JSON-RPC endpoint; defaults to the network's public endpoint.",
    envvar=RPC_URL_ENVVAR,
    type=str,
    required=False,
)

params_option = click.option(
    "--params-filepath",
    "-p",
    help="Deployment parameters YAML; defaults to the bundled file for the network.",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=False,
)

manifest_option = click.option(
    "--manifest",
    "-m",
    "manifest_filepath",
    help="Manifest filepath; overrides the one named in the parameters file.",
    type=click.Path(dir_okay=False, path_type=Path),
    required=False,
)

gas_price_ceiling_option = click.option(
    "--gas-price-ceiling",
    help="Maximum gas price in wei.",
    envvar=GAS_PRICE_CEILING_ENVVAR,
    type=MinInt(1),
    required=False,
)

confirmations_option = click.option(
    "--confirmations",
    "-c",
    help="Blocks to wait for after a transaction is mined.",
    type=MinInt(1),
    default=DEFAULT_CONFIRMATIONS,
    show_default=True,
)

auto_option = click.option(
    "--auto",
    help="Automatically sign transactions.",
    is_flag=True,
)

new_owner_option = click.option(
    "--to",
    "new_owner",
    help="Address of the new owner.",
    type=ChecksumAddress(),
    required=True,
)

skip_roles_option = click.option(
    "--skip-roles",
    help="Deploy contracts without provisioning the role table.",
    is_flag=True,
)

env_filepath_option = click.option(
    "--output",
    "-o",
    "env_filepath",
    help="Frontend env file to write.",
    type=click.Path(dir_okay=False, path_type=Path),
    default=ENV_FILENAME,
    show_default=True,
)
