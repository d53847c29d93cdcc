from collections import OrderedDict

import click

from jeonse_deployment.params import ZERO_ADDRESS


def _continue() -> None:
    """Asks the operator to continue; aborts the command otherwise."""
    click.confirm("Continue?", default=True, abort=True)


def _confirm_deployment(contract_name: str) -> None:
    """Asks the operator to confirm the deployment of a single contract."""
    click.confirm(f"Deploy {contract_name}?", default=True, abort=True)


def _confirm_zero_address() -> None:
    click.confirm(
        "Zero Address detected for deployment parameter; Continue?", default=False, abort=True
    )


def _confirm_resolution(resolved_params: OrderedDict, contract_name: str) -> None:
    """Asks the operator to confirm the resolved constructor parameters for a single contract."""
    if len(resolved_params) == 0:
        click.echo(f"\n(i) No constructor parameters for {contract_name}")
        _confirm_deployment(contract_name)
        return

    click.echo(f"\nConstructor parameters for {contract_name}")
    contains_zero_address = False
    for name, resolved_value in resolved_params.items():
        click.echo(f"\t{name}={resolved_value}")
        if not contains_zero_address:
            contains_zero_address = resolved_value == ZERO_ADDRESS
    _confirm_deployment(contract_name)
    if contains_zero_address:
        _confirm_zero_address()
