import logging
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import click

from jeonse_deployment.chain import ChainClient, PreparedTransaction, Receipt, RetryPolicy
from jeonse_deployment.confirm import _confirm_resolution, _continue
from jeonse_deployment.constants import (
    BUILD_DIR,
    DEFAULT_CONFIRMATIONS,
    DEPLOYMENT_GAS_ESTIMATE,
    RECEIPT_TIMEOUT,
    ContractKind,
)
from jeonse_deployment.errors import (
    ConfigurationError,
    DeploymentRevertedError,
    InsufficientFundsError,
    TransactionWouldRevertError,
)
from jeonse_deployment.graph import ContractSpec
from jeonse_deployment.manifest import DeployedContract, DeploymentManifest, ManifestStore
from jeonse_deployment.params import (
    ResolutionContext,
    resolve_constructor_params,
    validate_constructor_params,
)
from jeonse_deployment.utils import ContractArtifact, load_artifact

logger = logging.getLogger(__name__)


class Transactor:
    """
    Represents the signing account plus confirmed, retried transaction execution.
    All transactions from one Transactor are sent strictly one after another.
    """

    def __init__(
        self,
        chain: ChainClient,
        autosign: bool = False,
        gas_price_ceiling: Optional[int] = None,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        receipt_timeout: int = RECEIPT_TIMEOUT,
        retry: RetryPolicy = RetryPolicy(),
    ):
        self.chain = chain
        self.autosign = autosign
        self.gas_price_ceiling = gas_price_ceiling
        self.confirmations = confirmations
        self.receipt_timeout = receipt_timeout
        self.retry = retry

    @property
    def sender(self):
        return self.chain.sender

    def gas_price(self) -> int:
        price = self.retry.call(self.chain.gas_price, description="gas price")
        if self.gas_price_ceiling is not None and price > self.gas_price_ceiling:
            logger.warning(
                "Network gas price %d wei exceeds the ceiling; using %d wei",
                price,
                self.gas_price_ceiling,
            )
            return self.gas_price_ceiling
        return price

    def execute(
        self,
        build: Callable[[int], PreparedTransaction],
        description: str,
        gas_price: Optional[int] = None,
        confirm: bool = True,
    ) -> Receipt:
        """Builds, signs, broadcasts and waits for one transaction."""
        if confirm and not self.autosign:
            click.echo(f"\nTransacting {description}")
            _continue()
        if gas_price is None:
            gas_price = self.gas_price()

        transaction = self.retry.call(build, gas_price, description=f"build {description}")
        logger.info("Transacting %s (tx %s)", description, transaction.tx_hash)
        tx_hash = self.retry.call(
            self.chain.broadcast, transaction, description=f"broadcast {description}"
        )
        receipt = self.retry.call(
            self.chain.wait_for_receipt,
            tx_hash,
            self.receipt_timeout,
            self.confirmations,
            description=f"receipt for {description}",
        )
        logger.info(
            "%s included in block %d with status %d", description, receipt.block_number, receipt.status
        )
        return receipt


class Deployer(Transactor):
    """Deploys contracts in order, recording each one in the manifest as soon as it is mined."""

    def __init__(
        self,
        chain: ChainClient,
        store: ManifestStore,
        build_dir: Path = BUILD_DIR,
        artifact_loader: Callable[[ContractKind, Path], ContractArtifact] = load_artifact,
        **kwargs,
    ):
        super().__init__(chain, **kwargs)
        self.store = store
        self.build_dir = build_dir
        self.artifact_loader = artifact_loader

    def _load_artifacts(
        self, kinds: Sequence[ContractKind], specs: Dict[ContractKind, ContractSpec]
    ) -> Dict[ContractKind, ContractArtifact]:
        artifacts = OrderedDict()
        for kind in kinds:
            try:
                spec = specs[kind]
            except KeyError:
                raise ConfigurationError(f"No contract spec for {kind}") from None
            artifact = self.artifact_loader(kind, self.build_dir)
            validate_constructor_params(spec, artifact)
            artifacts[kind] = artifact
        return artifacts

    def estimate_cost(self, count: int, gas_price: Optional[int] = None) -> int:
        """Conservative cost, in wei, of deploying `count` contracts."""
        if gas_price is None:
            gas_price = self.gas_price()
        return DEPLOYMENT_GAS_ESTIMATE * gas_price * count

    def check_funds(self, gas_price: int, count: int = 1) -> None:
        required = self.estimate_cost(count, gas_price)
        balance = self.retry.call(self.chain.get_balance, self.sender, description="balance")
        if balance < required:
            raise InsufficientFundsError(address=self.sender, required=required, balance=balance)

    def deploy(
        self,
        order: Sequence[ContractKind],
        specs: Dict[ContractKind, ContractSpec],
        manifest: DeploymentManifest,
        resolve_args: Optional[Callable[[ContractKind], List[Any]]] = None,
    ) -> List[DeployedContract]:
        """
        Deploys every contract of `order` missing from the manifest.
        Contracts already recorded are skipped, so a rerun after a crash
        continues where the previous run stopped.
        """
        pending = [kind for kind in order if kind not in manifest.contracts]
        for kind in order:
            if kind in manifest.contracts:
                logger.info(
                    "%s already deployed at %s; skipping", kind, manifest.contracts[kind].address
                )
        artifacts = self._load_artifacts(pending, specs)

        deployed = list()
        for kind in pending:
            if resolve_args is None:
                context = ResolutionContext(deployer=self.sender, addresses=manifest.addresses)
                resolved = resolve_constructor_params(specs[kind], context)
            else:
                args = resolve_args(kind)
                resolved = OrderedDict((f"arg{i}", value) for i, value in enumerate(args))

            if not self.autosign:
                _confirm_resolution(resolved, kind.value)
            entry = self._deploy_contract(kind, artifacts[kind], list(resolved.values()))
            manifest.record(entry)
            self.store.save(manifest)
            logger.info("%s deployed at %s (tx %s)", kind, entry.address, entry.tx_hash)
            deployed.append(entry)
        return deployed

    def _deploy_contract(
        self, kind: ContractKind, artifact: ContractArtifact, args: List[Any]
    ) -> DeployedContract:
        gas_price = self.gas_price()
        self.check_funds(gas_price)

        try:
            receipt = self.execute(
                lambda price: self.chain.build_deployment(artifact, args, price),
                description=f"deploy {kind}",
                gas_price=gas_price,
                confirm=False,
            )
        except TransactionWouldRevertError as error:
            raise DeploymentRevertedError(kind=kind, tx_hash=None, reason=error.reason) from error
        if not receipt.succeeded or not receipt.contract_address:
            raise DeploymentRevertedError(kind=kind, tx_hash=receipt.tx_hash)

        return DeployedContract.create(
            kind=kind,
            address=receipt.contract_address,
            constructor_args=args,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
        )
