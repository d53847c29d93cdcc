import logging
from pathlib import Path
from typing import List, NamedTuple, Optional

from eth_typing import ChecksumAddress

from jeonse_deployment.chain import ChainClient, RetryPolicy
from jeonse_deployment.constants import (
    DEFAULT_CONFIRMATIONS,
    ENV_FILENAME,
    ENV_NAMES,
    NETWORKS,
    VERIFY_MAX_WORKERS,
)
from jeonse_deployment.deployer import Deployer
from jeonse_deployment.errors import ConfigurationError, DeploymentError
from jeonse_deployment.graph import resolve_order
from jeonse_deployment.manifest import DeployedContract, DeploymentManifest, ManifestStore
from jeonse_deployment.ownership import OwnershipTransferCoordinator
from jeonse_deployment.params import DeploymentConfig
from jeonse_deployment.provisioner import RoleProvisioner
from jeonse_deployment.roles import RoleAssignment
from jeonse_deployment.utils import check_chain_id, load_artifact
from jeonse_deployment.verifier import VerificationReport, Verifier

logger = logging.getLogger(__name__)


class DeploymentResult(NamedTuple):
    deployed: List[DeployedContract]
    report: Optional[VerificationReport]


class BalanceCheck(NamedTuple):
    address: ChecksumAddress
    balance: int
    required: int
    pending: int

    @property
    def sufficient(self) -> bool:
        return self.balance >= self.required


class Orchestrator:
    """
    Runs the deployment stages against one manifest:
    order -> deploy -> provision roles -> verify, and ownership transfer.
    Every mutating run holds the manifest lock.
    """

    def __init__(
        self,
        chain: ChainClient,
        config: DeploymentConfig,
        store: Optional[ManifestStore] = None,
        autosign: bool = False,
        gas_price_ceiling: Optional[int] = None,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        retry: RetryPolicy = RetryPolicy(),
        max_workers: int = VERIFY_MAX_WORKERS,
        artifact_loader=load_artifact,
    ):
        check_chain_id(config.network, config.chain_id, chain.chain_id)
        self.chain = chain
        self.config = config
        self.store = store or ManifestStore(config.manifest_filepath)
        transactor_kwargs = dict(
            autosign=autosign,
            gas_price_ceiling=gas_price_ceiling,
            confirmations=confirmations,
            retry=retry,
        )
        self.deployer = Deployer(
            chain,
            self.store,
            build_dir=config.build_dir,
            artifact_loader=artifact_loader,
            **transactor_kwargs,
        )
        self.provisioner = RoleProvisioner(chain, **transactor_kwargs)
        self.verifier = Verifier(chain, max_workers=max_workers, retry=retry)

    def expected_roles(self, manifest: DeploymentManifest) -> List[RoleAssignment]:
        return self.config.role_table.expected(manifest)

    def load(self) -> DeploymentManifest:
        return self.store.load()

    def deploy(self, provision_roles: bool = True) -> DeploymentResult:
        order = resolve_order(self.config.specs)
        logger.info("Deployment order: %s", ", ".join(str(kind) for kind in order))

        with self.store.lock():
            manifest = self.store.load()
            manifest.initialize(self.config.network, self.chain.chain_id, self.chain.sender)
            if manifest.deployer != self.chain.sender:
                raise ConfigurationError(
                    f"Manifest was deployed by {manifest.deployer}, "
                    f"but the signing account is {self.chain.sender}."
                )
            self.store.save(manifest)

            deployed = self.deployer.deploy(order, self.config.specs_by_kind, manifest)
            if not provision_roles:
                return DeploymentResult(deployed=deployed, report=None)

            try:
                self.provisioner.apply_roles(self.expected_roles(manifest), manifest)
            except DeploymentError:
                logger.warning("Role provisioning incomplete; manifest marked unverified")
                manifest.unverified = True
                self.store.save(manifest)
                raise
            report = self.verifier.verify(manifest, self.expected_roles(manifest))
            manifest.unverified = not report.passed
            self.store.save(manifest)
        return DeploymentResult(deployed=deployed, report=report)

    def verify(self) -> VerificationReport:
        manifest = self.store.load()
        if manifest.is_empty:
            raise ConfigurationError(f"No manifest found at {self.store.filepath}; deploy first.")
        return self.verifier.verify(manifest, self.expected_roles(manifest))

    def clear_unverified(self, report: VerificationReport) -> bool:
        """Clears the unverified flag after a passing verification."""
        with self.store.lock():
            manifest = self.store.load()
            if not (report.passed and manifest.unverified):
                return False
            manifest.unverified = False
            self.store.save(manifest)
        return True

    def transfer_ownership(self, new_owner: ChecksumAddress) -> VerificationReport:
        with self.store.lock():
            manifest = self.store.load()
            if manifest.is_empty:
                raise ConfigurationError(f"No manifest found at {self.store.filepath}; deploy first.")
            if manifest.current_owner != self.chain.sender:
                raise ConfigurationError(
                    f"Ownership can only be transferred by the current owner "
                    f"{manifest.current_owner}, not {self.chain.sender}."
                )
            coordinator = OwnershipTransferCoordinator(self.provisioner, self.verifier, self.store)
            return coordinator.transfer_ownership(manifest, new_owner, self.expected_roles(manifest))

    def check_balance(self) -> BalanceCheck:
        manifest = self.store.load()
        pending = [spec.kind for spec in self.config.specs if spec.kind not in manifest.contracts]
        balance = self.deployer.retry.call(self.chain.get_balance, self.chain.sender)
        return BalanceCheck(
            address=self.chain.sender,
            balance=balance,
            required=self.deployer.estimate_cost(len(pending)),
            pending=len(pending),
        )


def render_env(manifest: DeploymentManifest, rpc_url: str = "") -> str:
    """Frontend environment variables for a deployed manifest."""
    if not rpc_url and manifest.network in NETWORKS:
        rpc_url = NETWORKS[manifest.network].rpc_url
    lines = [f"# Contract Addresses - {manifest.network} (chain {manifest.chain_id})"]
    for kind, entry in manifest.contracts.items():
        lines.append(f"NEXT_PUBLIC_{ENV_NAMES[kind]}_ADDRESS={entry.address}")
    lines += [
        "",
        "# Network Configuration",
        f"NEXT_PUBLIC_CHAIN_ID={manifest.chain_id}",
        f"NEXT_PUBLIC_KAIA_RPC_URL={rpc_url}",
        "",
    ]
    return "\n".join(lines)


def export_env(manifest: DeploymentManifest, filepath: Path = Path(ENV_FILENAME), rpc_url: str = "") -> Path:
    if not manifest.contracts:
        raise ConfigurationError("Manifest has no deployed contracts to export.")
    filepath.write_text(render_env(manifest, rpc_url=rpc_url))
    return filepath
