import logging
from collections import OrderedDict
from enum import Enum
from typing import Dict, List, Sequence

from eth_typing import ChecksumAddress

from jeonse_deployment.constants import ContractKind
from jeonse_deployment.errors import (
    ConfigurationError,
    DeploymentError,
    OwnershipTransferError,
    RoleProvisioningError,
)
from jeonse_deployment.manifest import DeploymentManifest, ManifestStore
from jeonse_deployment.provisioner import RoleProvisioner
from jeonse_deployment.roles import DesiredState, RoleAssignment, transfer_phase
from jeonse_deployment.verifier import VerificationReport, Verifier

logger = logging.getLogger(__name__)


class TransferState(Enum):
    ADMIN_HELD_BY_DEPLOYER = "admin held by deployer"
    ADMIN_GRANTED_TO_NEW_OWNER = "admin granted to new owner"
    ADMIN_REVOKED_FROM_DEPLOYER = "admin revoked from deployer"
    VERIFIED = "verified"


class OwnershipTransferCoordinator:
    """
    Moves the administrative roles of every contract from the current owner to a
    new owner in two phases separated by a barrier: the new owner is granted
    everything everywhere before anything is revoked anywhere.
    """

    def __init__(self, provisioner: RoleProvisioner, verifier: Verifier, store: ManifestStore):
        self.provisioner = provisioner
        self.verifier = verifier
        self.store = store
        self.states: Dict[ContractKind, TransferState] = OrderedDict()

    def transfer_ownership(
        self,
        manifest: DeploymentManifest,
        new_owner: ChecksumAddress,
        role_table: Sequence[RoleAssignment],
    ) -> VerificationReport:
        previous_owner = manifest.current_owner or manifest.deployer
        role_table = list(role_table)
        if new_owner == previous_owner:
            logger.info("%s already owns the deployment; nothing to transfer", new_owner)
            report = self.verifier.verify(manifest, role_table)
            report.raise_for_mismatches()
            return report

        phase = transfer_phase(role_table, previous_owner, new_owner)
        grants = [a for a in phase if a.desired_state == DesiredState.GRANTED]
        revokes = [a for a in phase if a.desired_state == DesiredState.REVOKED]
        if not grants:
            raise ConfigurationError(f"{previous_owner} holds no administrative role to transfer")

        self.states = OrderedDict((a.contract_kind, TransferState.ADMIN_HELD_BY_DEPLOYER) for a in grants)
        try:
            self._grant_new_owner(manifest, new_owner, grants)
            self._revoke_previous_owner(manifest, grants, revokes)
        except DeploymentError:
            self._mark_unverified(manifest)
            raise

        report = self.verifier.verify(manifest, role_table + phase)
        if not report.passed:
            self._mark_unverified(manifest)
            report.raise_for_mismatches()

        manifest.transfer_owner(new_owner)
        self.store.save(manifest)
        self._advance(self.states, TransferState.VERIFIED)
        logger.info("Ownership transferred from %s to %s", previous_owner, new_owner)
        return report

    def _grant_new_owner(
        self, manifest: DeploymentManifest, new_owner: ChecksumAddress, grants: List[RoleAssignment]
    ) -> None:
        try:
            self.provisioner.apply_roles(grants, manifest)
        except RoleProvisioningError as error:
            logger.error("Granting admin roles to %s failed: %s", new_owner, error)

        # barrier: re-read every grant, whether or not this run sent it
        pending = self.pending_grants(manifest, grants)
        self._advance(
            [kind for kind in self.states if kind not in pending],
            TransferState.ADMIN_GRANTED_TO_NEW_OWNER,
        )
        if pending:
            raise OwnershipTransferError(new_owner=new_owner, pending=pending)

    def _revoke_previous_owner(
        self,
        manifest: DeploymentManifest,
        grants: List[RoleAssignment],
        revokes: List[RoleAssignment],
    ) -> None:
        # grants are included so every revoke can see its successor; they are already held
        self.provisioner.apply_roles(grants + revokes, manifest)
        self._advance(self.states, TransferState.ADMIN_REVOKED_FROM_DEPLOYER)

    def pending_grants(
        self, manifest: DeploymentManifest, grants: List[RoleAssignment]
    ) -> List[ContractKind]:
        """Contracts on which the new owner is still missing at least one grant."""
        pending = list()
        for grant in grants:
            if grant.contract_kind in pending:
                continue
            entry = manifest.contracts.get(grant.contract_kind)
            if entry is None or not self.provisioner.holds(entry.address, grant):
                pending.append(grant.contract_kind)
        return pending

    def _advance(self, kinds, state: TransferState) -> None:
        for kind in list(kinds):
            self.states[kind] = state

    def _mark_unverified(self, manifest: DeploymentManifest) -> None:
        logger.warning("Manifest marked unverified; re-run verify after remediation")
        manifest.unverified = True
        self.store.save(manifest)
