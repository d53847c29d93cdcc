import logging
from collections import OrderedDict
from typing import Dict, Iterable, List

from jeonse_deployment.chain import Receipt
from jeonse_deployment.constants import DEFAULT_ADMIN_ROLE, ContractKind
from jeonse_deployment.deployer import Transactor
from jeonse_deployment.errors import (
    ConfigurationError,
    RoleProvisioningError,
    RoleTransactionRevertedError,
    TransactionWouldRevertError,
)
from jeonse_deployment.manifest import DeploymentManifest
from jeonse_deployment.roles import ROLES, DesiredState, RoleAssignment, effective_assignments

logger = logging.getLogger(__name__)

GRANT, REVOKE = "grantRole", "revokeRole"


def plan_assignments(
    assignments: Iterable[RoleAssignment],
) -> "OrderedDict[ContractKind, List[RoleAssignment]]":
    """
    Groups the effective assignments by contract. Within a contract every
    grant comes before any revoke, so a revoked admin is only removed once
    its successor has been provisioned, and DEFAULT_ADMIN_ROLE is revoked
    last since it authorizes every other revoke.
    """
    grouped = OrderedDict()
    for assignment in effective_assignments(assignments):
        grouped.setdefault(assignment.contract_kind, list()).append(assignment)

    plan = OrderedDict()
    for kind, group in grouped.items():
        grants = [a for a in group if a.desired_state == DesiredState.GRANTED]
        revokes = [a for a in group if a.desired_state == DesiredState.REVOKED]
        revokes.sort(key=lambda a: a.role == ROLES[DEFAULT_ADMIN_ROLE])
        plan[kind] = grants + revokes
    return plan


class RoleProvisioner(Transactor):
    """Applies a declarative role table, skipping assignments the chain already satisfies."""

    def apply_roles(
        self, assignments: Iterable[RoleAssignment], manifest: DeploymentManifest
    ) -> List[Receipt]:
        """
        A reverted transaction halts the remaining work of its contract only;
        independent contracts are still provisioned and all halts are raised together.
        """
        receipts = list()
        failures: Dict[ContractKind, Exception] = OrderedDict()
        for kind, ordered in plan_assignments(assignments).items():
            entry = manifest.contracts.get(kind)
            if entry is None:
                failures[kind] = ConfigurationError(f"{kind} is not deployed")
                continue
            try:
                receipts.extend(self._apply_contract(kind, entry.address, ordered))
            except (RoleTransactionRevertedError, ConfigurationError) as error:
                logger.error("Halting role provisioning for %s: %s", kind, error)
                failures[kind] = error

        if failures:
            raise RoleProvisioningError(failures)
        return receipts

    def holds(self, address, assignment: RoleAssignment) -> bool:
        return self.retry.call(
            self.chain.has_role,
            address,
            assignment.role,
            assignment.principal,
            description=f"hasRole on {assignment.contract_kind}",
        )

    def _apply_contract(
        self, kind: ContractKind, address, ordered: List[RoleAssignment]
    ) -> List[Receipt]:
        receipts = list()
        for assignment in ordered:
            granted = assignment.desired_state == DesiredState.GRANTED
            if self.holds(address, assignment) == granted:
                logger.info("%s already satisfied; skipping", assignment)
                continue
            if not granted and assignment.is_admin:
                self._check_successor(kind, address, assignment, ordered)

            method = GRANT if granted else REVOKE
            try:
                receipt = self.execute(
                    lambda price, a=assignment, m=method: self.chain.build_role_transaction(
                        address, m, a.role, a.principal, price
                    ),
                    description=f"{kind}.{method}({assignment.role}, {assignment.principal})",
                )
            except TransactionWouldRevertError as error:
                raise RoleTransactionRevertedError(
                    kind, method, assignment.role, assignment.principal, None, reason=error.reason
                ) from error
            if not receipt.succeeded:
                raise RoleTransactionRevertedError(
                    kind, method, assignment.role, assignment.principal, receipt.tx_hash
                )
            receipts.append(receipt)
        return receipts

    def _check_successor(
        self, kind: ContractKind, address, revoke: RoleAssignment, ordered: List[RoleAssignment]
    ) -> None:
        """Refuses to revoke an admin role unless another principal already holds it."""
        successors = [
            a
            for a in ordered
            if a.role == revoke.role
            and a.principal != revoke.principal
            and a.desired_state == DesiredState.GRANTED
        ]
        if not any(self.holds(address, successor) for successor in successors):
            raise ConfigurationError(
                f"Refusing to revoke {revoke.role} from {revoke.principal} on {kind}: "
                "no other principal holds it, the contract would be left without an admin."
            )
