import logging
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Tuple

from eth_typing import ChecksumAddress

from jeonse_deployment.chain import ChainClient, RetryPolicy
from jeonse_deployment.constants import VERIFY_MAX_WORKERS, ContractKind
from jeonse_deployment.errors import VerificationMismatchError
from jeonse_deployment.manifest import DeployedContract, DeploymentManifest
from jeonse_deployment.roles import DesiredState, RoleAssignment, RoleId, effective_assignments

logger = logging.getLogger(__name__)

RoleMembership = Tuple[RoleId, ChecksumAddress]


class MismatchKind(Enum):
    MISSING_CONTRACT = "contract not deployed"
    MISSING_CODE = "missing bytecode"
    MISSING_GRANT = "missing grant"
    UNEXPECTED_GRANT = "unexpected residual grant"


class Mismatch(NamedTuple):
    kind: MismatchKind
    contract_kind: ContractKind
    role: Optional[RoleId] = None
    principal: Optional[ChecksumAddress] = None

    def __str__(self) -> str:
        if self.role is None:
            return f"{self.contract_kind}: {self.kind.value}"
        return f"{self.contract_kind}: {self.kind.value} {self.role} for {self.principal}"


class ContractReport(NamedTuple):
    kind: ContractKind
    address: Optional[ChecksumAddress]
    code_present: bool
    expected_roles: FrozenSet[RoleMembership]
    actual_roles: FrozenSet[RoleMembership]
    mismatches: Tuple[Mismatch, ...]


class VerificationReport(NamedTuple):
    per_contract: Dict[ContractKind, ContractReport]

    @property
    def mismatches(self) -> List[Mismatch]:
        return [m for report in self.per_contract.values() for m in report.mismatches]

    @property
    def passed(self) -> bool:
        return not self.mismatches

    def raise_for_mismatches(self) -> None:
        if not self.passed:
            raise VerificationMismatchError(self)


class Verifier:
    """
    Compares on-chain state against a manifest and role table. Read-only and
    exhaustive: every mismatch is reported, not just the first one.
    """

    def __init__(
        self,
        chain: ChainClient,
        max_workers: int = VERIFY_MAX_WORKERS,
        retry: RetryPolicy = RetryPolicy(),
    ):
        self.chain = chain
        self.max_workers = max_workers
        self.retry = retry

    def verify(
        self, manifest: DeploymentManifest, assignments: Iterable[RoleAssignment]
    ) -> VerificationReport:
        by_kind = OrderedDict((kind, list()) for kind in manifest.contracts)
        for assignment in effective_assignments(assignments):
            by_kind.setdefault(assignment.contract_kind, list()).append(assignment)

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = OrderedDict(
                (
                    kind,
                    executor.submit(
                        self._verify_contract, kind, manifest.contracts.get(kind), contract_assignments
                    ),
                )
                for kind, contract_assignments in by_kind.items()
            )
            per_contract = OrderedDict((kind, future.result()) for kind, future in futures.items())

        report = VerificationReport(per_contract=per_contract)
        for mismatch in report.mismatches:
            logger.warning("Verification mismatch: %s", mismatch)
        return report

    def _verify_contract(
        self,
        kind: ContractKind,
        entry: Optional[DeployedContract],
        assignments: List[RoleAssignment],
    ) -> ContractReport:
        expected = frozenset(
            (a.role, a.principal) for a in assignments if a.desired_state == DesiredState.GRANTED
        )
        if entry is None:
            return ContractReport(
                kind, None, False, expected, frozenset(), (Mismatch(MismatchKind.MISSING_CONTRACT, kind),)
            )

        code = self.retry.call(self.chain.get_code, entry.address, description=f"code of {kind}")
        if not code:
            # role queries against an address without code cannot be answered
            return ContractReport(
                kind,
                entry.address,
                False,
                expected,
                frozenset(),
                (Mismatch(MismatchKind.MISSING_CODE, kind),),
            )

        actual, mismatches = set(), list()
        for assignment in assignments:
            held = self.retry.call(
                self.chain.has_role,
                entry.address,
                assignment.role,
                assignment.principal,
                description=f"hasRole on {kind}",
            )
            if held:
                actual.add((assignment.role, assignment.principal))
            if assignment.desired_state == DesiredState.GRANTED and not held:
                mismatches.append(
                    Mismatch(MismatchKind.MISSING_GRANT, kind, assignment.role, assignment.principal)
                )
            elif assignment.desired_state == DesiredState.REVOKED and held:
                mismatches.append(
                    Mismatch(MismatchKind.UNEXPECTED_GRANT, kind, assignment.role, assignment.principal)
                )

        return ContractReport(
            kind, entry.address, True, expected, frozenset(actual), tuple(mismatches)
        )
