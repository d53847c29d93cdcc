from collections import OrderedDict
from enum import Enum
from typing import Dict, Iterable, List, NamedTuple, Tuple

from eth_typing import ChecksumAddress
from eth_utils import keccak

from jeonse_deployment.constants import (
    ADMIN_ROLE,
    ADMIN_ROLE_NAMES,
    COMPLIANCE_OFFICER_ROLE,
    DEFAULT_ADMIN_ROLE,
    FUNCTIONAL_ROLES,
    ORACLE_ROLE,
    ROLE_NAMES,
    VAULT_ROLE,
    VERIFIER_ROLE,
    ContractKind,
)
from jeonse_deployment.errors import ConfigurationError


class RoleId:
    """
    A 32-byte AccessControl role identifier.

    Equality and hashing use only the identifier bytes; the name is kept for display.
    """

    __slots__ = ("value", "name")

    def __init__(self, value: bytes, name: str = ""):
        if len(value) != 32:
            raise ValueError(f"Role identifiers are 32 bytes, got {len(value)}")
        self.value = bytes(value)
        self.name = name

    @classmethod
    def from_name(cls, name: str) -> "RoleId":
        if name == DEFAULT_ADMIN_ROLE:
            return cls(b"\x00" * 32, name)
        return cls(keccak(text=name), name)

    def hex(self) -> str:
        return "0x" + self.value.hex()

    def __eq__(self, other) -> bool:
        return isinstance(other, RoleId) and self.value == other.value

    def __hash__(self) -> int:
        return hash(self.value)

    def __repr__(self) -> str:
        return f"RoleId({self.name or self.hex()})"

    def __str__(self) -> str:
        return self.name or self.hex()


ROLES: Dict[str, RoleId] = OrderedDict((name, RoleId.from_name(name)) for name in ROLE_NAMES)
ADMIN_ROLES = frozenset(ROLES[name] for name in ADMIN_ROLE_NAMES)
FUNCTIONAL_ASSIGNMENTS = frozenset((kind, ROLES[name]) for kind, name in FUNCTIONAL_ROLES)


def get_role(name: str) -> RoleId:
    """Looks up a role in the canonical role table."""
    try:
        return ROLES[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown role '{name}'; expected one of {', '.join(ROLES)}"
        ) from None


class DesiredState(Enum):
    GRANTED = "granted"
    REVOKED = "revoked"


class RoleAssignment(NamedTuple):
    contract_kind: ContractKind
    role: RoleId
    principal: ChecksumAddress
    desired_state: DesiredState = DesiredState.GRANTED

    @property
    def key(self) -> Tuple[ContractKind, RoleId, ChecksumAddress]:
        return self.contract_kind, self.role, self.principal

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_functional(self) -> bool:
        return (self.contract_kind, self.role) in FUNCTIONAL_ASSIGNMENTS

    def __str__(self) -> str:
        return f"{self.contract_kind}.{self.role} {self.desired_state.value} {self.principal}"


def effective_assignments(assignments: Iterable[RoleAssignment]) -> List[RoleAssignment]:
    """
    Collapses a multi-phase role table to one assignment per
    (contract, role, principal) key; the latest phase wins.
    Keys keep the position of their first appearance.
    """
    latest = OrderedDict()
    for assignment in assignments:
        latest[assignment.key] = assignment
    return list(latest.values())


def transfer_phase(
    assignments: Iterable[RoleAssignment],
    previous_owner: ChecksumAddress,
    new_owner: ChecksumAddress,
) -> List[RoleAssignment]:
    """
    Builds the ownership transfer phase for a role table: every administrative
    grant held by the previous owner is granted to the new owner and revoked
    from the previous owner. Functional roles are never moved.
    """
    grants, revokes = list(), list()
    for assignment in effective_assignments(assignments):
        if assignment.is_functional or not assignment.is_admin:
            continue
        if assignment.principal != previous_owner:
            continue
        if assignment.desired_state != DesiredState.GRANTED:
            continue
        grants.append(assignment._replace(principal=new_owner))
        revokes.append(assignment._replace(desired_state=DesiredState.REVOKED))
    return grants + revokes


#
# Canonical role table
#

DEPLOYER = "$deployer"

DEFAULT_ROLE_TABLE = OrderedDict(
    [
        (
            ContractKind.PROPERTY_ORACLE,
            OrderedDict(
                [
                    (DEFAULT_ADMIN_ROLE, [DEPLOYER]),
                    (ADMIN_ROLE, [DEPLOYER]),
                    (ORACLE_ROLE, [DEPLOYER]),
                    (VERIFIER_ROLE, [DEPLOYER]),
                ]
            ),
        ),
        (
            ContractKind.COMPLIANCE_MODULE,
            OrderedDict(
                [
                    (DEFAULT_ADMIN_ROLE, [DEPLOYER]),
                    (ADMIN_ROLE, [DEPLOYER]),
                    (VERIFIER_ROLE, [DEPLOYER]),
                    (COMPLIANCE_OFFICER_ROLE, [DEPLOYER]),
                ]
            ),
        ),
        (
            ContractKind.INVESTMENT_POOL,
            OrderedDict(
                [
                    (DEFAULT_ADMIN_ROLE, [DEPLOYER]),
                    (ADMIN_ROLE, [DEPLOYER]),
                    (VAULT_ROLE, [f"${ContractKind.VAULT.value}"]),
                ]
            ),
        ),
        (
            ContractKind.VAULT,
            OrderedDict(
                [
                    (DEFAULT_ADMIN_ROLE, [DEPLOYER]),
                    (ADMIN_ROLE, [DEPLOYER]),
                ]
            ),
        ),
    ]
)
