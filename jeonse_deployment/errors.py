from typing import Dict, List, Optional, Sequence


class DeploymentError(Exception):
    """Base class for every failure surfaced by the orchestrator."""


class ConfigurationError(DeploymentError, ValueError):
    """Bad deployment parameters, role table or dependency graph. Never retried."""


class CyclicDependencyError(ConfigurationError):
    def __init__(self, members: Sequence):
        self.members = list(members)
        cycle = " -> ".join(str(m) for m in self.members + self.members[:1])
        super().__init__(f"Cyclic contract dependency detected: {cycle}")


class InsufficientFundsError(DeploymentError):
    def __init__(self, address: str, required: int, balance: int):
        self.address = address
        self.required = required
        self.balance = balance
        super().__init__(
            f"Insufficient funds in {address}: at least {required} wei required, "
            f"balance is {balance} wei (short by {required - balance} wei)."
        )


class TransactionRevertedError(DeploymentError):
    """
    A transaction reverted. `tx_hash` is None when the node rejected it during
    gas estimation, in which case nothing was broadcast.
    """

    def __init__(self, tx_hash: Optional[str], message: str):
        self.tx_hash = tx_hash
        if tx_hash:
            super().__init__(f"{message} (tx {tx_hash})")
        else:
            super().__init__(f"{message} (rejected by gas estimation, not sent)")


class TransactionWouldRevertError(TransactionRevertedError):
    def __init__(self, description: str, reason: str):
        self.description = description
        self.reason = reason
        super().__init__(None, f"{description} reverted: {reason}")


class TransactionRejectedError(DeploymentError):
    """The node refused a signed transaction; it was never pending."""

    def __init__(self, description: str, reason: str):
        self.description = description
        self.reason = reason
        super().__init__(f"Node rejected {description}: {reason}")


class DeploymentRevertedError(TransactionRevertedError):
    def __init__(self, kind, tx_hash: Optional[str], reason: str = ""):
        self.kind = kind
        if tx_hash:
            message = f"Deployment of {kind} reverted; inspect the transaction manually"
        else:
            message = f"Deployment of {kind} reverted: {reason or 'execution reverted'}"
        super().__init__(tx_hash, message)


class RoleTransactionRevertedError(TransactionRevertedError):
    def __init__(
        self, kind, method: str, role, principal: str, tx_hash: Optional[str], reason: str = ""
    ):
        self.kind = kind
        self.method = method
        self.role = role
        self.principal = principal
        message = f"{kind}.{method}({role}, {principal}) reverted"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(tx_hash, message)


class RoleProvisioningError(DeploymentError):
    """Raised after every independent contract was attempted; maps each halted contract to its cause."""

    def __init__(self, failures: Dict):
        self.failures = failures
        details = "\n\t".join(f"{kind}: {error}" for kind, error in failures.items())
        super().__init__(f"Role provisioning halted for {len(failures)} contract(s):\n\t{details}")


class RpcTimeoutError(DeploymentError):
    """A chain call did not complete in time. Retried with backoff before surfacing."""

    def __init__(self, message: str, tx_hash: str = None):
        self.tx_hash = tx_hash
        if tx_hash:
            message = f"{message} (tx {tx_hash})"
        super().__init__(message)


class VerificationMismatchError(DeploymentError):
    def __init__(self, report):
        self.report = report
        super().__init__(
            f"Verification failed with {len(report.mismatches)} mismatch(es); "
            "run verify for the full report."
        )


class OwnershipTransferError(DeploymentError):
    def __init__(self, new_owner: str, pending: List):
        self.new_owner = new_owner
        self.pending = list(pending)
        contracts = ", ".join(str(kind) for kind in self.pending)
        super().__init__(
            f"Ownership transfer to {new_owner} aborted before revoking any deployer role; "
            f"contracts still missing the new owner grant: {contracts}"
        )


class ManifestLockedError(DeploymentError):
    def __init__(self, lock_path):
        self.lock_path = lock_path
        super().__init__(
            f"Manifest is locked by another orchestrator run ({lock_path}). "
            "If no other run is active, remove the lock file and retry."
        )
