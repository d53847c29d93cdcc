import json
import os
import tempfile
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from jeonse_deployment.constants import LOCK_SUFFIX, ContractKind
from jeonse_deployment.errors import ConfigurationError, ManifestLockedError
from jeonse_deployment.utils import _load_json

STANDARD_MANIFEST_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}


def now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _jsonable(value: Any) -> Any:
    """Normalizes a resolved constructor argument to its JSON representation."""
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value


class DeployedContract(NamedTuple):
    kind: ContractKind
    address: ChecksumAddress
    constructor_args: List[Any]
    tx_hash: str
    block_number: int
    deployed_at: str

    @classmethod
    def create(cls, kind, address, constructor_args, tx_hash, block_number) -> "DeployedContract":
        return cls(
            kind=kind,
            address=to_checksum_address(address),
            constructor_args=_jsonable(list(constructor_args)),
            tx_hash=tx_hash,
            block_number=int(block_number),
            deployed_at=now(),
        )

    def to_dict(self) -> Dict:
        return {
            "address": self.address,
            "constructorArgs": self.constructor_args,
            "deploymentTx": self.tx_hash,
            "blockNumber": self.block_number,
            "deployedAt": self.deployed_at,
        }

    @classmethod
    def from_dict(cls, kind: ContractKind, data: Dict) -> "DeployedContract":
        return cls(
            kind=kind,
            address=to_checksum_address(data["address"]),
            constructor_args=list(data.get("constructorArgs", [])),
            tx_hash=data.get("deploymentTx", ""),
            block_number=int(data.get("blockNumber", 0)),
            deployed_at=data.get("deployedAt", ""),
        )


@dataclass
class DeploymentManifest:
    """
    The durable record of a deployment. Fields are set once, except
    current_owner (moved by an ownership transfer) and the unverified flag.
    """

    network: str = ""
    chain_id: Optional[int] = None
    deployer: str = ""
    created_at: str = ""
    contracts: Dict[ContractKind, DeployedContract] = field(default_factory=OrderedDict)
    current_owner: str = ""
    last_ownership_transfer_at: Optional[str] = None
    unverified: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.network and not self.contracts

    @property
    def addresses(self) -> Dict[ContractKind, ChecksumAddress]:
        return OrderedDict((kind, entry.address) for kind, entry in self.contracts.items())

    def initialize(self, network: str, chain_id: int, deployer: ChecksumAddress) -> None:
        """Stamps a first-run manifest; an existing one must describe the same deployment."""
        if self.is_empty:
            self.network = network
            self.chain_id = chain_id
            self.deployer = deployer
            self.created_at = now()
            self.current_owner = deployer
            return
        if self.network != network or self.chain_id != chain_id:
            raise ConfigurationError(
                f"Manifest belongs to {self.network} (chain {self.chain_id}), "
                f"not {network} (chain {chain_id})."
            )

    def record(self, contract: DeployedContract) -> None:
        if contract.kind in self.contracts:
            raise ConfigurationError(f"{contract.kind} is already recorded in the manifest")
        self.contracts[contract.kind] = contract

    def transfer_owner(self, new_owner: ChecksumAddress) -> None:
        self.current_owner = new_owner
        self.last_ownership_transfer_at = now()
        self.unverified = False

    def to_dict(self) -> Dict:
        return {
            "network": self.network,
            "chainId": self.chain_id,
            "deployer": self.deployer,
            "timestamp": self.created_at,
            "contracts": {kind.value: c.to_dict() for kind, c in self.contracts.items()},
            "currentOwner": self.current_owner,
            "lastOwnershipTransferAt": self.last_ownership_transfer_at,
            "unverified": self.unverified,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "DeploymentManifest":
        contracts = OrderedDict()
        for name, entry in (data.get("contracts") or dict()).items():
            try:
                kind = ContractKind(name)
            except ValueError:
                raise ConfigurationError(f"Unknown contract '{name}' in manifest") from None
            contracts[kind] = DeployedContract.from_dict(kind, entry)
        chain_id = data.get("chainId")
        return cls(
            network=data.get("network", ""),
            chain_id=int(chain_id) if chain_id is not None else None,
            deployer=data.get("deployer", ""),
            created_at=data.get("timestamp", ""),
            contracts=contracts,
            current_owner=data.get("currentOwner") or data.get("deployer", ""),
            last_ownership_transfer_at=data.get("lastOwnershipTransferAt"),
            unverified=bool(data.get("unverified", False)),
        )


class ManifestStore:
    """JSON file storage for a deployment manifest, with atomic saves and a lock file."""

    def __init__(self, filepath: Path):
        self.filepath = Path(filepath)

    @property
    def lock_path(self) -> Path:
        return self.filepath.with_name(self.filepath.name + LOCK_SUFFIX)

    def load(self) -> DeploymentManifest:
        """Returns the stored manifest, or an empty one on the first run."""
        if not self.filepath.exists():
            return DeploymentManifest()
        try:
            data = _load_json(self.filepath)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Manifest at {self.filepath} is not valid JSON") from e
        return DeploymentManifest.from_dict(data)

    def save(self, manifest: DeploymentManifest) -> Path:
        """Writes to a temporary file next to the manifest, then renames it into place."""
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            dir=self.filepath.parent, prefix=f".{self.filepath.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as file:
                json.dump(manifest.to_dict(), file, **STANDARD_MANIFEST_JSON_FORMAT)
                file.write("\n")
                file.flush()
                os.fsync(file.fileno())
            os.replace(temp_path, self.filepath)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        return self.filepath

    def exists(self, kind: ContractKind) -> bool:
        return kind in self.load().contracts

    @contextmanager
    def lock(self):
        """Rejects concurrent orchestrator runs against the same manifest."""
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise ManifestLockedError(self.lock_path) from None
        try:
            with os.fdopen(fd, "w") as file:
                file.write(str(os.getpid()))
            yield self
        finally:
            self.lock_path.unlink(missing_ok=True)
