import json
from pathlib import Path
from typing import Dict, List, NamedTuple

from eth_typing import ABI

import yaml

from jeonse_deployment.constants import ARTIFACTS_DIR, BUILD_DIR, LOCAL_NETWORKS, NETWORKS, ContractKind
from jeonse_deployment.errors import ConfigurationError


class ContractArtifact(NamedTuple):
    """Compiled output for one contract, produced by the external build step."""

    name: str
    abi: ABI
    bytecode: str

    @property
    def constructor_inputs(self) -> List[Dict]:
        for entry in self.abi:
            if entry.get("type") == "constructor":
                return list(entry.get("inputs", []))
        return list()


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def load_artifact(kind: ContractKind, build_dir: Path = BUILD_DIR) -> ContractArtifact:
    """
    Loads a hardhat-style artifact, either <build_dir>/<Name>.sol/<Name>.json
    or <build_dir>/<Name>.json.
    """
    name = kind.value
    candidates = [build_dir / f"{name}.sol" / f"{name}.json", build_dir / f"{name}.json"]
    for filepath in candidates:
        if filepath.exists():
            break
    else:
        raise ConfigurationError(
            f"No compiled artifact for {name} in {build_dir}; run the contract build first."
        )

    data = _load_json(filepath)
    abi, bytecode = data.get("abi"), data.get("bytecode")
    if not isinstance(abi, list) or not bytecode:
        raise ConfigurationError(f"Artifact {filepath} is missing 'abi' or 'bytecode'.")
    if isinstance(bytecode, dict):
        # solc standard-json shape
        bytecode = bytecode.get("object", "")
    if not bytecode.startswith("0x"):
        bytecode = "0x" + bytecode
    return ContractArtifact(name=name, abi=abi, bytecode=bytecode)


def get_manifest_filepath(config: Dict, network: str) -> Path:
    """Returns the filepath of the deployment manifest."""
    artifact_config = config.get("artifacts") or dict()
    artifact_dir = Path(artifact_config.get("dir", ARTIFACTS_DIR))
    filename = artifact_config.get("filename") or f"{network}.json"
    return artifact_dir / filename


def is_local_network(network: str) -> bool:
    return network in LOCAL_NETWORKS


def check_chain_id(network: str, expected_chain_id: int, actual_chain_id: int) -> None:
    """Refuses to act against a chain other than the one the parameters were written for."""
    if expected_chain_id == actual_chain_id or is_local_network(network):
        return
    raise ConfigurationError(
        f"chain_id in params file ({expected_chain_id}) does not match "
        f"chain_id of current network ({actual_chain_id})."
    )


def explorer_url(network: str, address: str) -> str:
    info = NETWORKS.get(network)
    if not info or not info.explorer_url:
        return ""
    return f"{info.explorer_url}/address/{address}"
