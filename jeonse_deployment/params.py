import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional

from eth_typing import ChecksumAddress
from eth_utils import is_address, to_checksum_address
from web3 import Web3

from jeonse_deployment.constants import BUILD_DIR, ContractKind
from jeonse_deployment.errors import ConfigurationError
from jeonse_deployment.graph import ContractSpec
from jeonse_deployment.roles import (
    DEFAULT_ROLE_TABLE,
    DesiredState,
    RoleAssignment,
    RoleId,
    get_role,
    transfer_phase,
)
from jeonse_deployment.utils import ContractArtifact, _load_yaml, get_manifest_filepath

CONTRACT_CONSTRUCTOR_PARAMETER_KEY = "constructor"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_w3 = Web3()


class ResolutionContext(NamedTuple):
    """What a parameter variable can resolve against at deployment time."""

    deployer: ChecksumAddress
    addresses: Dict[ContractKind, ChecksumAddress]


# Variables


class Variable(ABC):
    VARIABLE_PREFIX = "$"

    @abstractmethod
    def resolve(self, context: ResolutionContext) -> Any:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        return isinstance(param, str) and param.startswith(cls.VARIABLE_PREFIX)


class DeployerAccount(Variable):
    DEPLOYER_INDICATOR = "deployer"

    @classmethod
    def is_deployer(cls, value: str) -> bool:
        return value == cls.DEPLOYER_INDICATOR

    def resolve(self, context: ResolutionContext) -> Any:
        return context.deployer

    def __eq__(self, other) -> bool:
        return isinstance(other, DeployerAccount)

    def __hash__(self) -> int:
        return hash(self.DEPLOYER_INDICATOR)

    def __repr__(self) -> str:
        return "$deployer"


def _is_constant(value: str) -> bool:
    return value.isupper()


def _variable_from_value(value: str, constants: Dict[str, Any]) -> Any:
    variable = value[len(Variable.VARIABLE_PREFIX) :]
    if DeployerAccount.is_deployer(variable):
        return DeployerAccount()
    if _is_constant(variable):
        try:
            return constants[variable]
        except KeyError:
            raise ConfigurationError(f"Constant '{variable}' not found in deployment file.")
    try:
        return ContractKind(variable)
    except ValueError:
        raise ConfigurationError(f"Contract name {variable} not found") from None


def _process_raw_value(value: Any, constants: Dict[str, Any]) -> Any:
    if isinstance(value, list):
        return [_process_raw_value(v, constants) for v in value]
    if Variable.is_variable(value):
        return _variable_from_value(value, constants)
    return value


def _resolve_param(value: Any, context: ResolutionContext) -> Any:
    """Resolves a single parameter value or a list of parameter values."""
    if isinstance(value, list):
        return [_resolve_param(v, context) for v in value]
    if isinstance(value, Variable):
        return value.resolve(context)
    if isinstance(value, ContractKind):
        try:
            return context.addresses[value]
        except KeyError:
            raise ConfigurationError(f"{value} is referenced before it was deployed") from None
    return value  # literally a value


def resolve_constructor_params(spec: ContractSpec, context: ResolutionContext) -> OrderedDict:
    """Resolves the constructor parameters of a single contract."""
    resolved = OrderedDict()
    for name, value in spec.constructor_params.items():
        resolved[name] = _resolve_param(value, context)
    return resolved


def validate_constructor_params(spec: ContractSpec, artifact: ContractArtifact) -> None:
    """
    Checks constructor parameter names, count and types against the artifact ABI.
    Addresses that only exist after deployment are checked as the zero address.
    """
    placeholder = ResolutionContext(
        deployer=ZERO_ADDRESS,
        addresses={kind: ZERO_ADDRESS for kind in ContractKind},
    )
    resolved = resolve_constructor_params(spec, placeholder)
    abi_inputs = artifact.constructor_inputs
    if len(resolved) != len(abi_inputs):
        raise ConfigurationError(
            f"Constructor parameters length mismatch - "
            f"{spec.kind} ABI requires {len(abi_inputs)}, Got {len(resolved)}."
        )

    codex = enumerate(zip(abi_inputs, resolved.items()), start=0)
    for position, (abi_input, (name, value)) in codex:
        if abi_input.get("name") != name:
            raise ConfigurationError(
                f"{spec.kind} constructor parameter '{name}' at position {position} does not "
                f"match the expected ABI name '{abi_input.get('name')}'."
            )
        if not _w3.is_encodable(abi_input["type"], value):
            raise ConfigurationError(
                f"Constructor param name '{name}' at position {position} has a value '{value}' "
                f"whose type does not match expected ABI type '{abi_input['type']}'"
            )


# Role table


class RoleEntry(NamedTuple):
    contract_kind: ContractKind
    role: RoleId
    principal: Any  # DeployerAccount, ContractKind or a literal address
    desired_state: DesiredState = DesiredState.GRANTED


class RoleTable:
    """The declarative role table, before principals are resolved to addresses."""

    def __init__(self, entries: List[RoleEntry]):
        self.entries = entries

    @classmethod
    def from_config(cls, roles_config: Optional[Dict], constants: Dict[str, Any] = None) -> "RoleTable":
        constants = constants or dict()
        if roles_config is None:
            roles_config = {kind.value: table for kind, table in DEFAULT_ROLE_TABLE.items()}
        if not isinstance(roles_config, dict):
            raise ConfigurationError("Malformed 'roles' section; expected a mapping.")

        entries = list()
        for contract_name, roles in roles_config.items():
            try:
                kind = ContractKind(contract_name)
            except ValueError:
                raise ConfigurationError(f"Contract name {contract_name} not found") from None
            if not isinstance(roles, dict):
                raise ConfigurationError(f"Malformed role table for {contract_name}.")
            for role_name, principals in roles.items():
                role = get_role(role_name)
                if isinstance(principals, str):
                    principals = [principals]
                for raw_principal in principals or []:
                    principal = _process_raw_value(raw_principal, constants)
                    if not isinstance(principal, (DeployerAccount, ContractKind)):
                        if not is_address(principal):
                            raise ConfigurationError(
                                f"Invalid principal '{raw_principal}' for {contract_name}.{role_name}"
                            )
                        principal = to_checksum_address(principal)
                    entries.append(RoleEntry(kind, role, principal))
        return cls(entries=entries)

    @property
    def contract_kinds(self) -> List[ContractKind]:
        kinds = list()
        for entry in self.entries:
            if entry.contract_kind not in kinds:
                kinds.append(entry.contract_kind)
        return kinds

    def resolve(self, context: ResolutionContext, strict: bool = True) -> List[RoleAssignment]:
        assignments = list()
        for entry in self.entries:
            if not strict and isinstance(entry.principal, ContractKind):
                if entry.principal not in context.addresses:
                    continue
            principal = to_checksum_address(_resolve_param(entry.principal, context))
            assignments.append(
                RoleAssignment(entry.contract_kind, entry.role, principal, entry.desired_state)
            )
        return assignments

    def expected(self, manifest) -> List[RoleAssignment]:
        """
        The role table as it should hold on chain for the given manifest,
        including the ownership transfer phase once the owner moved away from the deployer.
        """
        context = ResolutionContext(deployer=manifest.deployer, addresses=manifest.addresses)
        assignments = self.resolve(context, strict=False)
        owner = manifest.current_owner
        if owner and owner != manifest.deployer:
            assignments += transfer_phase(assignments, manifest.deployer, owner)
        return assignments


# Deployment parameters


def _get_contract_names(config: typing.Dict) -> List[str]:
    contract_names = list()
    for contract_info in config["contracts"]:
        if isinstance(contract_info, str):
            contract_names.append(contract_info)
        elif isinstance(contract_info, dict):
            contract_names.extend(list(contract_info.keys()))
        else:
            raise ConfigurationError("Malformed constructor parameters YAML.")
    return contract_names


def _validate_config(config: typing.Dict) -> None:
    if not isinstance(config, dict):
        raise ConfigurationError("Deployment parameters must be a YAML mapping.")
    deployment = config.get("deployment")
    if not deployment:
        raise ConfigurationError("deployment is not set in params file.")
    if not deployment.get("network"):
        raise ConfigurationError("network is not set in params file.")
    if not deployment.get("chain_id"):
        raise ConfigurationError("chain_id is not set in params file.")
    if not config.get("contracts"):
        raise ConfigurationError("Constructor parameters file missing 'contracts' field.")


class DeploymentConfig:
    """Deployment parameters: the contracts to deploy, their constructor parameters and role table."""

    def __init__(
        self,
        network: str,
        chain_id: int,
        specs: List[ContractSpec],
        role_table: RoleTable,
        manifest_filepath: Path,
        build_dir: Path = BUILD_DIR,
        constants: Dict[str, Any] = None,
        path: Optional[Path] = None,
    ):
        self.network = network
        self.chain_id = chain_id
        self.specs = specs
        self.role_table = role_table
        self.manifest_filepath = manifest_filepath
        self.build_dir = build_dir
        self.constants = constants or dict()
        self.path = path

    @classmethod
    def from_yaml(cls, filepath: Path) -> "DeploymentConfig":
        config = _load_yaml(filepath)
        return cls.from_config(config, path=filepath)

    @classmethod
    def from_config(cls, config: typing.Dict, path: Optional[Path] = None) -> "DeploymentConfig":
        _validate_config(config)
        deployment = config["deployment"]
        network = str(deployment["network"])
        constants = config.get("constants") or dict()

        contract_names = _get_contract_names(config)
        specs = list()
        for contract_info in config["contracts"]:
            if isinstance(contract_info, str):
                contract_name, contract_data = contract_info, dict()
            else:
                if len(contract_info) != 1:
                    raise ConfigurationError("Malformed constructor parameters YAML.")
                contract_name = list(contract_info.keys())[0]  # only one entry
                contract_data = contract_info[contract_name] or dict()
            specs.append(cls._process_spec(contract_name, contract_data, constants))

        role_table = RoleTable.from_config(config.get("roles"), constants=constants)
        for kind in role_table.contract_kinds:
            if kind.value not in contract_names:
                raise ConfigurationError(f"Role table references {kind}, which is not deployed.")

        build_config = config.get("build") or dict()
        return cls(
            network=network,
            chain_id=int(deployment["chain_id"]),
            specs=specs,
            role_table=role_table,
            manifest_filepath=get_manifest_filepath(config, network),
            build_dir=Path(build_config.get("dir", BUILD_DIR)),
            constants=constants,
            path=path,
        )

    @staticmethod
    def _process_spec(contract_name: str, contract_data: Dict, constants: Dict) -> ContractSpec:
        try:
            kind = ContractKind(contract_name)
        except ValueError:
            raise ConfigurationError(f"Contract name {contract_name} not found") from None
        if not isinstance(contract_data, dict):
            raise ConfigurationError(f"Malformed constructor parameter config for {contract_name}.")

        parameters = OrderedDict()
        raw_parameters = contract_data.get(CONTRACT_CONSTRUCTOR_PARAMETER_KEY) or dict()
        for name, value in raw_parameters.items():
            parameters[name] = _process_raw_value(value, constants)
        return ContractSpec(kind=kind, constructor_params=parameters)

    @property
    def specs_by_kind(self) -> Dict[ContractKind, ContractSpec]:
        return OrderedDict((spec.kind, spec) for spec in self.specs)
