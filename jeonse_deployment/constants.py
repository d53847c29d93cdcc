from enum import Enum
from pathlib import Path
from typing import NamedTuple

import jeonse_deployment

#
# Filesystem
#

DEPLOYMENT_DIR = Path(jeonse_deployment.__file__).parent
CONSTRUCTOR_PARAMS_DIR = DEPLOYMENT_DIR / "constructor_params"
ARTIFACTS_DIR = Path("deployments")
BUILD_DIR = Path("artifacts") / "contracts"
ENV_FILENAME = ".env.local"
LOCK_SUFFIX = ".lock"

#
# Networks
#


class NetworkInfo(NamedTuple):
    chain_id: int
    rpc_url: str
    explorer_url: str


KAIROS = "kairos"
KAIA = "kaia"
LOCALHOST = "localhost"

NETWORKS = {
    KAIROS: NetworkInfo(
        chain_id=1001,
        rpc_url="https://public-en-kairos.node.kaia.io",
        explorer_url="https://kairos.kaiascan.io",
    ),
    KAIA: NetworkInfo(
        chain_id=8217,
        rpc_url="https://public-en.node.kaia.io",
        explorer_url="https://kaiascan.io",
    ),
    LOCALHOST: NetworkInfo(
        chain_id=31337,
        rpc_url="http://127.0.0.1:8545",
        explorer_url="",
    ),
}

SUPPORTED_NETWORKS = list(NETWORKS)
LOCAL_NETWORKS = [LOCALHOST]

#
# Environment
#

PRIVATE_KEY_ENVVAR = "DEPLOYER_PRIVATE_KEY"
RPC_URL_ENVVAR = "JEONSE_RPC_URL"
GAS_PRICE_CEILING_ENVVAR = "JEONSE_GAS_PRICE_CEILING"

#
# Contracts
#


class ContractKind(Enum):
    PROPERTY_ORACLE = "PropertyOracle"
    COMPLIANCE_MODULE = "ComplianceModule"
    INVESTMENT_POOL = "InvestmentPool"
    VAULT = "JeonseVault"

    def __str__(self) -> str:
        return self.value


# used by the frontend env file, e.g. NEXT_PUBLIC_JEONSE_VAULT_ADDRESS
ENV_NAMES = {
    ContractKind.VAULT: "JEONSE_VAULT",
    ContractKind.INVESTMENT_POOL: "INVESTMENT_POOL",
    ContractKind.PROPERTY_ORACLE: "PROPERTY_ORACLE",
    ContractKind.COMPLIANCE_MODULE: "COMPLIANCE_MODULE",
}

#
# Roles
#

DEFAULT_ADMIN_ROLE = "DEFAULT_ADMIN_ROLE"
ADMIN_ROLE = "ADMIN_ROLE"
ORACLE_ROLE = "ORACLE_ROLE"
VERIFIER_ROLE = "VERIFIER_ROLE"
COMPLIANCE_OFFICER_ROLE = "COMPLIANCE_OFFICER_ROLE"
VAULT_ROLE = "VAULT_ROLE"

ROLE_NAMES = [
    DEFAULT_ADMIN_ROLE,
    ADMIN_ROLE,
    ORACLE_ROLE,
    VERIFIER_ROLE,
    COMPLIANCE_OFFICER_ROLE,
    VAULT_ROLE,
]

ADMIN_ROLE_NAMES = [DEFAULT_ADMIN_ROLE, ADMIN_ROLE]

# contract-to-contract grants that an ownership transfer must never touch
FUNCTIONAL_ROLES = [(ContractKind.INVESTMENT_POOL, VAULT_ROLE)]

#
# Transactions
#

# conservative per-contract estimate used for the balance pre-check
DEPLOYMENT_GAS_ESTIMATE = 5_000_000
DEFAULT_CONFIRMATIONS = 1
RECEIPT_TIMEOUT = 180
RPC_TIMEOUT = 30
RPC_RETRY_ATTEMPTS = 5
RPC_RETRY_BACKOFF = 1.0
RPC_RETRY_BACKOFF_FACTOR = 2
VERIFY_MAX_WORKERS = 4
