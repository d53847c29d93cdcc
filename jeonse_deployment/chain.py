import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, List, NamedTuple, Optional

import requests
from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import ChecksumAddress, HexStr
from eth_utils import to_checksum_address, to_hex
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from jeonse_deployment.constants import (
    DEFAULT_CONFIRMATIONS,
    RECEIPT_TIMEOUT,
    RPC_RETRY_ATTEMPTS,
    RPC_RETRY_BACKOFF,
    RPC_RETRY_BACKOFF_FACTOR,
    RPC_TIMEOUT,
)
from jeonse_deployment.errors import (
    RpcTimeoutError,
    TransactionRejectedError,
    TransactionWouldRevertError,
)
from jeonse_deployment.roles import RoleId
from jeonse_deployment.utils import ContractArtifact

logger = logging.getLogger(__name__)

ACCESS_CONTROL_ABI = [
    {
        "inputs": [{"name": "role", "type": "bytes32"}, {"name": "account", "type": "address"}],
        "name": "grantRole",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "role", "type": "bytes32"}, {"name": "account", "type": "address"}],
        "name": "revokeRole",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "role", "type": "bytes32"}, {"name": "account", "type": "address"}],
        "name": "hasRole",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ROLE_METHODS = ("grantRole", "revokeRole")


class PreparedTransaction(NamedTuple):
    """A signed transaction; its hash is known before it is broadcast."""

    tx_hash: HexStr
    raw: bytes
    description: str


class Receipt(NamedTuple):
    tx_hash: HexStr
    status: int
    block_number: int
    contract_address: Optional[ChecksumAddress] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class RetryPolicy(NamedTuple):
    """Bounded exponential backoff for chain calls that time out."""

    attempts: int = RPC_RETRY_ATTEMPTS
    backoff: float = RPC_RETRY_BACKOFF
    factor: float = RPC_RETRY_BACKOFF_FACTOR

    def call(self, func: Callable, *args, description: str = "chain call") -> Any:
        delay = self.backoff
        for attempt in range(1, self.attempts + 1):
            try:
                return func(*args)
            except RpcTimeoutError as error:
                if attempt == self.attempts:
                    logger.error("%s timed out after %d attempts: %s", description, attempt, error)
                    raise
                logger.warning(
                    "%s timed out (attempt %d/%d); retrying in %.1fs",
                    description,
                    attempt,
                    self.attempts,
                    delay,
                )
                time.sleep(delay)
                delay *= self.factor


class ChainClient(ABC):
    """
    What the orchestrator needs from a chain: reads, and signed transactions
    from a single sending account.
    """

    @property
    @abstractmethod
    def sender(self) -> ChecksumAddress:
        raise NotImplementedError

    @property
    @abstractmethod
    def chain_id(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def block_number(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def get_balance(self, address: ChecksumAddress) -> int:
        raise NotImplementedError

    @abstractmethod
    def gas_price(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def get_code(self, address: ChecksumAddress) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def has_role(self, address: ChecksumAddress, role: RoleId, principal: ChecksumAddress) -> bool:
        raise NotImplementedError

    @abstractmethod
    def build_deployment(
        self, artifact: ContractArtifact, args: List[Any], gas_price: int
    ) -> PreparedTransaction:
        raise NotImplementedError

    @abstractmethod
    def build_role_transaction(
        self,
        address: ChecksumAddress,
        method: str,
        role: RoleId,
        principal: ChecksumAddress,
        gas_price: int,
    ) -> PreparedTransaction:
        raise NotImplementedError

    @abstractmethod
    def broadcast(self, transaction: PreparedTransaction) -> HexStr:
        """Sends a signed transaction; re-sending an already known transaction is not an error."""
        raise NotImplementedError

    @abstractmethod
    def wait_for_receipt(
        self,
        tx_hash: HexStr,
        timeout: int = RECEIPT_TIMEOUT,
        confirmations: int = DEFAULT_CONFIRMATIONS,
    ) -> Receipt:
        raise NotImplementedError


def _is_already_known(error: Exception) -> bool:
    message = str(error).lower()
    return "already known" in message or "known transaction" in message


class Web3ChainClient(ChainClient):
    """JSON-RPC chain client signing locally with the deployer key."""

    def __init__(self, w3: Web3, account: LocalAccount):
        self.w3 = w3
        self._account = account
        self._chain_id = None
        self._nonce = None

    @classmethod
    def connect(cls, rpc_url: str, private_key: str, timeout: int = RPC_TIMEOUT) -> "Web3ChainClient":
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        if not w3.is_connected():
            raise RpcTimeoutError(f"Failed to connect to RPC at {rpc_url}")
        account = Account.from_key(private_key)
        return cls(w3=w3, account=account)

    def _rpc(self, func: Callable, *args) -> Any:
        try:
            return func(*args)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise RpcTimeoutError(f"RPC request failed: {e}") from e

    @property
    def sender(self) -> ChecksumAddress:
        return self._account.address

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self._rpc(lambda: self.w3.eth.chain_id)
        return self._chain_id

    def block_number(self) -> int:
        return self._rpc(lambda: self.w3.eth.block_number)

    def get_balance(self, address: ChecksumAddress) -> int:
        return self._rpc(self.w3.eth.get_balance, address)

    def gas_price(self) -> int:
        return self._rpc(lambda: self.w3.eth.gas_price)

    def get_code(self, address: ChecksumAddress) -> bytes:
        return bytes(self._rpc(self.w3.eth.get_code, address))

    def _access_control(self, address: ChecksumAddress):
        return self.w3.eth.contract(address=to_checksum_address(address), abi=ACCESS_CONTROL_ABI)

    def has_role(self, address: ChecksumAddress, role: RoleId, principal: ChecksumAddress) -> bool:
        call = self._access_control(address).functions.hasRole(role.value, principal).call
        return bool(self._rpc(call))

    def _next_nonce(self) -> int:
        if self._nonce is None:
            self._nonce = self._rpc(self.w3.eth.get_transaction_count, self.sender, "pending")
        nonce = self._nonce
        self._nonce += 1
        return nonce

    def _base_tx(self, gas_price: int) -> dict:
        return {"from": self.sender, "chainId": self.chain_id, "gasPrice": gas_price}

    def _sign(self, tx: dict, description: str) -> PreparedTransaction:
        # nonce is taken last so a failed gas estimate never leaves a gap
        tx["nonce"] = self._next_nonce()
        signed = self._account.sign_transaction(tx)
        return PreparedTransaction(
            tx_hash=to_hex(signed.hash), raw=bytes(signed.raw_transaction), description=description
        )

    def _build(
        self, build_transaction: Callable, gas_price: int, description: str
    ) -> PreparedTransaction:
        # build_transaction estimates gas, which is where a node reports a revert
        try:
            tx = self._rpc(build_transaction, self._base_tx(gas_price))
        except ContractLogicError as e:
            reason = e.message or "execution reverted"
            raise TransactionWouldRevertError(description, reason) from e
        return self._sign(tx, description=description)

    def build_deployment(
        self, artifact: ContractArtifact, args: List[Any], gas_price: int
    ) -> PreparedTransaction:
        container = self.w3.eth.contract(abi=artifact.abi, bytecode=artifact.bytecode)
        return self._build(
            container.constructor(*args).build_transaction, gas_price, f"deploy {artifact.name}"
        )

    def build_role_transaction(
        self,
        address: ChecksumAddress,
        method: str,
        role: RoleId,
        principal: ChecksumAddress,
        gas_price: int,
    ) -> PreparedTransaction:
        if method not in ROLE_METHODS:
            raise ValueError(f"Unsupported role method '{method}'")
        function = getattr(self._access_control(address).functions, method)(role.value, principal)
        return self._build(
            function.build_transaction, gas_price, f"{method}({role}, {principal}) on {address}"
        )

    def broadcast(self, transaction: PreparedTransaction) -> HexStr:
        try:
            tx_hash = self._rpc(self.w3.eth.send_raw_transaction, transaction.raw)
        except (ValueError, Web3Exception) as e:
            if _is_already_known(e):
                logger.info("%s already known to the node", transaction.description)
                return transaction.tx_hash
            # the rejected nonce is free again; re-read it from the node
            self._nonce = None
            raise TransactionRejectedError(transaction.description, str(e)) from e
        return to_hex(tx_hash)

    def wait_for_receipt(
        self,
        tx_hash: HexStr,
        timeout: int = RECEIPT_TIMEOUT,
        confirmations: int = DEFAULT_CONFIRMATIONS,
    ) -> Receipt:
        deadline = time.monotonic() + timeout
        try:
            receipt = self._rpc(
                self.w3.eth.wait_for_transaction_receipt, tx_hash, timeout, 1.0
            )
        except TimeExhausted as e:
            raise RpcTimeoutError("Timed out waiting for receipt", tx_hash=tx_hash) from e

        block_number = receipt["blockNumber"]
        while self.block_number() - block_number + 1 < confirmations:
            if time.monotonic() > deadline:
                raise RpcTimeoutError(
                    f"Timed out waiting for {confirmations} confirmations", tx_hash=tx_hash
                )
            time.sleep(1.0)

        contract_address = receipt.get("contractAddress")
        return Receipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=int(block_number),
            contract_address=to_checksum_address(contract_address) if contract_address else None,
        )
