"""Connection helpers for the gasless relayer: per-chain providers and contract handles."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, TypeVar, cast

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import HTTPProvider, Web3
from web3.contract import Contract
from web3.exceptions import BadFunctionCallOutput, ContractCustomError, ContractLogicError
from web3.middleware import SignAndSendRawMiddlewareBuilder

from ..constants import ERC20_ABI, GASLESS_PROXY_ABI
from ..exceptions import MisconfiguredChainError, NetworkError, ValidationError
from .config import ChainProfile, RelayerConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

Web3Factory = Callable[[ChainProfile, LocalAccount], Web3]

# Contract-level failures are answers from the node, not transport problems.
CONTRACT_CALL_ERRORS = (ContractLogicError, ContractCustomError, BadFunctionCallOutput)


class Web3Connections:
    """Manage per-chain Web3 providers, relayer signing middleware, and contract handles."""

    def __init__(self, config: RelayerConfig, *, web3_factory: Web3Factory | None = None):
        self.config = config
        self._web3_factory = web3_factory or self._build_web3
        self._account: LocalAccount | None = None
        self._lock = threading.Lock()
        self._web3: dict[int, Web3] = {}
        self._gasless_contracts: dict[int, Contract] = {}
        self._token_contracts: dict[tuple[int, str], Contract] = {}
        self._send_locks: dict[int, threading.Lock] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def connect(self) -> None:
        """Derive the relayer account; providers are created lazily per chain."""

        if self._account is not None:
            return

        try:
            signer = cast(LocalAccount, Account.from_key(self.config.private_key))  # type: ignore[arg-type]
        except Exception as exc:
            raise ValidationError(
                "Failed to derive relayer account from provided private key",
                field="private_key",
                details={"error": str(exc)},
            ) from exc

        self._account = signer
        logger.info("Relayer account loaded: %s", signer.address)

    def disconnect(self) -> None:
        with self._lock:
            self._web3.clear()
            self._gasless_contracts.clear()
            self._token_contracts.clear()
        self._account = None

    def is_connected(self) -> bool:
        return self._account is not None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def account(self) -> LocalAccount:
        if self._account is None:
            self.connect()
        return cast(LocalAccount, self._account)

    def web3(self, chain: ChainProfile) -> Web3:
        with self._lock:
            web3 = self._web3.get(chain.chain_id)
        if web3 is not None:
            return web3

        web3 = self._web3_factory(chain, self.account)
        with self._lock:
            # Keep the first provider if two threads raced to build one.
            return self._web3.setdefault(chain.chain_id, web3)

    def gasless_contract(self, chain: ChainProfile) -> Contract:
        with self._lock:
            contract = self._gasless_contracts.get(chain.chain_id)
        if contract is not None:
            return contract

        if not chain.contract_address:
            raise MisconfiguredChainError(
                f"Gasless contract address not configured for chain {chain.name}",
                chain=chain.chain_id,
                field="contract_address",
            )

        contract = self.web3(chain).eth.contract(
            address=Web3.to_checksum_address(chain.contract_address), abi=GASLESS_PROXY_ABI
        )
        with self._lock:
            return self._gasless_contracts.setdefault(chain.chain_id, contract)

    def token_contract(self, chain: ChainProfile, token_address: str) -> Contract:
        key = (chain.chain_id, token_address.lower())
        with self._lock:
            contract = self._token_contracts.get(key)
        if contract is not None:
            return contract

        contract = self.web3(chain).eth.contract(
            address=Web3.to_checksum_address(token_address), abi=ERC20_ABI
        )
        with self._lock:
            return self._token_contracts.setdefault(key, contract)

    def send_lock(self, chain: ChainProfile) -> threading.Lock:
        """Lock serialising transaction sends from the relayer account on one chain."""
        with self._lock:
            return self._send_locks.setdefault(chain.chain_id, threading.Lock())

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def read(self, chain: ChainProfile, description: str, fn: Callable[[], T]) -> T:
        """Run a read-only RPC call, retrying once on transport failure.

        Contract-level errors (reverts, undecodable output) propagate untouched.
        """

        last_error: Exception | None = None
        for attempt in (1, 2):
            try:
                return fn()
            except CONTRACT_CALL_ERRORS:
                raise
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "RPC read '%s' failed on chain %s (attempt %s/2): %s",
                    description,
                    chain.chain_id,
                    attempt,
                    exc,
                )

        raise NetworkError(
            f"Failed to read {description}",
            endpoint=chain.rpc_url,
            details={"chain_id": chain.chain_id, "error": str(last_error)},
        ) from last_error

    # ------------------------------------------------------------------
    # Internal wiring
    # ------------------------------------------------------------------
    def _build_web3(self, chain: ChainProfile, account: LocalAccount) -> Web3:
        if not chain.rpc_url:
            raise MisconfiguredChainError(
                f"RPC URL not configured for chain {chain.name}",
                chain=chain.chain_id,
                field="rpc_url",
            )

        provider = HTTPProvider(chain.rpc_url, request_kwargs={"timeout": self.config.request_timeout})
        web3 = Web3(provider)
        web3.middleware_onion.add(SignAndSendRawMiddlewareBuilder.build(account))  # type: ignore[arg-type]
        web3.eth.default_account = account.address

        try:
            remote_chain_id = web3.eth.chain_id
        except Exception as exc:
            raise NetworkError(
                f"Unable to connect to {chain.name} RPC",
                endpoint=chain.rpc_url,
                details={"error": str(exc)},
            ) from exc

        if remote_chain_id != chain.chain_id:
            raise MisconfiguredChainError(
                f"RPC for {chain.name} reports chain id {remote_chain_id}",
                chain=chain.chain_id,
                field="rpc_url",
                details={"expected": chain.chain_id, "actual": remote_chain_id},
            )

        logger.info("Connected to %s RPC at %s", chain.name, chain.rpc_url)
        return web3


def describe_contract_error(exc: Any) -> str:
    """Best-effort revert text from a web3 contract exception."""

    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    if exc.args:
        return str(exc.args[0])
    return str(exc)
