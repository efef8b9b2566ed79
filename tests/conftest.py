from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal
from types import SimpleNamespace
from typing import Any

import pytest
import requests
from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from gasless_relay.constants import SignatureSchemeName
from gasless_relay.evm.config import (
    ChainProfile,
    FeePolicy,
    GasPolicy,
    RelayerConfig,
    TokenProfile,
)
from gasless_relay.evm.registry import ChainRegistry

NOW = 1_700_000_000
USER_KEY = "0x" + "11" * 32
RELAYER_KEY = "0x" + "22" * 32
USER_ADDRESS = Account.from_key(USER_KEY).address
RELAYER_ADDRESS = Account.from_key(RELAYER_KEY).address
RECIPIENT = Web3.to_checksum_address("0x0000000000000000000000000000000000000bbb")
CONTRACT = Web3.to_checksum_address("0x000000000000000000000000000000000000c0de")
TOKEN = Web3.to_checksum_address("0x0000000000000000000000000000000000000aaa")
FEED_ID = "ab" * 32
TX_HASH = HexBytes("0x" + "cd" * 32)


class DummyResponse:
    def __init__(self, payload: Any, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}", response=self)  # type: ignore[arg-type]

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class DummySession:
    """Stand-in for requests.Session returning queued responses (or raising queued errors)."""

    def __init__(self, *responses: Any) -> None:
        self._responses = list(responses)
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def queue(self, *responses: Any) -> None:
        self._responses.extend(responses)

    def get(self, url: str, **kwargs: Any) -> DummyResponse:
        self.calls.append((url, kwargs))
        if not self._responses:
            raise AssertionError("unexpected price request")
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self) -> None:
        pass


def pyth_payload(mantissa: int | str = 100_000_000, expo: int = -8, feed_id: str = FEED_ID) -> dict:
    return {
        "parsed": [
            {
                "id": feed_id,
                "price": {"price": str(mantissa), "expo": expo, "publish_time": NOW},
            }
        ]
    }


class FakeCall:
    def __init__(self, node: FakeNode, address: str, name: str, args: tuple[Any, ...]) -> None:
        self._node = node
        self._address = address
        self.name = name
        self.args = args

    def call(self, *args: Any, **kwargs: Any) -> Any:
        return self._node.handle_call(self._address, self.name, self.args)

    def estimate_gas(self, params: dict[str, Any]) -> int:
        return self._node.handle_estimate(self.name, self.args, params)

    def transact(self, params: dict[str, Any]) -> HexBytes:
        return self._node.handle_transact(self.name, self.args, params)


class FakeFunctions:
    def __init__(self, node: FakeNode, address: str) -> None:
        self._node = node
        self._address = address

    def __getattr__(self, name: str) -> Callable[..., FakeCall]:
        def _build(*args: Any) -> FakeCall:
            return FakeCall(self._node, self._address, name, args)

        return _build


class FakeEth:
    def __init__(self, node: FakeNode) -> None:
        self._node = node
        self.default_account: str | None = None

    def contract(self, address: str, abi: Any) -> SimpleNamespace:
        return SimpleNamespace(address=address, functions=FakeFunctions(self._node, address))

    def get_block(self, identifier: str) -> dict[str, Any]:
        self._node.block_reads += 1
        if self._node.fee_data_error is not None:
            raise self._node.fee_data_error
        block: dict[str, Any] = {"number": self._node.block_number}
        if self._node.base_fee is not None:
            block["baseFeePerGas"] = self._node.base_fee
        return block

    @property
    def max_priority_fee(self) -> int:
        return self._node.priority_fee

    @property
    def gas_price(self) -> int:
        return self._node.legacy_gas_price

    @property
    def block_number(self) -> int:
        return self._node.block_number

    @property
    def chain_id(self) -> int:
        return self._node.chain_id

    def get_balance(self, address: str) -> int:
        return self._node.native_balance

    def wait_for_transaction_receipt(self, tx_hash: Any, timeout: float) -> dict[str, Any]:
        if self._node.receipt is None:
            raise TimeExhausted("no receipt")
        return self._node.receipt

    def get_transaction_receipt(self, tx_hash: Any) -> dict[str, Any]:
        if self._node.receipt is None:
            raise TransactionNotFound("pending")
        return self._node.receipt


class FakeNode:
    """In-memory stand-in for an RPC node hosting the relay contract and one ERC-20 token."""

    def __init__(self, chain_id: int = 5920) -> None:
        self.chain_id = chain_id
        self.nonces: dict[str, int] = {}
        self.permit_supported = True
        self.domain_separator: bytes | Exception | None = None
        self.balance = 10_000_000
        self.allowance = 10_000_000
        self.native_balance = 5 * 10**18
        self.gas_estimate: int | Exception = 100_000
        self.transact_error: Exception | None = None
        self.replay_error: Exception | None = None
        self.nonce_errors: list[Exception] = []
        self.base_fee: int | None = 1_000_000_000
        self.priority_fee = 100_000_000
        self.legacy_gas_price = 3_000_000_000
        self.fee_data_error: Exception | None = None
        self.block_number = 120
        self.block_reads = 0
        self.receipt: dict[str, Any] | None = {
            "status": 1,
            "blockNumber": 118,
            "gasUsed": 85_000,
            "transactionHash": TX_HASH,
        }
        self.sent: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
        self.calls: list[str] = []

    def handle_call(self, address: str, name: str, args: tuple[Any, ...]) -> Any:
        self.calls.append(name)
        if name == "getCurrentUserNonce":
            if self.nonce_errors:
                raise self.nonce_errors.pop(0)
            return self.nonces.get(str(args[0]).lower(), 0)
        if name == "checkERC2612PermitSupport":
            return self.permit_supported
        if name == "CONTRACT_DOMAIN_SEPARATOR":
            if isinstance(self.domain_separator, Exception):
                raise self.domain_separator
            return self.domain_separator
        if name == "balanceOf":
            return self.balance
        if name == "allowance":
            return self.allowance
        if name.startswith("process"):
            if self.replay_error is not None:
                raise self.replay_error
            return []
        raise AssertionError(f"unexpected call {name}")

    def handle_estimate(self, name: str, args: tuple[Any, ...], params: dict[str, Any]) -> int:
        self.calls.append(f"estimate:{name}")
        if isinstance(self.gas_estimate, Exception):
            raise self.gas_estimate
        return self.gas_estimate

    def handle_transact(self, name: str, args: tuple[Any, ...], params: dict[str, Any]) -> HexBytes:
        self.calls.append(f"transact:{name}")
        if self.transact_error is not None:
            raise self.transact_error
        self.sent.append((name, args, params))
        return TX_HASH


def revert(reason: str) -> ContractLogicError:
    return ContractLogicError(f"execution reverted: {reason}")


def make_chain(
    *,
    scheme: SignatureSchemeName = SignatureSchemeName.TYPED_DATA,
    max_gas_price: int | None = None,
    price_feed_id: str | None = FEED_ID,
    contract_address: str = CONTRACT,
    base_fee_bps: int = 25,
    max_fee_bps: int = 1000,
) -> ChainProfile:
    return ChainProfile(
        chain_id=5920,
        name="Kadena Testnet",
        rpc_url="https://rpc.invalid",
        contract_address=contract_address,
        explorer_url="https://explorer.invalid",
        gas_policy=GasPolicy(
            max_fee_per_gas=2_000_000_000,
            max_priority_fee_per_gas=1_500_000_000,
            gas_limit_cap=300_000,
            buffer_multiplier=Decimal("1.2"),
            max_gas_price=max_gas_price,
        ),
        fee_policy=FeePolicy(
            base_fee_bps=base_fee_bps, max_fee_bps=max_fee_bps, min_fee_usd=Decimal("0.10")
        ),
        tokens={
            "TUSDC": TokenProfile(
                symbol="TUSDC",
                contract_address=TOKEN,
                decimals=6,
                price_feed_id=price_feed_id,
                name="Test USDC",
            )
        },
        signature_scheme=scheme,
    )


def sign_typed_transfer(
    chain: ChainProfile,
    *,
    amount: int,
    fee: int,
    nonce: int,
    deadline: int,
    key: str = USER_KEY,
    to: str = RECIPIENT,
) -> str:
    typed = {
        "types": {
            "EIP712Domain": [
                {"name": "name", "type": "string"},
                {"name": "version", "type": "string"},
                {"name": "chainId", "type": "uint256"},
                {"name": "verifyingContract", "type": "address"},
            ],
            "Transfer": [
                {"name": "from", "type": "address"},
                {"name": "to", "type": "address"},
                {"name": "token", "type": "address"},
                {"name": "amount", "type": "uint256"},
                {"name": "relayerFee", "type": "uint256"},
                {"name": "nonce", "type": "uint256"},
                {"name": "deadline", "type": "uint256"},
            ],
        },
        "primaryType": "Transfer",
        "domain": {
            "name": "SlipstreamGaslessProxy",
            "version": "1",
            "chainId": chain.chain_id,
            "verifyingContract": chain.contract_address,
        },
        "message": {
            "from": USER_ADDRESS,
            "to": to,
            "token": TOKEN,
            "amount": amount,
            "relayerFee": fee,
            "nonce": nonce,
            "deadline": deadline,
        },
    }
    signed = Account.sign_message(encode_typed_data(full_message=typed), private_key=key)
    return HexBytes(signed.signature).to_0x_hex()


def sign_packed_transfer(
    chain: ChainProfile,
    *,
    amount: int,
    fee: int,
    nonce: int,
    deadline: int,
    key: str = USER_KEY,
) -> str:
    digest = Web3.solidity_keccak(
        ["address", "address", "address", "address", "uint256", "uint256", "uint256", "uint256"],
        [chain.contract_address, USER_ADDRESS, RECIPIENT, TOKEN, amount, fee, nonce, deadline],
    )
    signed = Account.sign_message(encode_defunct(primitive=digest), private_key=key)
    return HexBytes(signed.signature).to_0x_hex()


@pytest.fixture
def chain() -> ChainProfile:
    return make_chain()


@pytest.fixture
def node() -> FakeNode:
    return FakeNode()


@pytest.fixture
def relayer_config() -> RelayerConfig:
    return RelayerConfig(private_key=RELAYER_KEY, receipt_timeout=1.0)


@pytest.fixture
def web3_factory(node: FakeNode) -> Callable[..., Any]:
    def _factory(chain: ChainProfile, account: Any) -> Any:
        return SimpleNamespace(eth=FakeEth(node))

    return _factory


@pytest.fixture
def registry(chain: ChainProfile) -> ChainRegistry:
    return ChainRegistry([chain])


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
