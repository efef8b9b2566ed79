from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any, cast

import pytest
import requests
from conftest import (
    NOW,
    RECIPIENT,
    RELAYER_ADDRESS,
    TOKEN,
    TX_HASH,
    USER_ADDRESS,
    DummyResponse,
    DummySession,
    FakeClock,
    FakeNode,
    make_chain,
    pyth_payload,
    revert,
    sign_typed_transfer,
)

from gasless_relay.evm.client import GaslessRelayer
from gasless_relay.evm.config import ChainProfile, RelayerConfig
from gasless_relay.evm.registry import ChainRegistry
from gasless_relay.types import RelayRequest, RelayState, TransferIntent

AMOUNT = 1_000_000
FEE = 100_000
DEADLINE = NOW + 3600

PERMIT = {
    "approvalValue": "1100000",
    "permitDeadline": str(NOW + 600),
    "signatureV": 27,
    "signatureR": "0x" + "01" * 32,
    "signatureS": "0x" + "02" * 32,
}


def _request(
    signature: str,
    *,
    amount: int = AMOUNT,
    nonce: int = 0,
    deadline: int = DEADLINE,
    fee: int | None = None,
    permit: dict[str, Any] | None = None,
    chain_id: Any = 5920,
) -> dict[str, Any]:
    request: dict[str, Any] = {
        "fromAddress": USER_ADDRESS,
        "toAddress": RECIPIENT,
        "tokenSymbol": "TUSDC",
        "transferAmount": str(amount),
        "transactionNonce": str(nonce),
        "expirationDeadline": str(deadline),
    }
    if fee is not None:
        request["relayerServiceFee"] = str(fee)
    payload: dict[str, Any] = {"chainId": chain_id, "request": request, "signature": signature}
    if permit is not None:
        payload["permit"] = permit
    return payload


def _signed(chain: ChainProfile, **kwargs: Any) -> str:
    params = {"amount": AMOUNT, "fee": FEE, "nonce": 0, "deadline": DEADLINE}
    params.update(kwargs)
    return sign_typed_transfer(chain, **params)


@pytest.fixture
def session() -> DummySession:
    return DummySession(DummyResponse(pyth_payload()))


@pytest.fixture
def relayer(
    relayer_config: RelayerConfig,
    registry: ChainRegistry,
    session: DummySession,
    web3_factory: Callable[..., Any],
    clock: FakeClock,
) -> GaslessRelayer:
    return GaslessRelayer(
        relayer_config,
        registry,
        session=cast(requests.Session, session),
        web3_factory=web3_factory,
        clock=clock,
    )


def test_standard_transfer_end_to_end(
    relayer: GaslessRelayer, chain: ChainProfile, node: FakeNode
) -> None:
    response = relayer.relay(_request(_signed(chain)))

    assert response.status_code == 200
    payload = response.to_dict()
    assert payload["success"] is True
    assert payload["transactionHash"] == TX_HASH.to_0x_hex()
    assert payload["fee"] == "100000"
    assert payload["blockNumber"] == 118
    assert payload["gasUsed"] == "85000"

    name, args, params = node.sent[0]
    assert name == "processStandardGaslessTransfer"
    assert args[0] == (USER_ADDRESS, RECIPIENT, TOKEN, AMOUNT, FEE, 0, DEADLINE)
    assert params["gas"] == 120_000
    assert params["from"] == RELAYER_ADDRESS


def test_pipeline_checks_run_in_order(
    relayer: GaslessRelayer, chain: ChainProfile, node: FakeNode
) -> None:
    relayer.relay(_request(_signed(chain)))

    assert node.calls == [
        "getCurrentUserNonce",
        "balanceOf",
        "allowance",
        "estimate:processStandardGaslessTransfer",
        "transact:processStandardGaslessTransfer",
    ]


def test_permit_transfer_end_to_end(
    relayer: GaslessRelayer, chain: ChainProfile, node: FakeNode
) -> None:
    node.allowance = 0

    outcome = relayer.relay(_request(_signed(chain), permit=PERMIT))

    assert outcome.success
    assert node.calls[0] == "checkERC2612PermitSupport"
    assert "allowance" not in node.calls
    name, args, _ = node.sent[0]
    assert name == "processPermitBasedGaslessTransfer"
    assert args[2][0] == 1_100_000


def test_permit_unsupported_token_is_rejected(
    relayer: GaslessRelayer, chain: ChainProfile, node: FakeNode
) -> None:
    node.permit_supported = False

    response = relayer.relay(_request(_signed(chain), permit=PERMIT))

    assert response.status_code == 422
    assert response.error_kind == "permit_unsupported"
    assert node.sent == []


@pytest.mark.parametrize("deadline", [NOW, NOW - 60])
def test_expired_deadline_rejected_before_network(
    relayer: GaslessRelayer,
    chain: ChainProfile,
    node: FakeNode,
    session: DummySession,
    deadline: int,
) -> None:
    response = relayer.relay(_request(_signed(chain, deadline=deadline), deadline=deadline))

    assert response.error_kind == "deadline_expired"
    assert response.status_code == 400
    assert node.calls == []
    assert session.calls == []


def test_deadline_too_far_ahead_is_rejected(relayer: GaslessRelayer, chain: ChainProfile) -> None:
    deadline = NOW + 24 * 3600 + 1

    response = relayer.relay(_request(_signed(chain, deadline=deadline), deadline=deadline))

    assert response.error_kind == "validation_error"


@pytest.mark.parametrize(
    "overrides",
    [
        {"toAddress": USER_ADDRESS},
        {"transferAmount": "0"},
        {"fromAddress": "0x1234"},
    ],
)
def test_invalid_fields_are_rejected(
    relayer: GaslessRelayer,
    chain: ChainProfile,
    node: FakeNode,
    overrides: dict[str, str],
) -> None:
    payload = _request(_signed(chain))
    payload["request"].update(overrides)

    outcome = relayer.relay_intent(5920, _intent_from(payload))

    assert outcome.state is RelayState.REJECTED
    assert outcome.error_kind == "validation_error"
    assert node.calls == []


def _intent_from(payload: dict[str, Any]) -> TransferIntent:
    return RelayRequest.from_dict(payload).intent


def test_signature_from_wrong_key_does_not_consume_nonce(
    relayer: GaslessRelayer, chain: ChainProfile, node: FakeNode
) -> None:
    forged = _signed(chain, key="0x" + "33" * 32)

    response = relayer.relay(_request(forged))
    assert response.error_kind == "signature_mismatch"
    assert response.status_code == 401
    assert "getCurrentUserNonce" not in node.calls

    assert relayer.relay(_request(_signed(chain))).success


def test_stale_nonce_is_rejected(
    relayer: GaslessRelayer, chain: ChainProfile, node: FakeNode
) -> None:
    node.nonces[USER_ADDRESS.lower()] = 1

    response = relayer.relay(_request(_signed(chain)))

    assert response.error_kind == "stale_nonce"
    assert response.status_code == 409


def test_resubmission_is_duplicate(relayer: GaslessRelayer, chain: ChainProfile) -> None:
    request = _request(_signed(chain))

    assert relayer.relay(request).success
    second = relayer.relay(request)

    assert second.error_kind == "duplicate_request"
    assert second.status_code == 409


def test_concurrent_submissions_relay_once(
    relayer: GaslessRelayer, chain: ChainProfile, node: FakeNode, session: DummySession
) -> None:
    session.queue(DummyResponse(pyth_payload()))
    request = _request(_signed(chain))
    barrier = threading.Barrier(2)
    results_lock = threading.Lock()
    results: list[tuple[bool, str | None]] = []

    def submit() -> None:
        barrier.wait()
        response = relayer.relay(request)
        with results_lock:
            results.append((response.success, response.error_kind))

    threads = [threading.Thread(target=submit) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sorted(results, key=lambda item: item[0]) == [
        (False, "duplicate_request"),
        (True, None),
    ]
    assert len(node.sent) == 1


def test_deadline_rechecked_before_submission(
    relayer: GaslessRelayer,
    chain: ChainProfile,
    node: FakeNode,
    clock: FakeClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    deadline = NOW + 600
    estimate = node.handle_estimate

    def slow_estimate(name: str, args: tuple[Any, ...], params: dict[str, Any]) -> int:
        clock.advance(700)
        return estimate(name, args, params)

    monkeypatch.setattr(node, "handle_estimate", slow_estimate)

    response = relayer.relay(_request(_signed(chain, deadline=deadline), deadline=deadline))

    assert response.error_kind == "deadline_expired"
    assert response.status_code == 400
    assert "estimate:processStandardGaslessTransfer" in node.calls
    assert node.sent == []


def test_insufficient_balance_releases_nonce(
    relayer: GaslessRelayer, chain: ChainProfile, node: FakeNode
) -> None:
    node.balance = AMOUNT + FEE - 1

    response = relayer.relay(_request(_signed(chain)))
    assert response.error_kind == "insufficient_balance"
    assert response.status_code == 422

    node.balance = AMOUNT + FEE
    assert relayer.relay(_request(_signed(chain))).success


def test_insufficient_allowance(
    relayer: GaslessRelayer, chain: ChainProfile, node: FakeNode
) -> None:
    node.allowance = AMOUNT

    assert relayer.relay(_request(_signed(chain))).error_kind == "insufficient_allowance"


def test_simulation_revert_is_mapped_and_not_sent(
    relayer: GaslessRelayer, chain: ChainProfile, node: FakeNode
) -> None:
    node.gas_estimate = revert("Transaction expired")

    response = relayer.relay(_request(_signed(chain)))

    assert response.error_kind == "deadline_expired"
    assert node.sent == []


def test_send_failure_keeps_nonce_reserved(
    relayer: GaslessRelayer, chain: ChainProfile, node: FakeNode
) -> None:
    node.transact_error = requests.ConnectionError("reset")

    first = relayer.relay(_request(_signed(chain)))
    assert first.error_kind == "network_error"
    assert first.status_code == 503

    node.transact_error = None
    assert relayer.relay(_request(_signed(chain))).error_kind == "duplicate_request"


def test_receipt_timeout_reports_submitted(
    relayer: GaslessRelayer, chain: ChainProfile, node: FakeNode
) -> None:
    node.receipt = None

    outcome = relayer.relay_intent(5920, _intent_from(_request(_signed(chain))))

    assert outcome.success
    assert outcome.state is RelayState.SUBMITTED
    assert outcome.block_number is None


def test_user_signed_fee_within_bounds_is_used(
    relayer: GaslessRelayer, chain: ChainProfile, node: FakeNode
) -> None:
    amount = 10_000_000
    node.balance = node.allowance = 20_000_000
    signature = _signed(chain, amount=amount, fee=200_000)

    response = relayer.relay(_request(signature, amount=amount, fee=200_000))

    assert response.success
    assert node.sent[0][1][0][4] == 200_000


@pytest.mark.parametrize("fee", [99_999, 1_000_001])
def test_user_signed_fee_out_of_bounds_is_rejected(
    relayer: GaslessRelayer, chain: ChainProfile, node: FakeNode, fee: int
) -> None:
    amount = 10_000_000
    signature = _signed(chain, amount=amount, fee=fee)

    response = relayer.relay(_request(signature, amount=amount, fee=fee))

    assert response.error_kind == "validation_error"
    assert node.calls == []


def test_degraded_fee_when_oracle_is_down(
    relayer_config: RelayerConfig,
    registry: ChainRegistry,
    web3_factory: Callable[..., Any],
    clock: FakeClock,
    chain: ChainProfile,
    node: FakeNode,
) -> None:
    relayer = GaslessRelayer(
        relayer_config,
        registry,
        session=cast(requests.Session, DummySession(requests.ConnectionError("down"))),
        web3_factory=web3_factory,
        clock=clock,
    )

    response = relayer.relay(_request(_signed(chain, fee=2_500)))

    assert response.success
    assert response.fee == "2500"


def test_unsupported_chain_and_malformed_request(relayer: GaslessRelayer, chain: ChainProfile) -> None:
    unsupported = relayer.relay(_request(_signed(chain), chain_id=1))
    assert unsupported.error_kind == "unsupported_chain"
    assert unsupported.status_code == 400

    malformed = relayer.relay({"chainId": 5920, "request": {}, "signature": "0x"})
    assert malformed.error_kind == "validation_error"
    assert malformed.to_dict()["success"] is False


def test_misconfigured_chain_reports_service_unavailable(
    relayer_config: RelayerConfig, web3_factory: Callable[..., Any], clock: FakeClock
) -> None:
    chain = make_chain(contract_address="")
    relayer = GaslessRelayer(
        relayer_config,
        ChainRegistry([chain]),
        session=cast(requests.Session, DummySession()),
        web3_factory=web3_factory,
        clock=clock,
    )

    response = relayer.relay(_request("0x" + "11" * 65))

    assert response.error_kind == "misconfigured_chain"
    assert response.status_code == 503


def test_batch_is_validated_then_refused(
    relayer: GaslessRelayer, chain: ChainProfile, node: FakeNode
) -> None:
    signature = _signed(chain)
    single = _request(signature)

    too_large = relayer.relay_batch(
        {"chainId": 5920, "requests": [single["request"]] * 11, "signatures": [signature] * 11}
    )
    mismatched = relayer.relay_batch(
        {"chainId": 5920, "requests": [single["request"]] * 2, "signatures": [signature]}
    )
    valid = relayer.relay_batch(
        {"chainId": 5920, "requests": [single["request"]] * 2, "signatures": [signature] * 2}
    )

    assert (too_large.status_code, too_large.error_kind) == (400, "validation_error")
    assert (mismatched.status_code, mismatched.error_kind) == (400, "validation_error")
    assert (valid.status_code, valid.error_kind) == (501, "not_implemented")
    assert valid.success is False
    assert node.sent == []


def test_queries(relayer: GaslessRelayer, node: FakeNode) -> None:
    node.nonces[USER_ADDRESS.lower()] = 7

    assert relayer.get_user_nonce("kadena testnet", USER_ADDRESS.lower()) == 7
    assert relayer.check_permit_support(5920, "tusdc")
    assert relayer.relayer_address == RELAYER_ADDRESS
    assert relayer.transaction_status(5920, TX_HASH.to_0x_hex())["status"] == "confirmed"
    estimate = relayer.estimate_fee({"chainId": 5920, "tokenSymbol": "TUSDC", "amount": "1000000"})
    assert estimate.fee == "100000"
    assert relayer.estimate_fee({"chainId": 5920}).error_kind == "validation_error"
