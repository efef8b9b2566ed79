from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any, cast

import pytest
from conftest import RELAYER_KEY, USER_ADDRESS, FakeClock, FakeEth, FakeNode, make_chain, revert
from requests import ConnectionError as RequestsConnectionError

from gasless_relay.evm.config import RelayerConfig
from gasless_relay.evm.connections import Web3Connections
from gasless_relay.evm.replay import ReplayGuard, replay_key
from gasless_relay.exceptions import (
    DuplicateRequestError,
    MisconfiguredChainError,
    NetworkError,
    StaleNonceError,
)


def _guard(node: FakeNode, clock: FakeClock, **kwargs: Any) -> ReplayGuard:
    connections = Web3Connections(
        RelayerConfig(private_key=RELAYER_KEY),
        web3_factory=lambda chain, account: cast(Any, SimpleNamespace(eth=FakeEth(node))),
    )
    return ReplayGuard(connections, clock=clock, **kwargs)


def test_reserve_requires_exact_on_chain_nonce(node: FakeNode, clock: FakeClock) -> None:
    node.nonces[USER_ADDRESS.lower()] = 3
    guard = _guard(node, clock)

    with pytest.raises(StaleNonceError) as excinfo:
        guard.check_and_reserve(make_chain(), USER_ADDRESS, 2)
    assert excinfo.value.expected == 3
    assert excinfo.value.submitted == 2

    with pytest.raises(StaleNonceError):
        guard.check_and_reserve(make_chain(), USER_ADDRESS, 4)

    reservation = guard.check_and_reserve(make_chain(), USER_ADDRESS, 3)
    assert reservation.key == f"5920:{USER_ADDRESS.lower()}:3"


def test_duplicate_is_rejected_until_released(node: FakeNode, clock: FakeClock) -> None:
    guard = _guard(node, clock)
    chain = make_chain()

    reservation = guard.check_and_reserve(chain, USER_ADDRESS, 0)
    with pytest.raises(DuplicateRequestError):
        guard.check_and_reserve(chain, USER_ADDRESS.lower(), 0)

    reservation.release()
    assert guard.check_and_reserve(chain, USER_ADDRESS, 0).key == reservation.key


def test_submitted_reservation_survives_release(node: FakeNode, clock: FakeClock) -> None:
    guard = _guard(node, clock)
    chain = make_chain()

    reservation = guard.check_and_reserve(chain, USER_ADDRESS, 0)
    reservation.mark_submitted()
    reservation.release()

    assert guard.is_reserved(chain.chain_id, USER_ADDRESS, 0)


def test_entries_expire_after_ttl(node: FakeNode, clock: FakeClock) -> None:
    guard = _guard(node, clock, ttl=600)
    chain = make_chain()
    guard.check_and_reserve(chain, USER_ADDRESS, 0).mark_submitted()

    clock.advance(599)
    assert guard.is_reserved(chain.chain_id, USER_ADDRESS, 0)
    clock.advance(2)
    assert not guard.is_reserved(chain.chain_id, USER_ADDRESS, 0)


def test_table_is_bounded_oldest_first(node: FakeNode, clock: FakeClock) -> None:
    guard = _guard(node, clock, max_entries=2)
    chain = make_chain()
    senders = [f"0x{index:040x}" for index in range(1, 4)]

    for sender in senders:
        guard.check_and_reserve(chain, sender, 0)

    assert len(guard) == 2
    assert not guard.is_reserved(chain.chain_id, senders[0], 0)
    assert guard.is_reserved(chain.chain_id, senders[2], 0)


def test_concurrent_reservations_admit_exactly_one(node: FakeNode, clock: FakeClock) -> None:
    guard = _guard(node, clock)
    chain = make_chain()
    barrier = threading.Barrier(16)
    successes: list[str] = []
    duplicates: list[Exception] = []
    lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        try:
            reservation = guard.check_and_reserve(chain, USER_ADDRESS, 0)
        except DuplicateRequestError as exc:
            with lock:
                duplicates.append(exc)
        else:
            with lock:
                successes.append(reservation.key)

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(successes) == 1
    assert len(duplicates) == 15


def test_nonce_read_retries_once_then_fails(node: FakeNode, clock: FakeClock) -> None:
    guard = _guard(node, clock)
    node.nonce_errors = [RequestsConnectionError("reset")]
    assert guard.current_nonce(make_chain(), USER_ADDRESS) == 0

    node.nonce_errors = [RequestsConnectionError("reset"), RequestsConnectionError("reset")]
    with pytest.raises(NetworkError):
        guard.current_nonce(make_chain(), USER_ADDRESS)


def test_nonce_getter_revert_is_misconfiguration(node: FakeNode, clock: FakeClock) -> None:
    node.nonce_errors = [revert("not a relay contract")]

    with pytest.raises(MisconfiguredChainError):
        _guard(node, clock).current_nonce(make_chain(), USER_ADDRESS)


def test_replay_key_lowercases_sender() -> None:
    assert replay_key(1, "0xABCDEF", 7) == "1:0xabcdef:7"
