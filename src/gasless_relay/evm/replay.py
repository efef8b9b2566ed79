"""Replay protection: on-chain nonce agreement plus an in-process reservation table."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from web3 import Web3

from ..exceptions import DuplicateRequestError, MisconfiguredChainError, StaleNonceError
from .config import DEFAULT_REPLAY_MAX_ENTRIES, DEFAULT_REPLAY_TTL, ChainProfile
from .connections import CONTRACT_CALL_ERRORS, Web3Connections

logger = logging.getLogger(__name__)


def replay_key(chain_id: int, from_address: str, nonce: int) -> str:
    return f"{chain_id}:{from_address.lower()}:{nonce}"


@dataclass
class _Entry:
    stored_at: float
    submitted: bool = False


class ReplayReservation:
    """Handle on a reserved (chain, sender, nonce) key."""

    def __init__(self, guard: ReplayGuard, key: str):
        self._guard = guard
        self.key = key
        self.released = False
        self.submitted = False

    def release(self) -> None:
        """Drop the reservation so the same nonce can be retried; no-op after submission."""
        if self.submitted or self.released:
            return
        self._guard._release(self.key)
        self.released = True

    def mark_submitted(self) -> None:
        self._guard._mark_submitted(self.key)
        self.submitted = True


class ReplayGuard:
    """Reject stale nonces and concurrent or repeated submissions of the same transfer.

    Keys live in an insertion-ordered table bounded by ``max_entries``
    (oldest evicted first) and expire after ``ttl`` seconds.
    """

    def __init__(
        self,
        connections: Web3Connections,
        *,
        ttl: float = DEFAULT_REPLAY_TTL,
        max_entries: int = DEFAULT_REPLAY_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        self._connections = connections
        self._ttl = ttl
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, _Entry] = OrderedDict()

    def current_nonce(self, chain: ChainProfile, address: str) -> int:
        """Read the contract's next expected nonce for ``address``."""

        contract = self._connections.gasless_contract(chain)
        user = Web3.to_checksum_address(address)
        try:
            nonce = self._connections.read(
                chain,
                "user nonce",
                lambda: contract.functions.getCurrentUserNonce(user).call(),
            )
        except CONTRACT_CALL_ERRORS as exc:
            raise MisconfiguredChainError(
                "Relay contract did not answer getCurrentUserNonce",
                chain=chain.chain_id,
                field="contract_address",
                details={"error": str(exc)},
            ) from exc
        return int(nonce)

    def check_and_reserve(
        self, chain: ChainProfile, from_address: str, nonce: int
    ) -> ReplayReservation:
        on_chain = self.current_nonce(chain, from_address)
        if on_chain != nonce:
            raise StaleNonceError(
                f"Invalid nonce: expected {on_chain}, got {nonce}",
                expected=on_chain,
                submitted=nonce,
            )

        key = replay_key(chain.chain_id, from_address, nonce)
        with self._lock:
            self._evict_expired()
            if key in self._entries:
                raise DuplicateRequestError(key)
            self._entries[key] = _Entry(stored_at=self._clock())
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Replay table full, evicted %s", evicted)

        logger.debug("Reserved replay key %s", key)
        return ReplayReservation(self, key)

    def is_reserved(self, chain_id: int, from_address: str, nonce: int) -> bool:
        key = replay_key(chain_id, from_address, nonce)
        with self._lock:
            self._evict_expired()
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _release(self, key: str) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not entry.submitted:
                del self._entries[key]
        logger.debug("Released replay key %s", key)

    def _mark_submitted(self, key: str) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry(stored_at=self._clock())
                self._entries[key] = entry
            entry.submitted = True

    def _evict_expired(self) -> None:
        # Entries are in insertion order, so expiry is a prefix of the table.
        cutoff = self._clock() - self._ttl
        while self._entries:
            key, entry = next(iter(self._entries.items()))
            if entry.stored_at > cutoff:
                break
            del self._entries[key]
