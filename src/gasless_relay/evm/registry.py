"""Read-only lookup of chain and token profiles."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from ..exceptions import MisconfiguredChainError, UnsupportedChainError, UnsupportedTokenError
from ..utils import is_address_like
from .config import ChainProfile, TokenProfile, chain_profile_from_mapping

logger = logging.getLogger(__name__)


class ChainRegistry:
    """Resolve chain and token configuration loaded once at startup."""

    def __init__(self, profiles: Iterable[ChainProfile]) -> None:
        by_id: dict[int, ChainProfile] = {}
        by_name: dict[str, int] = {}
        for profile in profiles:
            if profile.chain_id in by_id:
                raise MisconfiguredChainError(
                    f"Duplicate chain id {profile.chain_id}", chain=profile.chain_id
                )
            by_id[profile.chain_id] = profile
            by_name[profile.name.lower()] = profile.chain_id
        self._by_id = by_id
        self._by_name = by_name

    @classmethod
    def from_mapping(cls, chains: Mapping[str, Mapping[str, Any]]) -> ChainRegistry:
        """Build a registry from ``{name: chain settings}``; names become lookup aliases."""

        profiles = []
        aliases: dict[str, int] = {}
        for name, settings in chains.items():
            profile = chain_profile_from_mapping(name, settings)
            profiles.append(profile)
            aliases[name.lower()] = profile.chain_id

        registry = cls(profiles)
        registry._by_name.update(aliases)
        logger.info("Chain configuration loaded for %s chains", len(profiles))
        return registry

    def supported_chains(self) -> list[int]:
        return sorted(self._by_id)

    def resolve(self, chain: int | str) -> ChainProfile:
        profile = self._lookup(chain)

        if not profile.contract_address:
            raise MisconfiguredChainError(
                f"Contract address not configured for chain: {profile.name}",
                chain=profile.chain_id,
                field="contract_address",
            )
        return profile

    def resolve_token(self, chain: int | str, symbol: str) -> TokenProfile:
        """Resolve a token by symbol, or by contract address when given one."""

        profile = self.resolve(chain)
        token: TokenProfile | None

        if is_address_like(symbol):
            wanted = symbol.lower()
            token = next(
                (
                    entry
                    for entry in profile.tokens.values()
                    if entry.contract_address and entry.contract_address.lower() == wanted
                ),
                None,
            )
        else:
            token = profile.tokens.get(symbol.upper())

        if token is None:
            raise UnsupportedTokenError(symbol, profile.chain_id)

        if not token.contract_address:
            raise MisconfiguredChainError(
                f"Token {token.symbol} address not configured for chain: {profile.name}",
                chain=profile.chain_id,
                field="tokens",
            )
        return token

    def _lookup(self, chain: int | str) -> ChainProfile:
        chain_id: int | None
        if isinstance(chain, int) and not isinstance(chain, bool):
            chain_id = chain
        else:
            text = str(chain).strip()
            chain_id = int(text) if text.isdigit() else self._by_name.get(text.lower())

        profile = self._by_id.get(chain_id) if chain_id is not None else None
        if profile is None:
            raise UnsupportedChainError(chain)
        return profile
