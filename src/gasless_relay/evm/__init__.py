"""EVM components of the gasless relayer."""

from .client import GaslessRelayer
from .config import (
    ChainProfile,
    FeePolicy,
    GasPolicy,
    RelayerConfig,
    TokenProfile,
    default_chain_settings,
)
from .registry import ChainRegistry

__all__ = [
    "ChainProfile",
    "ChainRegistry",
    "FeePolicy",
    "GasPolicy",
    "GaslessRelayer",
    "RelayerConfig",
    "TokenProfile",
    "default_chain_settings",
]
