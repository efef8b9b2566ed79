"""Gasless Relay - relayer-paid ERC-20 transfers from user-signed intents.

This library validates signed transfer requests, prices the relayer fee from
a USD oracle and submits the transfer through a gasless proxy contract.
"""

from .base import GaslessRelayerBase
from .evm import ChainRegistry, GaslessRelayer, RelayerConfig
from .exceptions import (
    ContractRevertError,
    DeadlineExpiredError,
    DuplicateRequestError,
    InsufficientAllowanceError,
    InsufficientBalanceError,
    InvalidPriceDataError,
    MethodNotImplementedError,
    MisconfiguredChainError,
    NetworkError,
    PermitUnsupportedError,
    PriceUnavailableError,
    RelayError,
    ReplayError,
    SignatureError,
    SignatureFormatError,
    SignatureMismatchError,
    StaleNonceError,
    UnsupportedChainError,
    UnsupportedChainOrTokenError,
    UnsupportedTokenError,
    ValidationError,
    http_status,
)
from .types import (
    BatchRelayRequest,
    FeeBreakdown,
    FeeEstimateRequest,
    FeeEstimateResponse,
    GasEstimate,
    PermitSignature,
    PriceQuote,
    RelayOutcome,
    RelayRequest,
    RelayResponse,
    RelayState,
    ResolvedTransfer,
    SubmissionVariant,
    TransferIntent,
)

__version__ = "0.1.0"

__all__ = [
    # Relayer
    "GaslessRelayerBase",
    "GaslessRelayer",
    "ChainRegistry",
    "RelayerConfig",
    # Types
    "BatchRelayRequest",
    "FeeBreakdown",
    "FeeEstimateRequest",
    "FeeEstimateResponse",
    "GasEstimate",
    "PermitSignature",
    "PriceQuote",
    "RelayOutcome",
    "RelayRequest",
    "RelayResponse",
    "RelayState",
    "ResolvedTransfer",
    "SubmissionVariant",
    "TransferIntent",
    # Exceptions
    "RelayError",
    "ValidationError",
    "DeadlineExpiredError",
    "UnsupportedChainOrTokenError",
    "UnsupportedChainError",
    "UnsupportedTokenError",
    "MisconfiguredChainError",
    "SignatureError",
    "SignatureFormatError",
    "SignatureMismatchError",
    "ReplayError",
    "StaleNonceError",
    "DuplicateRequestError",
    "InsufficientBalanceError",
    "InsufficientAllowanceError",
    "PermitUnsupportedError",
    "PriceUnavailableError",
    "InvalidPriceDataError",
    "NetworkError",
    "ContractRevertError",
    "MethodNotImplementedError",
    "http_status",
]
