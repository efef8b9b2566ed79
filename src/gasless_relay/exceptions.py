"""Exception hierarchy for the gasless relay pipeline."""

from typing import Any


class RelayError(Exception):
    """Base exception for all relay pipeline errors."""

    kind = "relay_error"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(RelayError):
    """Raised when input validation fails."""

    kind = "validation_error"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.field = field
        self.value = value


class DeadlineExpiredError(ValidationError):
    """Raised when a transfer deadline is not strictly in the future."""

    kind = "deadline_expired"


class UnsupportedChainOrTokenError(RelayError):
    """Raised when a chain or token is not part of the loaded configuration."""

    kind = "unsupported_chain_or_token"


class UnsupportedChainError(UnsupportedChainOrTokenError):
    kind = "unsupported_chain"

    def __init__(self, chain: Any, details: dict | None = None):
        super().__init__(f"Unsupported chain: {chain}", details)
        self.chain = chain


class UnsupportedTokenError(UnsupportedChainOrTokenError):
    kind = "unsupported_token"

    def __init__(self, symbol: str, chain: Any, details: dict | None = None):
        super().__init__(f"Unsupported token: {symbol} on chain {chain}", details)
        self.symbol = symbol
        self.chain = chain


class MisconfiguredChainError(RelayError):
    """Raised when a chain profile lacks a required address or disagrees with the chain."""

    kind = "misconfigured_chain"

    def __init__(
        self,
        message: str,
        chain: Any | None = None,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.chain = chain
        self.field = field


class SignatureError(RelayError):
    kind = "signature_error"


class SignatureFormatError(SignatureError):
    """Raised for signatures that cannot be recovered at all."""

    kind = "signature_format"


class SignatureMismatchError(SignatureError):
    """Raised when the recovered signer is not the transfer sender."""

    kind = "signature_mismatch"

    def __init__(
        self,
        message: str,
        expected: str | None = None,
        recovered: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.expected = expected
        self.recovered = recovered


class ReplayError(RelayError):
    kind = "replay_error"


class StaleNonceError(ReplayError):
    """Raised when the submitted nonce differs from the on-chain nonce."""

    kind = "stale_nonce"

    def __init__(
        self,
        message: str,
        expected: int | None = None,
        submitted: int | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.expected = expected
        self.submitted = submitted


class DuplicateRequestError(ReplayError):
    """Raised when the same (chain, sender, nonce) is already in flight or submitted."""

    kind = "duplicate_request"

    def __init__(self, key: str, details: dict | None = None):
        super().__init__(f"Transfer already in progress or processed: {key}", details)
        self.key = key


class InsufficientBalanceError(RelayError):
    kind = "insufficient_balance"


class InsufficientAllowanceError(RelayError):
    kind = "insufficient_allowance"


class PermitUnsupportedError(RelayError):
    """Raised when a permit transfer targets a token without ERC-2612 support."""

    kind = "permit_unsupported"

    def __init__(self, token: str, details: dict | None = None):
        super().__init__(f"Token {token} does not support ERC-2612 permit", details)
        self.token = token


class PriceUnavailableError(RelayError):
    """Raised when no price (fresh or stale) exists for a feed."""

    kind = "price_unavailable"

    def __init__(self, feed_id: str, message: str | None = None, details: dict | None = None):
        super().__init__(message or f"No price available for feed {feed_id}", details)
        self.feed_id = feed_id


class InvalidPriceDataError(PriceUnavailableError):
    """Raised when the oracle returns an unusable price."""

    kind = "invalid_price_data"

    def __init__(self, feed_id: str, reason: str, details: dict | None = None):
        super().__init__(feed_id, f"Invalid price data for feed {feed_id}: {reason}", details)
        self.reason = reason


class NetworkError(RelayError):
    """Raised when network/connection issues occur."""

    kind = "network_error"

    def __init__(
        self,
        message: str,
        endpoint: str | None = None,
        status_code: int | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.endpoint = endpoint
        self.status_code = status_code


class ContractRevertError(RelayError):
    """Raised when the relay contract reverts; never retried with the same nonce."""

    kind = "contract_revert"

    def __init__(
        self,
        message: str,
        reason: str | None = None,
        tx_hash: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.reason = reason
        self.tx_hash = tx_hash


class MethodNotImplementedError(RelayError):
    """Raised when a method is not yet implemented."""

    kind = "not_implemented"

    def __init__(self, method_name: str):
        super().__init__(f"Method '{method_name}' is not yet implemented")
        self.method_name = method_name


_HTTP_STATUS_BY_KIND = {
    ValidationError.kind: 400,
    DeadlineExpiredError.kind: 400,
    UnsupportedChainError.kind: 400,
    UnsupportedTokenError.kind: 400,
    SignatureFormatError.kind: 400,
    SignatureMismatchError.kind: 401,
    StaleNonceError.kind: 409,
    DuplicateRequestError.kind: 409,
    InsufficientBalanceError.kind: 422,
    InsufficientAllowanceError.kind: 422,
    PermitUnsupportedError.kind: 422,
    ContractRevertError.kind: 422,
    PriceUnavailableError.kind: 503,
    InvalidPriceDataError.kind: 503,
    NetworkError.kind: 503,
    MisconfiguredChainError.kind: 503,
    MethodNotImplementedError.kind: 501,
}


def http_status(error: RelayError | str) -> int:
    """Map an error (or error kind) to a transport status code."""
    kind = error if isinstance(error, str) else error.kind
    return _HTTP_STATUS_BY_KIND.get(kind, 500)
