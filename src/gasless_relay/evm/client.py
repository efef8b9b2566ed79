"""Gasless transfer relayer: validates signed intents and submits them through the relay contract."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import replace
from typing import Any

import requests
from web3 import Web3

from ..base import GaslessRelayerBase
from ..exceptions import (
    DeadlineExpiredError,
    InsufficientAllowanceError,
    InsufficientBalanceError,
    MethodNotImplementedError,
    NetworkError,
    RelayError,
    ValidationError,
    http_status,
)
from ..types import (
    BatchRelayRequest,
    FeeBreakdown,
    FeeEstimateRequest,
    FeeEstimateResponse,
    RelayOutcome,
    RelayRequest,
    RelayResponse,
    RelayState,
    ResolvedTransfer,
    SubmissionVariant,
    TransferIntent,
)
from ..utils import normalise_address
from .config import ChainProfile, RelayerConfig, TokenProfile, default_chain_settings
from .connections import CONTRACT_CALL_ERRORS, Web3Connections, Web3Factory
from .fees import FeeCalculator
from .gas import GasEstimator
from .oracle import PriceOracleClient
from .registry import ChainRegistry
from .replay import ReplayGuard
from .signatures import SignatureVerifier
from .transactions import TransactionSubmitter

logger = logging.getLogger(__name__)


class GaslessRelayer(GaslessRelayerBase):
    """Relay user-signed ERC-20 transfers, paying gas from the relayer account.

    Each transfer moves through validation, fee computation, signature and
    nonce checks, balance pre-flight, gas estimation and submission.  Any
    failure before submission leaves nothing on chain and frees the nonce
    for a retry.
    """

    def __init__(
        self,
        config: RelayerConfig,
        registry: ChainRegistry,
        *,
        session: requests.Session | None = None,
        web3_factory: Web3Factory | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._registry = registry
        self._clock = clock
        self._session = session or requests.Session()
        self._connections = Web3Connections(config, web3_factory=web3_factory)
        self._oracle = PriceOracleClient(
            self._session,
            base_url=config.price_service_url,
            request_timeout=config.price_timeout,
            ttl=config.price_ttl,
            clock=clock,
        )
        self._fees = FeeCalculator(self._oracle, registry)
        self._verifier = SignatureVerifier(self._connections)
        self._replay = ReplayGuard(
            self._connections,
            ttl=config.replay_ttl,
            max_entries=config.replay_max_entries,
            clock=clock,
        )
        self._gas = GasEstimator(self._connections, ttl=config.gas_price_ttl, clock=clock)
        self._submitter = TransactionSubmitter(
            self._connections,
            wait_for_receipt=config.wait_for_receipt,
            receipt_timeout=config.receipt_timeout,
        )

    @classmethod
    def from_env(cls, *, dotenv_path: str | None = None) -> GaslessRelayer:
        """Build a relayer for the default chain set from environment variables."""

        config = RelayerConfig.from_env(dotenv_path=dotenv_path)
        return cls(config, ChainRegistry.from_mapping(default_chain_settings()))

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------
    def connect(self) -> None:
        self._connections.connect()

    def disconnect(self) -> None:
        self._connections.disconnect()

    def is_connected(self) -> bool:
        return self._connections.is_connected()

    def close(self) -> None:
        self.disconnect()
        self._session.close()

    @property
    def relayer_address(self) -> str:
        return self._connections.account.address

    @property
    def registry(self) -> ChainRegistry:
        return self._registry

    @property
    def oracle(self) -> PriceOracleClient:
        return self._oracle

    @property
    def gas(self) -> GasEstimator:
        return self._gas

    @property
    def verifier(self) -> SignatureVerifier:
        return self._verifier

    # ------------------------------------------------------------------
    # Relay
    # ------------------------------------------------------------------
    def relay(self, request: RelayRequest | Mapping[str, Any]) -> RelayResponse:
        try:
            parsed = request if isinstance(request, RelayRequest) else RelayRequest.from_dict(request)
        except RelayError as exc:
            logger.info("Rejected malformed relay request: %s", exc.message)
            return RelayResponse.from_outcome(
                RelayOutcome.failure(exc), status_code=http_status(exc)
            )

        outcome = self.relay_intent(parsed.chain_id, parsed.intent)
        status_code = 200 if outcome.success else http_status(outcome.error_kind or "")
        return RelayResponse.from_outcome(outcome, status_code=status_code)

    def relay_intent(self, chain: int | str, intent: TransferIntent) -> RelayOutcome:
        try:
            return self._run_pipeline(chain, intent)
        except RelayError as exc:
            logger.warning(
                "Transfer from %s nonce=%s rejected (%s): %s",
                intent.from_address,
                intent.nonce,
                exc.kind,
                exc.message,
            )
            return RelayOutcome.failure(exc)
        except Exception as exc:
            logger.exception("Unexpected relay failure")
            return RelayOutcome.failure(
                RelayError("Internal relay error", details={"error": str(exc)})
            )

    def relay_batch(self, request: BatchRelayRequest | Mapping[str, Any]) -> RelayResponse:
        """Validate a batch, then refuse it: batches are never split into single submissions."""

        try:
            self._validate_batch(request)
            raise MethodNotImplementedError("relay_batch")
        except RelayError as exc:
            logger.info("Refused batch relay request (%s): %s", exc.kind, exc.message)
            return RelayResponse.from_outcome(
                RelayOutcome.failure(exc), status_code=http_status(exc)
            )

    def _validate_batch(self, request: BatchRelayRequest | Mapping[str, Any]) -> None:
        parsed = (
            request if isinstance(request, BatchRelayRequest) else BatchRelayRequest.from_dict(request)
        )
        if not parsed.intents:
            raise ValidationError("Batch must contain at least one request", field="requests")
        if len(parsed.intents) > self._config.max_batch_size:
            raise ValidationError(
                f"Batch size exceeds maximum of {self._config.max_batch_size}",
                field="requests",
                value=len(parsed.intents),
            )
        self._registry.resolve(parsed.chain_id)

    # ------------------------------------------------------------------
    # Fees and queries
    # ------------------------------------------------------------------
    def estimate_fee(self, request: FeeEstimateRequest | Mapping[str, Any]) -> FeeEstimateResponse:
        try:
            parsed = (
                request
                if isinstance(request, FeeEstimateRequest)
                else FeeEstimateRequest.from_dict(request)
            )
        except RelayError as exc:
            return FeeEstimateResponse(
                success=False, fee="0", fee_usd="0", message=exc.message, error_kind=exc.kind
            )
        return self._fees.estimate(parsed)

    def compute_fee(self, chain: int | str, token: str, amount: int) -> FeeBreakdown:
        profile = self._registry.resolve(chain)
        return self._fees.compute_fee(
            profile, self._registry.resolve_token(profile.chain_id, token), amount
        )

    def get_user_nonce(self, chain: int | str, address: str) -> int:
        user = normalise_address(address, "address")
        return self._replay.current_nonce(self._registry.resolve(chain), user)

    def check_permit_support(self, chain: int | str, token: str) -> bool:
        profile = self._registry.resolve(chain)
        token_profile = self._registry.resolve_token(profile.chain_id, token)
        return self._submitter.check_permit_support(profile, token_profile.contract_address)

    def transaction_status(self, chain: int | str, tx_hash: str) -> dict[str, Any]:
        return self._submitter.transaction_status(self._registry.resolve(chain), tx_hash)

    def relayer_balance(self, chain: int | str) -> dict[str, Any]:
        return self._submitter.relayer_balance(self._registry.resolve(chain))

    def signing_digest(self, chain: int | str, intent: TransferIntent, relayer_fee: int) -> str:
        """Digest a wallet must sign for ``intent`` under the chain's signature scheme."""

        profile = self._registry.resolve(chain)
        token = self._registry.resolve_token(profile.chain_id, intent.token_symbol)
        resolved = ResolvedTransfer(
            intent=intent,
            token_contract=token.contract_address,
            relayer_fee=relayer_fee,
            resolved_nonce=intent.nonce,
            expiration_deadline=intent.deadline,
        )
        return self._verifier.message_hash(profile, resolved)

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------
    def _run_pipeline(self, chain_ref: int | str, raw_intent: TransferIntent) -> RelayOutcome:
        intent = self._validate_intent(raw_intent)
        self._trace(intent, RelayState.VALIDATED)

        chain = self._registry.resolve(chain_ref)
        token = self._registry.resolve_token(chain.chain_id, intent.token_symbol)

        if intent.variant is SubmissionVariant.PERMIT:
            self._submitter.ensure_permit_supported(chain, token.contract_address)

        breakdown = self._fees.compute_fee(chain, token, intent.amount)
        relayer_fee = self._accept_fee(intent, breakdown)

        transfer = ResolvedTransfer(
            intent=intent,
            token_contract=Web3.to_checksum_address(token.contract_address),
            relayer_fee=relayer_fee,
            resolved_nonce=intent.nonce,
            expiration_deadline=intent.deadline,
        )

        self._verifier.verify(chain, transfer)
        self._trace(intent, RelayState.SIGNATURE_OK)

        reservation = self._replay.check_and_reserve(chain, intent.from_address, intent.nonce)
        self._trace(intent, RelayState.NONCE_OK)

        try:
            self._preflight_funds(chain, token, transfer)
            gas = self._gas.estimate(chain, transfer)
            self._trace(intent, RelayState.GAS_ESTIMATED)

            self._check_deadline(intent.deadline)
            try:
                outcome = self._submitter.submit(chain, transfer, gas)
            except NetworkError:
                # The send may have reached the mempool; keep the nonce reserved.
                reservation.mark_submitted()
                raise
            reservation.mark_submitted()
        except Exception:
            reservation.release()
            raise

        self._trace(intent, outcome.state)
        return outcome

    def _validate_intent(self, intent: TransferIntent) -> TransferIntent:
        """Check request fields without touching the network."""

        from_address = normalise_address(intent.from_address, "fromAddress")
        to_address = normalise_address(intent.to_address, "toAddress")

        if intent.amount <= 0:
            raise ValidationError(
                "Transfer amount must be greater than zero", field="amount", value=intent.amount
            )
        if from_address == to_address:
            raise ValidationError(
                "Sender and recipient must differ", field="toAddress", value=intent.to_address
            )
        if not intent.signature:
            raise ValidationError("signature is required", field="signature")

        self._check_deadline(intent.deadline)
        max_deadline = int(self._clock()) + self._config.max_deadline_window
        if intent.deadline > max_deadline:
            raise ValidationError(
                "Deadline is too far in the future",
                field="deadline",
                value=intent.deadline,
                details={"max_deadline": max_deadline},
            )

        return replace(intent, from_address=from_address, to_address=to_address)

    def _check_deadline(self, deadline: int) -> None:
        now = int(self._clock())
        if deadline <= now:
            raise DeadlineExpiredError(
                "Transaction deadline has expired",
                field="deadline",
                value=deadline,
                details={"now": now},
            )

    def _accept_fee(self, intent: TransferIntent, breakdown: FeeBreakdown) -> int:
        if intent.relayer_fee is None:
            return breakdown.relayer_fee

        if breakdown.relayer_fee <= intent.relayer_fee <= breakdown.max_fee_allowed:
            return intent.relayer_fee

        raise ValidationError(
            "Signed relayer fee is outside the accepted range",
            field="relayerServiceFee",
            value=intent.relayer_fee,
            details={
                "minimum": breakdown.relayer_fee,
                "maximum": breakdown.max_fee_allowed,
            },
        )

    def _preflight_funds(
        self, chain: ChainProfile, token: TokenProfile, transfer: ResolvedTransfer
    ) -> None:
        required = transfer.amount + transfer.relayer_fee
        token_contract = self._connections.token_contract(chain, token.contract_address)
        owner = transfer.from_address

        try:
            balance = int(
                self._connections.read(
                    chain, "token balance", lambda: token_contract.functions.balanceOf(owner).call()
                )
            )
        except CONTRACT_CALL_ERRORS as exc:
            raise NetworkError(
                f"Failed to read {token.symbol} balance",
                endpoint=chain.rpc_url,
                details={"error": str(exc)},
            ) from exc

        if balance < required:
            raise InsufficientBalanceError(
                f"Insufficient {token.symbol} balance",
                details={"balance": str(balance), "required": str(required)},
            )

        if transfer.intent.variant is SubmissionVariant.PERMIT:
            return

        spender = Web3.to_checksum_address(chain.contract_address)
        try:
            allowance = int(
                self._connections.read(
                    chain,
                    "token allowance",
                    lambda: token_contract.functions.allowance(owner, spender).call(),
                )
            )
        except CONTRACT_CALL_ERRORS as exc:
            raise NetworkError(
                f"Failed to read {token.symbol} allowance",
                endpoint=chain.rpc_url,
                details={"error": str(exc)},
            ) from exc

        if allowance < required:
            raise InsufficientAllowanceError(
                f"Insufficient {token.symbol} allowance for relay contract",
                details={"allowance": str(allowance), "required": str(required)},
            )

    def _trace(self, intent: TransferIntent, state: RelayState) -> None:
        logger.debug("Transfer %s nonce=%s -> %s", intent.from_address, intent.nonce, state.value)
