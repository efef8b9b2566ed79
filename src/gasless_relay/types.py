"""Type definitions and data models for the gasless relay pipeline."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from .exceptions import RelayError, ValidationError
from .utils import to_bytes32, to_uint256


class RelayState(str, Enum):
    """Lifecycle of a single relayed transfer."""

    VALIDATED = "validated"
    SIGNATURE_OK = "signature_ok"
    NONCE_OK = "nonce_ok"
    GAS_ESTIMATED = "gas_estimated"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (RelayState.CONFIRMED, RelayState.REVERTED, RelayState.REJECTED)


class SubmissionVariant(str, Enum):
    STANDARD = "standard"
    PERMIT = "permit"


@dataclass(frozen=True)
class PermitSignature:
    """ERC-2612 permit approval signed by the token owner."""

    approval_value: int
    permit_deadline: int
    v: int
    r: bytes
    s: bytes

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PermitSignature":
        v = data.get("signatureV", data.get("v"))
        try:
            v_int = int(v)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise ValidationError("Permit v must be an integer", field="signatureV", value=v)
        if not 0 <= v_int <= 255:
            raise ValidationError("Permit v out of range", field="signatureV", value=v)

        return cls(
            approval_value=to_uint256(
                data.get("approvalValue", data.get("value")), "approvalValue"
            ),
            permit_deadline=to_uint256(
                data.get("permitDeadline", data.get("deadline")), "permitDeadline"
            ),
            v=v_int,
            r=to_bytes32(data.get("signatureR", data.get("r")), "signatureR"),  # type: ignore[arg-type]
            s=to_bytes32(data.get("signatureS", data.get("s")), "signatureS"),  # type: ignore[arg-type]
        )

    def as_tuple(self) -> tuple[int, int, int, bytes, bytes]:
        """Return the permit as tuple consumable by web3."""

        return (self.approval_value, self.permit_deadline, self.v, self.r, self.s)


@dataclass(frozen=True)
class TransferIntent:
    """A signed transfer request as received from a user; never mutated."""

    from_address: str
    to_address: str
    token_symbol: str
    amount: int
    nonce: int
    deadline: int
    signature: str
    permit: PermitSignature | None = None
    relayer_fee: int | None = None

    @property
    def variant(self) -> SubmissionVariant:
        return SubmissionVariant.PERMIT if self.permit is not None else SubmissionVariant.STANDARD


@dataclass(frozen=True)
class ResolvedTransfer:
    """A validated intent enriched with token contract, fee and on-chain nonce."""

    intent: TransferIntent
    token_contract: str
    relayer_fee: int
    resolved_nonce: int
    expiration_deadline: int

    @property
    def from_address(self) -> str:
        return self.intent.from_address

    @property
    def to_address(self) -> str:
        return self.intent.to_address

    @property
    def amount(self) -> int:
        return self.intent.amount

    def as_contract_request(self) -> tuple[str, str, str, int, int, int, int]:
        """Return the GaslessTransactionRequest tuple in ABI order."""

        return (
            self.intent.from_address,
            self.intent.to_address,
            self.token_contract,
            self.intent.amount,
            self.relayer_fee,
            self.resolved_nonce,
            self.expiration_deadline,
        )


@dataclass(frozen=True)
class PriceQuote:
    feed_id: str
    usd_price: Decimal
    fetched_at: float
    publish_time: int | None = None
    stale: bool = False


@dataclass(frozen=True)
class FeeBreakdown:
    """Result of a relayer fee computation."""

    relayer_fee: int
    percentage_fee: int
    min_fee_tokens: int
    max_fee_allowed: int
    degraded: bool = False
    usd_price: Decimal | None = None
    fee_usd: str = "0"


@dataclass(frozen=True)
class GasEstimate:
    gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    raw_estimate: int | None = None
    source: str = "network"
    legacy: bool = False

    def as_tx_params(self) -> dict[str, int]:
        if self.legacy:
            return {"gas": self.gas_limit, "gasPrice": self.max_fee_per_gas}
        return {
            "gas": self.gas_limit,
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
        }


@dataclass
class RelayOutcome:
    """Terminal result of one relayed transfer."""

    success: bool
    state: RelayState
    tx_hash: str | None = None
    block_number: int | None = None
    gas_used: int | None = None
    fee: int | None = None
    explorer_url: str | None = None
    error_kind: str | None = None
    message: str | None = None
    raw_response: dict[str, Any] | None = None

    @classmethod
    def failure(
        cls,
        error: RelayError,
        *,
        state: RelayState = RelayState.REJECTED,
        tx_hash: str | None = None,
    ) -> "RelayOutcome":
        return cls(
            success=False,
            state=state,
            tx_hash=tx_hash,
            error_kind=error.kind,
            message=error.message,
            raw_response={"details": dict(error.details)} if error.details else None,
        )


@dataclass(frozen=True)
class RelayRequest:
    """Wire-level relay request: chain, transfer fields, optional permit, signature."""

    chain_id: int | str
    intent: TransferIntent

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RelayRequest":
        chain_id = data.get("chainId")
        if chain_id is None or chain_id == "":
            raise ValidationError("chainId is required", field="chainId")

        request = data.get("request")
        if not isinstance(request, Mapping):
            raise ValidationError("request must be an object", field="request", value=request)

        signature = data.get("signature")
        if not isinstance(signature, str) or not signature:
            raise ValidationError("signature is required", field="signature")

        permit_data = data.get("permit")
        permit = PermitSignature.from_dict(permit_data) if permit_data else None

        relayer_fee = request.get("relayerServiceFee", request.get("relayerFee"))
        token = request.get("tokenSymbol") or request.get("tokenContract")
        if not token:
            raise ValidationError("tokenSymbol or tokenContract is required", field="token")

        intent = TransferIntent(
            from_address=str(request.get("fromAddress", "")),
            to_address=str(request.get("toAddress", "")),
            token_symbol=str(token),
            amount=to_uint256(request.get("transferAmount", request.get("amount")), "amount"),
            nonce=to_uint256(request.get("transactionNonce", request.get("nonce")), "nonce"),
            deadline=to_uint256(
                request.get("expirationDeadline", request.get("deadline")), "deadline"
            ),
            signature=signature,
            permit=permit,
            relayer_fee=(
                to_uint256(relayer_fee, "relayerServiceFee") if relayer_fee is not None else None
            ),
        )
        return cls(chain_id=chain_id, intent=intent)


@dataclass
class RelayResponse:
    success: bool
    message: str
    transaction_hash: str | None = None
    fee: str | None = None
    gas_used: str | None = None
    block_number: int | None = None
    explorer_url: str | None = None
    error_kind: str | None = None
    status_code: int = 200

    @classmethod
    def from_outcome(cls, outcome: RelayOutcome, *, status_code: int = 200) -> "RelayResponse":
        return cls(
            success=outcome.success,
            message=outcome.message or "",
            transaction_hash=outcome.tx_hash,
            fee=str(outcome.fee) if outcome.fee is not None else None,
            gas_used=str(outcome.gas_used) if outcome.gas_used is not None else None,
            block_number=outcome.block_number,
            explorer_url=outcome.explorer_url,
            error_kind=outcome.error_kind,
            status_code=status_code,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "message": self.message}
        optional = {
            "transactionHash": self.transaction_hash,
            "fee": self.fee,
            "gasUsed": self.gas_used,
            "blockNumber": self.block_number,
            "explorerUrl": self.explorer_url,
            "errorKind": self.error_kind,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload


@dataclass(frozen=True)
class FeeEstimateRequest:
    chain_id: int | str
    token_symbol: str
    amount: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FeeEstimateRequest":
        chain_id = data.get("chainId")
        if chain_id is None or chain_id == "":
            raise ValidationError("chainId is required", field="chainId")
        token_symbol = data.get("tokenSymbol")
        if not token_symbol:
            raise ValidationError("tokenSymbol is required", field="tokenSymbol")
        return cls(
            chain_id=chain_id,
            token_symbol=str(token_symbol),
            amount=to_uint256(data.get("amount"), "amount"),
        )


@dataclass
class FeeEstimateResponse:
    success: bool
    fee: str
    fee_usd: str
    message: str | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "fee": self.fee, "feeUsd": self.fee_usd}
        if self.message is not None:
            payload["message"] = self.message
        if self.error_kind is not None:
            payload["errorKind"] = self.error_kind
        return payload


@dataclass(frozen=True)
class BatchRelayRequest:
    chain_id: int | str
    intents: list[TransferIntent] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BatchRelayRequest":
        requests = data.get("requests") or []
        signatures = data.get("signatures") or []
        permits = data.get("permits")

        if len(requests) != len(signatures):
            raise ValidationError(
                "Requests and signatures length mismatch",
                field="signatures",
                details={"requests": len(requests), "signatures": len(signatures)},
            )
        if permits is not None and len(permits) != len(requests):
            raise ValidationError(
                "Requests and permits length mismatch",
                field="permits",
                details={"requests": len(requests), "permits": len(permits)},
            )

        intents = [
            RelayRequest.from_dict(
                {
                    "chainId": data.get("chainId"),
                    "request": request,
                    "signature": signature,
                    "permit": permits[index] if permits is not None else None,
                }
            ).intent
            for index, (request, signature) in enumerate(zip(requests, signatures))
        ]
        return cls(chain_id=data.get("chainId"), intents=intents)  # type: ignore[arg-type]
