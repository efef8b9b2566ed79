"""Submission of gasless transfers and receipt handling."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from web3 import Web3
from web3.contract import Contract
from web3.contract.contract import ContractFunction
from web3.exceptions import TimeExhausted, TransactionNotFound

from ..constants import REVERT_REASON_PATTERNS
from ..exceptions import (
    ContractRevertError,
    DeadlineExpiredError,
    InsufficientAllowanceError,
    InsufficientBalanceError,
    NetworkError,
    PermitUnsupportedError,
    RelayError,
    SignatureMismatchError,
    StaleNonceError,
)
from ..types import GasEstimate, RelayOutcome, RelayState, ResolvedTransfer
from ..utils import format_units, serialise_receipt, to_0x_hex
from .config import ChainProfile
from .connections import CONTRACT_CALL_ERRORS, Web3Connections, describe_contract_error
from .signatures import normalise_signature

logger = logging.getLogger(__name__)

_ERRORS_BY_KIND: dict[str, type[RelayError]] = {
    InsufficientAllowanceError.kind: InsufficientAllowanceError,
    InsufficientBalanceError.kind: InsufficientBalanceError,
    SignatureMismatchError.kind: SignatureMismatchError,
    StaleNonceError.kind: StaleNonceError,
    DeadlineExpiredError.kind: DeadlineExpiredError,
}


def parse_revert_reason(reason: str | None, *, tx_hash: str | None = None) -> RelayError:
    """Map a contract revert reason onto the error taxonomy."""

    text = reason or ""
    lowered = text.lower()
    details: dict[str, Any] = {"reason": text}
    if tx_hash:
        details["tx_hash"] = tx_hash

    for fragment, kind in REVERT_REASON_PATTERNS:
        if fragment in lowered:
            return _ERRORS_BY_KIND[kind](f"Contract reverted: {text}", details=details)

    return ContractRevertError(
        f"Contract reverted: {text}" if text else "Contract reverted",
        reason=text or None,
        tx_hash=tx_hash,
        details=details,
    )


def revert_error_from_exception(exc: Exception, *, tx_hash: str | None = None) -> RelayError:
    return parse_revert_reason(describe_contract_error(exc), tx_hash=tx_hash)


def transfer_request_tuple(transfer: ResolvedTransfer) -> tuple[Any, ...]:
    from_address, to_address, token, amount, fee, nonce, deadline = transfer.as_contract_request()
    return (
        Web3.to_checksum_address(from_address),
        Web3.to_checksum_address(to_address),
        Web3.to_checksum_address(token),
        amount,
        fee,
        nonce,
        deadline,
    )


def build_transfer_call(contract: Contract, transfer: ResolvedTransfer) -> ContractFunction:
    """Return the contract entry point call for the transfer's submission variant."""

    request = transfer_request_tuple(transfer)
    signature = normalise_signature(transfer.intent.signature)
    permit = transfer.intent.permit

    if permit is not None:
        return contract.functions.processPermitBasedGaslessTransfer(
            request, signature, permit.as_tuple()
        )
    return contract.functions.processStandardGaslessTransfer(request, signature)


def _receipt_field(receipt: Any, name: str) -> Any:
    if isinstance(receipt, Mapping):
        return receipt.get(name)
    return getattr(receipt, name, None)


class TransactionSubmitter:
    """Send relay transactions from the relayer account and follow them to a receipt."""

    def __init__(
        self,
        connections: Web3Connections,
        *,
        wait_for_receipt: bool,
        receipt_timeout: float,
    ) -> None:
        self._connections = connections
        self._wait_for_receipt = wait_for_receipt
        self._receipt_timeout = receipt_timeout

    # ------------------------------------------------------------------
    # Permit support
    # ------------------------------------------------------------------
    def check_permit_support(self, chain: ChainProfile, token_address: str) -> bool:
        contract = self._connections.gasless_contract(chain)
        token = Web3.to_checksum_address(token_address)
        try:
            supported = self._connections.read(
                chain,
                "permit support",
                lambda: contract.functions.checkERC2612PermitSupport(token).call(),
            )
        except CONTRACT_CALL_ERRORS as exc:
            logger.debug("Permit support check reverted for %s: %s", token, exc)
            return False
        return bool(supported)

    def ensure_permit_supported(self, chain: ChainProfile, token_address: str) -> None:
        if not self.check_permit_support(chain, token_address):
            raise PermitUnsupportedError(token_address, details={"chain_id": chain.chain_id})

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def submit(
        self, chain: ChainProfile, transfer: ResolvedTransfer, gas: GasEstimate
    ) -> RelayOutcome:
        """Send the transfer once; never retried.

        Raises the mapped revert error when the node rejects the call outright.
        Once a hash exists the result is always returned as an outcome.
        """

        contract = self._connections.gasless_contract(chain)
        web3 = self._connections.web3(chain)
        account = self._connections.account
        contract_function = build_transfer_call(contract, transfer)
        variant = transfer.intent.variant.value
        tx_params: dict[str, Any] = {"from": account.address, **gas.as_tx_params()}

        logger.info(
            "Dispatching %s transfer on chain %s from %s nonce=%s",
            variant,
            chain.chain_id,
            transfer.from_address,
            transfer.resolved_nonce,
        )

        # Serialise relayer-account nonces; the receipt wait happens outside the lock.
        with self._connections.send_lock(chain):
            try:
                tx_hash = contract_function.transact(tx_params)  # type: ignore[arg-type]
            except CONTRACT_CALL_ERRORS as exc:
                logger.error("Transfer rejected by contract on chain %s: %s", chain.chain_id, exc)
                raise revert_error_from_exception(exc) from exc
            except Exception as exc:
                logger.exception("Failed to submit %s transfer on chain %s", variant, chain.chain_id)
                raise NetworkError(
                    f"Failed to submit {variant} transfer",
                    endpoint=chain.rpc_url,
                    details={"chain_id": chain.chain_id, "error": str(exc)},
                ) from exc

        tx_hex = to_0x_hex(tx_hash)
        explorer_url = chain.explorer_tx_url(tx_hex)
        logger.info("Transaction sent on chain %s hash=%s", chain.chain_id, tx_hex)

        submitted = RelayOutcome(
            success=True,
            state=RelayState.SUBMITTED,
            tx_hash=tx_hex,
            fee=transfer.relayer_fee,
            explorer_url=explorer_url,
            message="Transaction submitted",
        )
        if not self._wait_for_receipt:
            return submitted

        try:
            receipt = web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
        except TimeExhausted:
            logger.warning(
                "No receipt for %s after %ss; leaving transfer as submitted",
                tx_hex,
                self._receipt_timeout,
            )
            submitted.message = "Transaction submitted; confirmation pending"
            return submitted

        block_number = _receipt_field(receipt, "blockNumber")
        gas_used = _receipt_field(receipt, "gasUsed")

        if _receipt_field(receipt, "status") == 0:
            error = self._reverted_error(contract_function, tx_params, block_number, tx_hex)
            logger.error("Transaction %s reverted on chain %s: %s", tx_hex, chain.chain_id, error)
            outcome = RelayOutcome.failure(error, state=RelayState.REVERTED, tx_hash=tx_hex)
            outcome.block_number = block_number
            outcome.gas_used = gas_used
            outcome.explorer_url = explorer_url
            return outcome

        logger.info(
            "Transaction confirmed on chain %s hash=%s block=%s", chain.chain_id, tx_hex, block_number
        )
        return RelayOutcome(
            success=True,
            state=RelayState.CONFIRMED,
            tx_hash=tx_hex,
            block_number=block_number,
            gas_used=gas_used,
            fee=transfer.relayer_fee,
            explorer_url=explorer_url,
            message="Transfer confirmed",
            raw_response=serialise_receipt(receipt),
        )

    def _reverted_error(
        self,
        contract_function: ContractFunction,
        tx_params: Mapping[str, Any],
        block_number: int | None,
        tx_hex: str,
    ) -> RelayError:
        """Replay a mined-but-reverted call to recover its reason."""

        try:
            contract_function.call(
                {"from": tx_params["from"]},
                block_identifier=block_number if block_number is not None else "latest",
            )
        except CONTRACT_CALL_ERRORS as exc:
            return revert_error_from_exception(exc, tx_hash=tx_hex)
        except Exception as exc:
            logger.debug("Could not replay reverted transaction %s: %s", tx_hex, exc)
        return ContractRevertError("Transaction reverted", tx_hash=tx_hex)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def transaction_status(self, chain: ChainProfile, tx_hash: str) -> dict[str, Any]:
        """Report ``pending``, ``confirmed`` or ``failed`` with a confirmation count."""

        web3 = self._connections.web3(chain)
        try:
            receipt = web3.eth.get_transaction_receipt(tx_hash)  # type: ignore[arg-type]
        except TransactionNotFound:
            return {"hash": tx_hash, "status": "pending", "confirmations": 0}
        except Exception as exc:
            raise NetworkError(
                "Failed to read transaction receipt",
                endpoint=chain.rpc_url,
                details={"hash": tx_hash, "error": str(exc)},
            ) from exc

        block_number = _receipt_field(receipt, "blockNumber")
        latest = self._connections.read(chain, "block number", lambda: web3.eth.block_number)
        confirmations = max(int(latest) - int(block_number) + 1, 0) if block_number else 0
        status = "confirmed" if _receipt_field(receipt, "status") == 1 else "failed"

        return {
            "hash": tx_hash,
            "status": status,
            "confirmations": confirmations,
            "block_number": block_number,
            "gas_used": _receipt_field(receipt, "gasUsed"),
            "explorer_url": chain.explorer_tx_url(tx_hash),
        }

    def relayer_balance(self, chain: ChainProfile) -> dict[str, Any]:
        web3 = self._connections.web3(chain)
        address = self._connections.account.address
        balance = int(
            self._connections.read(chain, "relayer balance", lambda: web3.eth.get_balance(address))
        )
        return {
            "address": address,
            "chain_id": chain.chain_id,
            "balance_wei": balance,
            "balance": str(format_units(balance, chain.native_decimals)),
        }
