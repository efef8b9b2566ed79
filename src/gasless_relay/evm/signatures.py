"""Recover and check the signer of a gasless transfer request."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import SignableMessage, encode_defunct, encode_typed_data
from web3 import Web3

from ..constants import (
    EIP712_DOMAIN_TYPE,
    GASLESS_TRANSFER_TYPES,
    PACKED_MESSAGE_TYPES,
    SignatureSchemeName,
)
from ..exceptions import (
    MisconfiguredChainError,
    SignatureFormatError,
    SignatureMismatchError,
    ValidationError,
)
from ..types import ResolvedTransfer
from ..utils import hex_to_bytes, to_0x_hex
from .config import ChainProfile
from .connections import CONTRACT_CALL_ERRORS, Web3Connections

logger = logging.getLogger(__name__)

SIGNATURE_LENGTH = 65
VALID_RECOVERY_IDS = (0, 1, 27, 28)

EIP712_DOMAIN_TYPEHASH = Web3.keccak(
    text="EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
)


def compute_domain_separator(chain: ChainProfile) -> bytes:
    encoded = abi_encode(
        ["bytes32", "bytes32", "bytes32", "uint256", "address"],
        [
            EIP712_DOMAIN_TYPEHASH,
            Web3.keccak(text=chain.eip712_name),
            Web3.keccak(text=chain.eip712_version),
            chain.chain_id,
            Web3.to_checksum_address(chain.contract_address),
        ],
    )
    return bytes(Web3.keccak(encoded))


def signable_digest(message: SignableMessage) -> bytes:
    """Hash an EIP-191 signable message the way the signer's wallet does."""
    return bytes(Web3.keccak(b"\x19" + message.version + message.header + message.body))


def normalise_signature(signature: str | bytes) -> bytes:
    """Validate a 65-byte r||s||v signature and return it with v in {27, 28}."""

    try:
        raw = hex_to_bytes(signature, "signature")
    except ValidationError as exc:
        raise SignatureFormatError("Signature is not valid hex") from exc

    if len(raw) != SIGNATURE_LENGTH:
        raise SignatureFormatError(
            f"Signature must be {SIGNATURE_LENGTH} bytes", details={"length": len(raw)}
        )

    v = raw[-1]
    if v not in VALID_RECOVERY_IDS:
        raise SignatureFormatError("Invalid signature recovery id", details={"v": v})
    if v < 27:
        raw = raw[:-1] + bytes([v + 27])
    return raw


class SignatureScheme(ABC):
    """How a transfer request is turned into the message the user signs."""

    name: SignatureSchemeName

    @abstractmethod
    def signable(self, chain: ChainProfile, transfer: ResolvedTransfer) -> SignableMessage:
        """Return the EIP-191 message for ``transfer`` on ``chain``."""

    def digest(self, chain: ChainProfile, transfer: ResolvedTransfer) -> bytes:
        return signable_digest(self.signable(chain, transfer))

    def recover(
        self, chain: ChainProfile, transfer: ResolvedTransfer, signature: str | bytes
    ) -> str:
        raw = normalise_signature(signature)
        message = self.signable(chain, transfer)
        try:
            return Account.recover_message(message, signature=raw)
        except Exception as exc:
            # eth-keys rejects r/s values outside the curve order here.
            raise SignatureFormatError(
                "Signature recovery failed", details={"error": str(exc)}
            ) from exc


class TypedDataScheme(SignatureScheme):
    """EIP-712 ``Transfer`` struct under the relay contract's domain."""

    name = SignatureSchemeName.TYPED_DATA

    def typed_data(self, chain: ChainProfile, transfer: ResolvedTransfer) -> dict[str, Any]:
        return {
            "types": {"EIP712Domain": EIP712_DOMAIN_TYPE, **GASLESS_TRANSFER_TYPES},
            "primaryType": "Transfer",
            "domain": {
                "name": chain.eip712_name,
                "version": chain.eip712_version,
                "chainId": chain.chain_id,
                "verifyingContract": Web3.to_checksum_address(chain.contract_address),
            },
            "message": {
                "from": Web3.to_checksum_address(transfer.from_address),
                "to": Web3.to_checksum_address(transfer.to_address),
                "token": Web3.to_checksum_address(transfer.token_contract),
                "amount": transfer.amount,
                "relayerFee": transfer.relayer_fee,
                "nonce": transfer.resolved_nonce,
                "deadline": transfer.expiration_deadline,
            },
        }

    def signable(self, chain: ChainProfile, transfer: ResolvedTransfer) -> SignableMessage:
        return encode_typed_data(full_message=self.typed_data(chain, transfer))


class PackedHashScheme(SignatureScheme):
    """keccak256 of the packed request fields, signed as a personal message."""

    name = SignatureSchemeName.PACKED_HASH

    def packed_hash(self, chain: ChainProfile, transfer: ResolvedTransfer) -> bytes:
        return bytes(
            Web3.solidity_keccak(
                list(PACKED_MESSAGE_TYPES),
                [
                    Web3.to_checksum_address(chain.contract_address),
                    Web3.to_checksum_address(transfer.from_address),
                    Web3.to_checksum_address(transfer.to_address),
                    Web3.to_checksum_address(transfer.token_contract),
                    transfer.amount,
                    transfer.relayer_fee,
                    transfer.resolved_nonce,
                    transfer.expiration_deadline,
                ],
            )
        )

    def signable(self, chain: ChainProfile, transfer: ResolvedTransfer) -> SignableMessage:
        return encode_defunct(primitive=self.packed_hash(chain, transfer))


SCHEMES: dict[SignatureSchemeName, SignatureScheme] = {
    SignatureSchemeName.TYPED_DATA: TypedDataScheme(),
    SignatureSchemeName.PACKED_HASH: PackedHashScheme(),
}


class SignatureVerifier:
    """Verify transfer signatures with the scheme configured (or detected) per chain."""

    def __init__(self, connections: Web3Connections | None = None):
        self._connections = connections
        self._lock = threading.Lock()
        self._detected: dict[int, SignatureSchemeName] = {}

    def verify(self, chain: ChainProfile, transfer: ResolvedTransfer) -> str:
        """Return the recovered signer, which must equal the transfer sender."""

        scheme = self.scheme_for(chain)
        recovered = scheme.recover(chain, transfer, transfer.intent.signature)

        if recovered.lower() != transfer.from_address.lower():
            logger.debug(
                "Signature mismatch on chain %s: expected %s, recovered %s",
                chain.chain_id,
                transfer.from_address,
                recovered,
            )
            raise SignatureMismatchError(
                "Signature does not match sender",
                expected=transfer.from_address,
                recovered=recovered,
                details={"scheme": scheme.name.value},
            )

        logger.debug("Signature verified for %s using %s", recovered, scheme.name.value)
        return recovered

    def message_hash(self, chain: ChainProfile, transfer: ResolvedTransfer) -> str:
        """Digest the sender's wallet signs for ``transfer``."""
        return to_0x_hex(self.scheme_for(chain).digest(chain, transfer))

    def domain_separator(self, chain: ChainProfile) -> str:
        return to_0x_hex(compute_domain_separator(chain))

    def scheme_for(self, chain: ChainProfile) -> SignatureScheme:
        configured = SignatureSchemeName(chain.signature_scheme)
        if configured is not SignatureSchemeName.AUTO:
            return SCHEMES[configured]

        with self._lock:
            detected = self._detected.get(chain.chain_id)
        if detected is None:
            detected = self._detect_scheme(chain)
            with self._lock:
                self._detected[chain.chain_id] = detected
        return SCHEMES[detected]

    def _detect_scheme(self, chain: ChainProfile) -> SignatureSchemeName:
        if self._connections is None:
            raise MisconfiguredChainError(
                "Signature scheme detection requires an RPC connection",
                chain=chain.chain_id,
                field="signature_scheme",
            )

        contract = self._connections.gasless_contract(chain)
        try:
            on_chain = self._connections.read(
                chain,
                "domain separator",
                lambda: contract.functions.CONTRACT_DOMAIN_SEPARATOR().call(),
            )
        except CONTRACT_CALL_ERRORS as exc:
            logger.info(
                "Contract on chain %s exposes no domain separator (%s); using packed hash",
                chain.chain_id,
                exc,
            )
            return SignatureSchemeName.PACKED_HASH

        expected = compute_domain_separator(chain)
        if bytes(on_chain) != expected:
            raise MisconfiguredChainError(
                "Contract domain separator does not match configured EIP-712 domain",
                chain=chain.chain_id,
                field="eip712_name",
                details={
                    "expected": to_0x_hex(expected),
                    "actual": to_0x_hex(bytes(on_chain)),
                },
            )

        logger.info("Contract on chain %s uses EIP-712 typed data", chain.chain_id)
        return SignatureSchemeName.TYPED_DATA
