"""Utility functions for the gasless relay pipeline."""

from collections.abc import Mapping, Sequence
from decimal import Decimal
from typing import Any

from eth_typing import ChecksumAddress, HexStr
from hexbytes import HexBytes
from web3 import Web3

from .constants import UINT256_MAX
from .exceptions import ValidationError


def to_uint256(value: Any, field: str = "value") -> int:
    """Parse an unsigned 256-bit integer from an int or a decimal/hex string."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", field=field, value=value)

    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            parsed = int(text, 16) if text.lower().startswith("0x") else int(text, 10)
        except ValueError:
            raise ValidationError(f"{field} must be an integer string", field=field, value=value)
    else:
        raise ValidationError(f"{field} must be an integer", field=field, value=value)

    if parsed < 0:
        raise ValidationError(f"{field} cannot be negative", field=field, value=value)

    if parsed > UINT256_MAX:
        raise ValidationError(f"{field} exceeds uint256 maximum", field=field, value=value)

    return parsed


def normalise_address(value: Any, field: str = "address") -> ChecksumAddress:
    """Return the checksummed form of an EVM address."""
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValidationError(f"Invalid address for {field}", field=field, value=value)
    return Web3.to_checksum_address(value)


def is_address_like(value: Any) -> bool:
    return isinstance(value, str) and value.lower().startswith("0x") and len(value) == 42


def hex_to_bytes(value: bytes | str, field: str = "value") -> bytes:
    """Decode 0x-prefixed hex (or pass bytes through)."""
    if isinstance(value, bytes | bytearray):
        return bytes(value)

    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a hex string", field=field, value=value)

    try:
        return Web3.to_bytes(hexstr=HexStr(value))
    except (ValueError, TypeError):
        raise ValidationError(f"{field} must be a hex string", field=field, value=value)


def to_bytes32(value: bytes | str, field: str = "value") -> bytes:
    raw = hex_to_bytes(value, field)
    if len(raw) != 32:
        raise ValidationError(f"{field} must be 32 bytes", field=field, value=value)
    return raw


def format_units(amount: int, decimals: int) -> Decimal:
    """Convert base units into a Decimal amount of whole tokens."""
    return Decimal(amount) / (Decimal(10) ** decimals)


def serialise_receipt(receipt: Any) -> Any:
    """Serialise web3 receipt objects into JSON-friendly structures."""
    if receipt is None:
        return None
    if isinstance(receipt, Mapping):
        return {key: serialise_receipt(value) for key, value in receipt.items()}
    if isinstance(receipt, Sequence) and not isinstance(
        receipt, str | bytes | bytearray | HexBytes
    ):
        return [serialise_receipt(item) for item in receipt]
    if isinstance(receipt, bytes | bytearray | HexBytes):
        return HexBytes(receipt).to_0x_hex()
    return receipt


def to_0x_hex(value: Any) -> str:
    """Render a tx hash returned by web3 (HexBytes, bytes or str) as 0x-prefixed hex."""
    if isinstance(value, str):
        return value if value.startswith("0x") else f"0x{value}"
    return HexBytes(value).to_0x_hex()
