"""Gasless relayer base interface."""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from .types import (
    BatchRelayRequest,
    FeeEstimateRequest,
    FeeEstimateResponse,
    RelayOutcome,
    RelayRequest,
    RelayResponse,
    TransferIntent,
)


class GaslessRelayerBase(ABC):
    """Gasless ERC-20 transfer relayer interface."""

    @abstractmethod
    def relay(self, request: RelayRequest | Mapping[str, Any]) -> RelayResponse:
        pass

    @abstractmethod
    def relay_intent(self, chain: int | str, intent: TransferIntent) -> RelayOutcome:
        pass

    @abstractmethod
    def estimate_fee(self, request: FeeEstimateRequest | Mapping[str, Any]) -> FeeEstimateResponse:
        pass

    @abstractmethod
    def relay_batch(self, request: BatchRelayRequest | Mapping[str, Any]) -> RelayResponse:
        pass

    @abstractmethod
    def get_user_nonce(self, chain: int | str, address: str) -> int:
        pass

    @abstractmethod
    def check_permit_support(self, chain: int | str, token: str) -> bool:
        pass

    @abstractmethod
    def connect(self) -> None:
        pass

    @abstractmethod
    def disconnect(self) -> None:
        pass
