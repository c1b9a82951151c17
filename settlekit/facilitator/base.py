from dataclasses import dataclass, field
from typing import Any, Dict, Protocol, Union


class FacilitatorError(RuntimeError):
    """Transport-level failure after the retry budget is spent."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FacilitatorConfigError(RuntimeError):
    """Missing credentials or an unusable facilitator configuration."""


class InvalidFacilitatorRequest(ValueError):
    """A stored or submitted request that can never succeed as-is."""


@dataclass(frozen=True)
class FacilitatorRequest:
    payment_payload: Dict[str, Any]
    payment_requirements: Dict[str, Any]

    @classmethod
    def from_dict(cls, data: Any) -> "FacilitatorRequest":
        if not isinstance(data, dict):
            raise InvalidFacilitatorRequest("facilitator request must be a JSON object")
        payload = data.get("paymentPayload")
        requirements = data.get("paymentRequirements")
        if not isinstance(payload, dict):
            raise InvalidFacilitatorRequest("Missing paymentPayload in facilitator request")
        if not isinstance(requirements, dict):
            raise InvalidFacilitatorRequest("Missing paymentRequirements in facilitator request")
        return cls(payment_payload=payload, payment_requirements=requirements)

    @property
    def network(self) -> str | None:
        network = self.payment_requirements.get("network") or self.payment_payload.get("network")
        return str(network) if network else None

    @property
    def payer_hint(self) -> str | None:
        inner = self.payment_payload.get("payload")
        if not isinstance(inner, dict):
            return None
        authorization = inner.get("authorization")
        if not isinstance(authorization, dict):
            return None
        payer = authorization.get("from")
        return str(payer) if payer else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paymentPayload": self.payment_payload,
            "paymentRequirements": self.payment_requirements,
        }


@dataclass(frozen=True)
class Valid:
    payer: str | None = None
    tx_hash: str | None = None
    raw: Dict[str, Any] = field(default_factory=dict)

    is_valid = True


@dataclass(frozen=True)
class Invalid:
    reason: str
    payer: str | None = None
    raw: Dict[str, Any] = field(default_factory=dict)

    is_valid = False


@dataclass(frozen=True)
class Settled:
    transaction: str | None = None
    network: str | None = None
    payer: str | None = None
    raw: Dict[str, Any] = field(default_factory=dict)

    success = True


@dataclass(frozen=True)
class Rejected:
    reason: str
    network: str | None = None
    payer: str | None = None
    raw: Dict[str, Any] = field(default_factory=dict)

    success = False


VerifyResult = Union[Valid, Invalid]
SettleResult = Union[Settled, Rejected]


class FacilitatorClient(Protocol):
    async def verify(self, request: FacilitatorRequest) -> VerifyResult:
        ...

    async def settle(self, request: FacilitatorRequest, *, idempotency_key: str | None = None) -> SettleResult:
        ...

    async def aclose(self) -> None:
        ...


def parse_verify_response(data: Dict[str, Any]) -> VerifyResult:
    payer = data.get("payer") or None
    if data.get("isValid") is True:
        return Valid(payer=payer, tx_hash=data.get("txHash") or None, raw=data)
    reason = data.get("invalidReason") or data.get("error") or "facilitator reported invalid payment"
    return Invalid(reason=str(reason), payer=payer, raw=data)


def parse_settle_response(data: Dict[str, Any], request: FacilitatorRequest) -> SettleResult:
    payer = data.get("payer") or request.payer_hint
    network = data.get("network") or request.network
    if data.get("success") is True:
        transaction = data.get("transaction") or data.get("transactionHash") or data.get("transaction_hash")
        return Settled(transaction=transaction or None, network=network, payer=payer, raw=data)
    reason = (
        data.get("errorReason")
        or data.get("message")
        or data.get("error")
        or "facilitator settlement failed (unknown reason)"
    )
    return Rejected(reason=str(reason), network=network, payer=payer, raw=data)
