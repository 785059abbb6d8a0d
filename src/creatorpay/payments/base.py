"""Payment data model, error taxonomy and collaborator interfaces.

Every monetary movement in creatorpay is tracked as a
:class:`PaymentTransaction`.  A transaction starts ``pending`` when a
gateway code is minted (or is recorded ``paid`` straight away for a
balance purchase) and leaves ``pending`` exactly once.
"""

from __future__ import annotations

import enum
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping


class TransactionStatus(str, enum.Enum):
    """Lifecycle states for a payment transaction."""

    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class PaymentPurpose(str, enum.Enum):
    """What the money is for."""

    CONTENT_PURCHASE = "content_purchase"
    BALANCE_TOPUP = "balance_topup"


class PaymentMethod(str, enum.Enum):
    """How the buyer pays."""

    BALANCE = "balance"
    GATEWAY_CODE = "gateway_code"


class ContinuationChoice(str, enum.Enum):
    """Options offered after a top-up that carried a pending purchase."""

    BALANCE = "balance"
    GATEWAY_CODE = "gateway_code"
    TOPUP_SHORTFALL = "topup_shortfall"
    ABANDON = "abandon"


_ID_PREFIXES: dict[tuple[PaymentPurpose, PaymentMethod], str] = {
    (PaymentPurpose.CONTENT_PURCHASE, PaymentMethod.GATEWAY_CODE): "content",
    (PaymentPurpose.CONTENT_PURCHASE, PaymentMethod.BALANCE): "bal",
    (PaymentPurpose.BALANCE_TOPUP, PaymentMethod.GATEWAY_CODE): "topup",
}


def make_transaction_id(
    purpose: PaymentPurpose,
    method: PaymentMethod,
    buyer_id: int,
    *,
    content_id: int | None = None,
    now: float | None = None,
) -> str:
    """Build an external transaction id.

    The id embeds purpose, buyer and a millisecond timestamp, e.g.
    ``content_42_7761064473_1718000000000_9f3a``.  The short random
    suffix separates two intents issued within the same millisecond.
    """
    prefix = _ID_PREFIXES.get((purpose, method))
    if prefix is None:
        raise ValueError(f"No transaction id scheme for {purpose.value}/{method.value}")
    millis = int((now if now is not None else time.time()) * 1000)
    parts = [prefix]
    if content_id is not None:
        parts.append(str(content_id))
    parts.extend([str(buyer_id), str(millis), secrets.token_hex(2)])
    return "_".join(parts)


@dataclass
class PaymentTransaction:
    """One externally-identified attempt to move money.

    Amounts are integer Rupiah (the currency has no minor unit in use).
    """

    external_id: str
    buyer_id: int
    channel_id: int
    amount: int
    purpose: PaymentPurpose
    method: PaymentMethod
    status: TransactionStatus = TransactionStatus.PENDING
    content_id: int | None = None
    pending_content_id: int | None = None
    expires_at: float | None = None
    gateway_code: str | None = None
    gateway_url: str | None = None
    bonus_amount: int = 0
    failure_reason: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["purpose"] = self.purpose.value
        data["method"] = self.method.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> PaymentTransaction:
        """Build a transaction from a ``payment_transactions`` row."""
        return cls(
            external_id=row["external_id"],
            buyer_id=row["buyer_id"],
            channel_id=row["channel_id"],
            amount=row["amount"],
            purpose=PaymentPurpose(row["purpose"]),
            method=PaymentMethod(row["payment_method"]),
            status=TransactionStatus(row["status"]),
            content_id=row["content_id"],
            pending_content_id=row["pending_content_id"],
            expires_at=row["expires_at"],
            gateway_code=row["gateway_code"],
            gateway_url=row["gateway_url"],
            bonus_amount=row["bonus_amount"],
            failure_reason=row["failure_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class GatewayCode:
    """A payment code minted by the gateway (or synthesized locally)."""

    transaction_id: str
    code: str
    url: str
    amount: int
    expires_at: float
    placeholder: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GatewayReport:
    """A confirmation claim about a transaction, from a callback or a poll."""

    transaction_id: str
    complete: bool
    received_amount: int | None = None
    raw_status: str = ""
    source: str = "callback"


class OutcomeKind(str, enum.Enum):
    """Result categories returned by the orchestrator."""

    PAID = "paid"
    CODE_ISSUED = "code_issued"
    ALREADY_OWNED = "already_owned"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RACE_LOST = "race_lost"
    STILL_PENDING = "still_pending"
    NOT_FOUND = "not_found"
    ABANDONED = "abandoned"


@dataclass
class PaymentOutcome:
    """What happened in response to an intent or a confirmation."""

    kind: OutcomeKind
    transaction: PaymentTransaction | None = None
    code: GatewayCode | None = None
    balance: int | None = None
    price: int | None = None
    shortfall: int | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "transaction": self.transaction.to_dict() if self.transaction else None,
            "code": self.code.to_dict() if self.code else None,
            "balance": self.balance,
            "price": self.price,
            "shortfall": self.shortfall,
            "message": self.message,
        }


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PaymentError(Exception):
    """Base exception for payment-related errors."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class ConfigurationError(PaymentError):
    """A channel credential or process setting is missing or invalid.

    Fatal to the attempted operation, never to the process.
    """


class TransientError(PaymentError):
    """A dependency is temporarily unavailable; the caller may retry."""


class GatewayUnavailable(TransientError):
    """Transport failure or unexpected HTTP status from the gateway."""


class StorageUnavailable(TransientError):
    """The datastore rejected or failed an operation."""


class AmountMismatch(PaymentError):
    """Received funds differ from the expected amount."""


class RaceLost(PaymentError):
    """A concurrent operation already resolved this transaction."""


class ExpiredTransaction(PaymentError):
    """The transaction deadline passed before confirmation."""


class NotFound(PaymentError):
    """Unknown content, channel or transaction."""


class InsufficientFunds(PaymentError):
    """The buyer's channel balance cannot cover the price."""

    def __init__(self, message: str, *, balance: int, price: int) -> None:
        super().__init__(message, code="INSUFFICIENT_FUNDS")
        self.balance = balance
        self.price = price

    @property
    def shortfall(self) -> int:
        return max(self.price - self.balance, 0)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class DeliveryNotifier(ABC):
    """Pushes purchased media to a buyer (chat-platform wrapper)."""

    @abstractmethod
    async def deliver(self, buyer_id: int, content_id: int) -> None:
        """Send content *content_id* to *buyer_id*.

        Raises:
            Exception: Any failure; the orchestrator logs it and reports
                a delivery failure event without undoing the payment.
        """
