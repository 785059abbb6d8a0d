"""Payment data model and errors for creatorpay.

Public API::

    from creatorpay.payments import (
        PaymentTransaction,
        PaymentOutcome,
        TransactionStatus,
        PaymentError,
    )

The orchestrator lives in :mod:`creatorpay.payments.orchestrator`; it is
not re-exported here because the stores it drives import this package.
"""

from creatorpay.payments.base import (
    AmountMismatch,
    ConfigurationError,
    ContinuationChoice,
    DeliveryNotifier,
    ExpiredTransaction,
    GatewayCode,
    GatewayReport,
    GatewayUnavailable,
    InsufficientFunds,
    NotFound,
    OutcomeKind,
    PaymentError,
    PaymentMethod,
    PaymentOutcome,
    PaymentPurpose,
    PaymentTransaction,
    RaceLost,
    StorageUnavailable,
    TransactionStatus,
    TransientError,
)

__all__ = [
    "AmountMismatch",
    "ConfigurationError",
    "ContinuationChoice",
    "DeliveryNotifier",
    "ExpiredTransaction",
    "GatewayCode",
    "GatewayReport",
    "GatewayUnavailable",
    "InsufficientFunds",
    "NotFound",
    "OutcomeKind",
    "PaymentError",
    "PaymentMethod",
    "PaymentOutcome",
    "PaymentPurpose",
    "PaymentTransaction",
    "RaceLost",
    "StorageUnavailable",
    "TransactionStatus",
    "TransientError",
]
