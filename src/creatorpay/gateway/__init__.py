"""External payment gateway clients."""

from creatorpay.gateway.qris import (
    GatewayRejected,
    QrisGatewayClient,
    is_placeholder_credential,
    parse_gateway_report,
)

__all__ = [
    "GatewayRejected",
    "QrisGatewayClient",
    "is_placeholder_credential",
    "parse_gateway_report",
]
