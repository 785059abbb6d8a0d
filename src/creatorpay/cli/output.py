"""Output formatting for the creatorpay CLI.

Every public function accepts a ``json_mode`` flag:
    - ``True``  → JSON envelope ``{status, data, error}`` for scripts
    - ``False`` → Rich-rendered text for operators
"""

from __future__ import annotations

import json
import sys
from datetime import datetime
from io import StringIO
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from creatorpay.payments.base import OutcomeKind, PaymentOutcome

_KIND_STYLE: Dict[OutcomeKind, str] = {
    OutcomeKind.PAID: "green",
    OutcomeKind.CODE_ISSUED: "cyan",
    OutcomeKind.ALREADY_OWNED: "green",
    OutcomeKind.STILL_PENDING: "yellow",
    OutcomeKind.INSUFFICIENT_FUNDS: "yellow",
    OutcomeKind.RACE_LOST: "yellow",
}


def format_idr(amount: Optional[int]) -> str:
    """Format whole Rupiah like ``Rp 15.000``."""
    if amount is None:
        return "N/A"
    sign = "-" if amount < 0 else ""
    return f"{sign}Rp {abs(int(amount)):,}".replace(",", ".")


def format_timestamp(ts: Optional[float]) -> str:
    if ts is None:
        return "N/A"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _render(renderable: Any) -> str:
    """Render a Rich object to a string."""
    buf = StringIO()
    console = Console(file=buf, force_terminal=sys.stdout.isatty(), width=100, highlight=False)
    console.print(renderable)
    return buf.getvalue().rstrip("\n")


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def format_response(
    status: str,
    data: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
    *,
    json_mode: bool = False,
) -> str:
    """Build a standard ``{status, data, error}`` response."""
    if json_mode:
        envelope: Dict[str, Any] = {"status": status}
        if data is not None:
            envelope["data"] = data
        if error is not None:
            envelope["error"] = error
        return json.dumps(envelope, indent=2, sort_keys=False)

    if status == "error" and error:
        t = Text()
        t.append("Error", style="bold red")
        t.append(f" [{error.get('code', 'UNKNOWN')}]: ", style="red")
        t.append(error.get("message", "An unknown error occurred."))
        return _render(Panel(t, title="Error", border_style="red"))

    if data:
        lines = [f"[bold]{k}:[/bold] {v}" for k, v in data.items()]
        return _render(Panel("\n".join(lines), border_style="green"))

    return f"Status: {status}"


def format_error(message: str, code: str = "ERROR", *, json_mode: bool = False) -> str:
    """Shortcut for a standard error response."""
    return format_response("error", error={"code": code, "message": message}, json_mode=json_mode)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


def format_outcome(outcome: PaymentOutcome, *, json_mode: bool = False) -> str:
    """Format an orchestrator outcome (status check, callback, ...)."""
    if json_mode:
        return format_response("success", data=outcome.to_dict(), json_mode=True)

    txn = outcome.transaction
    table = Table(show_header=False, box=None, pad_edge=False)
    table.add_column("field", style="bold")
    table.add_column("value")
    table.add_row("Result", outcome.kind.value)
    if txn is not None:
        table.add_row("Transaction", txn.external_id)
        table.add_row("Status", txn.status.value)
        table.add_row("Purpose", txn.purpose.value)
        table.add_row("Amount", format_idr(txn.amount))
        if txn.bonus_amount:
            table.add_row("Bonus", format_idr(txn.bonus_amount))
        table.add_row("Expires", format_timestamp(txn.expires_at))
        if txn.failure_reason:
            table.add_row("Reason", txn.failure_reason)
    if outcome.balance is not None:
        table.add_row("Balance", format_idr(outcome.balance))
    if outcome.message:
        table.add_row("Message", outcome.message)
    style = _KIND_STYLE.get(outcome.kind, "red")
    return _render(Panel(table, title="Payment", border_style=style))


def format_balance(
    buyer_id: int,
    channel_id: int,
    record: Optional[Dict[str, Any]],
    *,
    json_mode: bool = False,
) -> str:
    data = {
        "buyer_id": buyer_id,
        "channel_id": channel_id,
        "balance": record["balance_amount"] if record else 0,
        "total_topup": record["total_topup"] if record else 0,
        "total_spent": record["total_spent"] if record else 0,
        "last_topup_at": record["last_topup_at"] if record else None,
    }
    if json_mode:
        return format_response("success", data=data, json_mode=True)
    return format_response(
        "success",
        data={
            "Buyer": buyer_id,
            "Channel": channel_id,
            "Balance": format_idr(data["balance"]),
            "Total top-up": format_idr(data["total_topup"]),
            "Total spent": format_idr(data["total_spent"]),
            "Last top-up": format_timestamp(data["last_topup_at"]),
        },
    )


def format_expired(transaction_ids: List[str], *, json_mode: bool = False) -> str:
    if json_mode:
        return format_response(
            "success",
            data={"expired": transaction_ids, "count": len(transaction_ids)},
            json_mode=True,
        )
    if not transaction_ids:
        return "No stale transactions."
    body = "\n".join(transaction_ids)
    return _render(Panel(body, title=f"Expired {len(transaction_ids)} transaction(s)", border_style="yellow"))


def format_history(
    buyer_id: int,
    balances: List[Dict[str, Any]],
    transactions: List[Dict[str, Any]],
    purchases: List[Dict[str, Any]],
    *,
    json_mode: bool = False,
) -> str:
    """Format a buyer's balances, recent transactions and purchases.

    Expects ``channel_balances`` and ``purchase_history`` rows and
    transaction dicts from ``PaymentTransaction.to_dict()``.
    """
    if json_mode:
        return format_response(
            "success",
            data={
                "buyer_id": buyer_id,
                "balances": balances,
                "transactions": transactions,
                "purchases": purchases,
            },
            json_mode=True,
        )

    if not (balances or transactions or purchases):
        return _render(Panel(f"No history for buyer {buyer_id}.", title="History", border_style="yellow"))

    parts: List[str] = []
    if balances:
        table = Table(title="Balances", border_style="blue")
        table.add_column("Channel", style="bold")
        table.add_column("Balance", justify="right")
        table.add_column("Total top-up", justify="right")
        table.add_column("Total spent", justify="right")
        for b in balances:
            table.add_row(
                str(b["channel_id"]),
                format_idr(b["balance_amount"]),
                format_idr(b["total_topup"]),
                format_idr(b["total_spent"]),
            )
        parts.append(_render(table))
    if transactions:
        table = Table(title="Transactions", border_style="blue")
        table.add_column("ID", style="bold")
        table.add_column("Purpose")
        table.add_column("Amount", justify="right")
        table.add_column("Status")
        table.add_column("Created")
        for t in transactions:
            color = {"paid": "green", "pending": "yellow"}.get(t["status"], "red")
            table.add_row(
                t["external_id"],
                t["purpose"],
                format_idr(t["amount"]),
                Text(t["status"], style=color),
                format_timestamp(t.get("created_at")),
            )
        parts.append(_render(table))
    if purchases:
        table = Table(title="Purchases", border_style="blue")
        table.add_column("Content", style="bold")
        table.add_column("Amount", justify="right")
        table.add_column("Method")
        table.add_column("Date")
        for p in purchases:
            table.add_row(
                str(p["content_id"]),
                format_idr(p["amount"]),
                p["payment_method"],
                format_timestamp(p["created_at"]),
            )
        parts.append(_render(table))
    return "\n".join(parts)
