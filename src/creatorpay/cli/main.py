"""creatorpay operator CLI.

Inspect balances, buyer history and transactions, manage channel owners'
gateway credentials and the config file, replay saved gateway callbacks
and sweep stale payments.
Every command accepts ``--json`` for script-friendly output.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click

from creatorpay.config import PaymentConfig, VaultKey, load_payment_config, save_payment_config
from creatorpay.credential_vault import CredentialUnavailable, CredentialVault, NotConfigured
from creatorpay.gateway.qris import QrisGatewayClient
from creatorpay.ledger import LedgerStore
from creatorpay.log_config import configure_logging
from creatorpay.payments.base import PaymentError, PaymentOutcome
from creatorpay.payments.orchestrator import PaymentOrchestrator
from creatorpay.persistence import PaymentDB
from creatorpay.sessions import SessionStore
from creatorpay.cli.output import (
    format_balance,
    format_error,
    format_expired,
    format_history,
    format_outcome,
    format_response,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _config(ctx: click.Context) -> PaymentConfig:
    overrides = {}
    if ctx.obj.get("db_path"):
        overrides["db_path"] = ctx.obj["db_path"]
    path = ctx.obj.get("config_path")
    return load_payment_config(config_path=Path(path) if path else None, **overrides)


def _open_db(ctx: click.Context) -> PaymentDB:
    return PaymentDB(_config(ctx).db_path)


def _vault(db: PaymentDB, *, required: bool) -> Optional[CredentialVault]:
    try:
        return CredentialVault(db, VaultKey.from_env())
    except PaymentError:
        if required:
            raise
        logger.debug("CREATORPAY_ENCRYPTION_KEY not set; running without a credential vault")
        return None


def _run_orchestrated(
    ctx: click.Context,
    action: Callable[[PaymentOrchestrator], Awaitable[T]],
) -> T:
    config = _config(ctx)
    db = PaymentDB(config.db_path)
    gateway = QrisGatewayClient.from_config(config)

    async def _main() -> T:
        orch = PaymentOrchestrator(
            db,
            vault=_vault(db, required=False),
            gateway=gateway,
            config=config,
        )
        try:
            return await action(orch)
        finally:
            await orch.shutdown()

    try:
        return asyncio.run(_main())
    finally:
        gateway.close()
        db.close()


def _fail(exc: PaymentError, json_mode: bool) -> None:
    click.echo(format_error(str(exc), exc.code or "PAYMENT_ERROR", json_mode=json_mode))
    sys.exit(1)


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--db",
    "db_path",
    default=None,
    envvar="CREATORPAY_DB_PATH",
    help="SQLite database path (overrides config).",
)
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="Config file (default ~/.creatorpay/config.yaml).",
)
@click.option("--verbose", "-v", is_flag=True, help="Write DEBUG logs to the log directory.")
@click.version_option(package_name="creatorpay")
@click.pass_context
def cli(ctx: click.Context, db_path: str | None, config_path: str | None, verbose: bool) -> None:
    """creatorpay: payments and balances for paid channel content."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    ctx.obj["config_path"] = config_path
    if verbose:
        configure_logging(level="DEBUG")


# ---------------------------------------------------------------------------
# credential
# ---------------------------------------------------------------------------


@cli.group()
def credential() -> None:
    """Manage channel owners' gateway credentials."""


@credential.command("set")
@click.argument("owner_id", type=int)
@click.option(
    "--credential",
    "secret",
    prompt="Gateway API key",
    hide_input=True,
    help="Gateway API key (prompted when omitted).",
)
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def credential_set(ctx: click.Context, owner_id: int, secret: str, json_mode: bool) -> None:
    """Encrypt and store OWNER_ID's gateway credential."""
    try:
        db = _open_db(ctx)
        try:
            vault = _vault(db, required=True)
            vault.store(owner_id, secret.strip())  # type: ignore[union-attr]
        finally:
            db.close()
    except PaymentError as exc:
        _fail(exc, json_mode)
        return
    except ValueError as exc:
        click.echo(format_error(str(exc), "BAD_CREDENTIAL", json_mode=json_mode))
        sys.exit(1)
    click.echo(
        format_response(
            "success",
            data={"owner_id": owner_id, "configured": True},
            json_mode=json_mode,
        )
    )


def _credential_state(vault: CredentialVault, owner_id: int) -> str:
    if not vault.is_configured(owner_id):
        return "not_configured"
    try:
        vault.reveal(owner_id)
    except NotConfigured:
        return "not_configured"
    except CredentialUnavailable:
        return "unavailable"
    return "configured"


@credential.command("check")
@click.argument("owner_id", type=int)
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def credential_check(ctx: click.Context, owner_id: int, json_mode: bool) -> None:
    """Report whether OWNER_ID's credential can be decrypted (never prints it)."""
    try:
        db = _open_db(ctx)
        try:
            vault = _vault(db, required=True)
            state = _credential_state(vault, owner_id)  # type: ignore[arg-type]
        finally:
            db.close()
    except PaymentError as exc:
        _fail(exc, json_mode)
        return
    click.echo(
        format_response(
            "success" if state == "configured" else "error",
            data={"owner_id": owner_id, "credential": state},
            error=None if state == "configured" else {"code": state.upper(), "message": f"Credential {state}"},
            json_mode=json_mode,
        )
    )
    if state != "configured":
        sys.exit(1)


@credential.command("delete")
@click.argument("owner_id", type=int)
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def credential_delete(ctx: click.Context, owner_id: int, json_mode: bool) -> None:
    """Remove OWNER_ID's stored gateway credential."""
    try:
        db = _open_db(ctx)
        try:
            vault = _vault(db, required=True)
            deleted = vault.delete(owner_id)  # type: ignore[union-attr]
        finally:
            db.close()
    except PaymentError as exc:
        _fail(exc, json_mode)
        return
    if not deleted:
        click.echo(
            format_error(
                f"No gateway credential stored for owner {owner_id}",
                "NOT_CONFIGURED",
                json_mode=json_mode,
            )
        )
        sys.exit(1)
    click.echo(
        format_response(
            "success",
            data={"owner_id": owner_id, "configured": False},
            json_mode=json_mode,
        )
    )


# ---------------------------------------------------------------------------
# balance
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("buyer_id", type=int)
@click.argument("channel_id", type=int)
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def balance(ctx: click.Context, buyer_id: int, channel_id: int, json_mode: bool) -> None:
    """Show BUYER_ID's balance on CHANNEL_ID."""
    try:
        db = _open_db(ctx)
        try:
            record = LedgerStore(db).balance_record(buyer_id, channel_id)
        finally:
            db.close()
    except PaymentError as exc:
        _fail(exc, json_mode)
        return
    click.echo(format_balance(buyer_id, channel_id, record, json_mode=json_mode))


@cli.command()
@click.argument("buyer_id", type=int)
@click.option("--limit", "-n", default=20, type=click.IntRange(1, 100), help="Rows per section.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def history(ctx: click.Context, buyer_id: int, limit: int, json_mode: bool) -> None:
    """Show BUYER_ID's balances, recent transactions and purchases."""
    try:
        db = _open_db(ctx)
        try:
            ledger = LedgerStore(db)
            balances = ledger.list_balances(buyer_id)
            transactions = [t.to_dict() for t in SessionStore(db).list_for_buyer(buyer_id, limit)]
            purchases = ledger.purchase_history(buyer_id, limit)
        finally:
            db.close()
    except PaymentError as exc:
        _fail(exc, json_mode)
        return
    click.echo(format_history(buyer_id, balances, transactions, purchases, json_mode=json_mode))


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------

_SETTABLE: dict[str, Callable[[str], Any]] = {
    "environment": str,
    "base_url": str,
    "qris_endpoint": str,
    "status_endpoint": str,
    "payment_ttl_seconds": int,
    "poll_interval_seconds": float,
    "watcher_grace_seconds": float,
    "request_timeout_seconds": float,
    "db_path": str,
}


@cli.group("config")
def config_group() -> None:
    """Read and write the ``payments`` section of the config file."""


@config_group.command("set")
@click.argument("key", type=click.Choice(sorted(_SETTABLE)))
@click.argument("value")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str, json_mode: bool) -> None:
    """Persist KEY=VALUE in the config file."""
    path = ctx.obj.get("config_path")
    config_path = Path(path) if path else None
    try:
        parsed = _SETTABLE[key](value.strip())
    except ValueError:
        click.echo(format_error(f"Invalid value for {key}: {value!r}", "BAD_CONFIG", json_mode=json_mode))
        sys.exit(1)
    try:
        if key == "environment":
            parsed = load_payment_config(config_path=config_path, environment=parsed).environment
        save_payment_config({key: parsed}, config_path=config_path)
    except PaymentError as exc:
        _fail(exc, json_mode)
        return
    click.echo(format_response("success", data={key: parsed}, json_mode=json_mode))


# ---------------------------------------------------------------------------
# status / callback / expire-stale
# ---------------------------------------------------------------------------


def _echo_outcome(outcome: PaymentOutcome, json_mode: bool) -> None:
    click.echo(format_outcome(outcome, json_mode=json_mode))


@cli.command()
@click.argument("transaction_id")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def status(ctx: click.Context, transaction_id: str, json_mode: bool) -> None:
    """Show the state of TRANSACTION_ID."""
    try:
        outcome = _run_orchestrated(ctx, lambda orch: orch.check_status(transaction_id))
    except PaymentError as exc:
        _fail(exc, json_mode)
        return
    _echo_outcome(outcome, json_mode)


@cli.command()
@click.argument("payload_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def callback(ctx: click.Context, payload_file: str, json_mode: bool) -> None:
    """Replay a saved gateway callback body from PAYLOAD_FILE."""
    try:
        with open(payload_file, "r", encoding="utf-8") as fh:
            payload: Any = json.load(fh)
    except (OSError, ValueError) as exc:
        click.echo(format_error(f"Cannot read {payload_file}: {exc}", "BAD_PAYLOAD", json_mode=json_mode))
        sys.exit(1)
    try:
        outcome = _run_orchestrated(ctx, lambda orch: orch.confirm_by_external_callback(payload))
    except PaymentError as exc:
        _fail(exc, json_mode)
        return
    _echo_outcome(outcome, json_mode)


@cli.command("expire-stale")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def expire_stale(ctx: click.Context, json_mode: bool) -> None:
    """Expire pending transactions whose deadline has passed."""
    try:
        expired = _run_orchestrated(ctx, lambda orch: orch.expire_stale())
    except PaymentError as exc:
        _fail(exc, json_mode)
        return
    click.echo(format_expired(expired, json_mode=json_mode))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
