"""Payment orchestration.

Decides between the balance and gateway paths for a purchase, mints
gateway codes for purchases and top-ups, drives one polling watcher per
minted code, consumes gateway callbacks and reconciles every pending
transaction to exactly one terminal state.

All cross-request invariants live in the datastore:

* a balance purchase is one :meth:`~creatorpay.persistence.PaymentDB.atomic`
  scope around a guarded debit, the grant and the ``paid`` row;
* a confirmation is one scope around the guarded ``pending -> X``
  transition and its credit or grant, so a poll and a callback racing on
  the same id apply their effects at most once.

The orchestrator runs on ``asyncio``; store and gateway calls are blocking
and are dispatched with :func:`asyncio.to_thread`.  Public coroutines
return a :class:`~creatorpay.payments.base.PaymentOutcome` and raise only
:class:`~creatorpay.payments.base.PaymentError` subclasses.

Example::

    orch = PaymentOrchestrator(db, vault=vault, gateway=client,
                               notifier=notifier, config=config, event_bus=bus)
    outcome = await orch.create_purchase_intent(buyer_id, content_id)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Tuple

from creatorpay.catalog import Catalog, Channel, ContentItem
from creatorpay.credential_vault import CredentialUnavailable, CredentialVault, NotConfigured
from creatorpay.events import EventBus, EventType
from creatorpay.gateway.qris import (
    GatewayRejected,
    QrisGatewayClient,
    is_placeholder_credential,
    parse_gateway_report,
    placeholder_code,
)
from creatorpay.ledger import LedgerStore
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
    make_transaction_id,
)
from creatorpay.payments.pricing import final_price, topup_bonus
from creatorpay.persistence import PaymentDB
from creatorpay.sessions import SessionStore

if TYPE_CHECKING:
    from creatorpay.config import PaymentConfig

logger = logging.getLogger(__name__)

STATUS_TEXT: Dict[TransactionStatus, str] = {
    TransactionStatus.PENDING: "Waiting for payment",
    TransactionStatus.PAID: "Payment successful",
    TransactionStatus.EXPIRED: "Expired, please create a new transaction",
    TransactionStatus.FAILED: "Payment failed, please try again",
    TransactionStatus.CANCELLED: "Payment cancelled",
}

_STATUS_OUTCOME: Dict[TransactionStatus, OutcomeKind] = {
    TransactionStatus.PENDING: OutcomeKind.STILL_PENDING,
    TransactionStatus.PAID: OutcomeKind.PAID,
    TransactionStatus.EXPIRED: OutcomeKind.EXPIRED,
    TransactionStatus.FAILED: OutcomeKind.FAILED,
    TransactionStatus.CANCELLED: OutcomeKind.CANCELLED,
}


def _retry_hint(purpose: PaymentPurpose) -> str:
    return "topup_again" if purpose is PaymentPurpose.BALANCE_TOPUP else "buy_again"


class PaymentOrchestrator:
    """Owns every payment transaction from intent to terminal state.

    Args:
        db: Shared SQLite persistence layer.
        vault: Credential vault holding channel owners' gateway keys.
            Without one, minting fails with a configuration error and
            watchers only re-read the store.
        gateway: Gateway client used to mint and poll codes.
        notifier: Delivery collaborator; ``None`` skips delivery.
        config: Resolved :class:`~creatorpay.config.PaymentConfig`.
        event_bus: Receives message-ready events for the chat wrapper.
        clock: Wall-clock source, seconds since the epoch.
    """

    def __init__(
        self,
        db: PaymentDB,
        *,
        vault: Optional[CredentialVault],
        gateway: QrisGatewayClient,
        config: PaymentConfig,
        notifier: Optional[DeliveryNotifier] = None,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._db = db
        self._vault = vault
        self._gateway = gateway
        self._config = config
        self._notifier = notifier
        self._event_bus = event_bus or EventBus()
        self._clock = clock or time.time
        self._catalog = Catalog(db)
        self._ledger = LedgerStore(db)
        self._sessions = SessionStore(db)
        self._watchers: Dict[str, asyncio.Task[None]] = {}

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    @property
    def ledger(self) -> LedgerStore:
        return self._ledger

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _store(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking store call off the loop, translating datastore errors."""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except sqlite3.Error as exc:
            logger.error("Datastore error in %s: %s", getattr(fn, "__name__", fn), exc)
            raise StorageUnavailable(
                "Payment storage is temporarily unavailable", code="STORAGE_ERROR"
            ) from exc

    def _emit(self, event_type: EventType, data: Dict[str, Any], source: str = "payments") -> None:
        try:
            self._event_bus.publish(event_type, data, source=source)
        except Exception:
            logger.warning("Failed to emit payment event %s", event_type.value, exc_info=True)

    def _resolve_content_sync(self, content_id: int) -> Tuple[ContentItem, Channel, int]:
        content = self._catalog.get_content(content_id)
        if content is None:
            raise NotFound(f"Content {content_id} not found", code="CONTENT_NOT_FOUND")
        channel = self._catalog.get_channel(content.channel_id)
        if channel is None:
            raise NotFound(
                f"Channel {content.channel_id} for content {content_id} not found",
                code="CHANNEL_NOT_FOUND",
            )
        price = final_price(content.base_price, self._catalog.active_discount(channel.id, self._clock()))
        return content, channel, price

    async def _resolve_content(self, content_id: int) -> Tuple[ContentItem, Channel, int]:
        return await self._store(self._resolve_content_sync, content_id)

    async def _require_channel(self, channel_id: int) -> Channel:
        channel = await self._store(self._catalog.get_channel, channel_id)
        if channel is None:
            raise NotFound(f"Channel {channel_id} not found", code="CHANNEL_NOT_FOUND")
        return channel

    async def _deliver(self, buyer_id: int, content_id: int, transaction_id: Optional[str]) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.deliver(buyer_id, content_id)
        except Exception:
            logger.exception(
                "Delivery of content %s to buyer %s failed (transaction %s)",
                content_id,
                buyer_id,
                transaction_id,
            )
            self._emit(
                EventType.DELIVERY_FAILED,
                {
                    "buyer_id": buyer_id,
                    "content_id": content_id,
                    "transaction_id": transaction_id,
                    "retry": "check_status",
                },
            )

    # ------------------------------------------------------------------
    # Balance path
    # ------------------------------------------------------------------

    def _debit_and_grant(
        self,
        buyer_id: int,
        content: ContentItem,
        price: int,
    ) -> Tuple[Optional[PaymentTransaction], bool]:
        """Debit, grant and record in one scope.

        Returns ``(transaction, already_owned)``; the transaction is
        ``None`` when the buyer already owns the content or the debit was
        refused.
        """
        now = self._clock()
        with self._db.atomic() as cur:
            if self._ledger.has_access(buyer_id, content.id, cursor=cur):
                return None, True
            if not self._ledger.debit(buyer_id, content.channel_id, price, cursor=cur):
                return None, False
            txn = PaymentTransaction(
                external_id=make_transaction_id(
                    PaymentPurpose.CONTENT_PURCHASE,
                    PaymentMethod.BALANCE,
                    buyer_id,
                    content_id=content.id,
                    now=now,
                ),
                buyer_id=buyer_id,
                channel_id=content.channel_id,
                amount=price,
                purpose=PaymentPurpose.CONTENT_PURCHASE,
                method=PaymentMethod.BALANCE,
                status=TransactionStatus.PAID,
                content_id=content.id,
                created_at=now,
                updated_at=now,
            )
            self._sessions.create(txn, cursor=cur)
            self._ledger.grant_access(buyer_id, content.id, price, txn.external_id, cursor=cur)
            self._ledger.record_purchase(
                buyer_id, content.id, price, PaymentMethod.BALANCE.value, txn.external_id, cursor=cur
            )
            self._db.log_activity(
                buyer_id,
                "content_purchase",
                f"Purchased content {content.id} with balance",
                channel_id=content.channel_id,
                metadata={"content_id": content.id, "amount": price, "transaction_id": txn.external_id},
                cursor=cur,
            )
        return txn, False

    async def _redeliver(self, buyer_id: int, content: ContentItem, price: int) -> PaymentOutcome:
        logger.info("Buyer %s already owns content %s; redelivering", buyer_id, content.id)
        self._emit(
            EventType.PURCHASE_REDELIVERED,
            {"buyer_id": buyer_id, "content_id": content.id, "channel_id": content.channel_id},
        )
        await self._deliver(buyer_id, content.id, None)
        return PaymentOutcome(OutcomeKind.ALREADY_OWNED, price=price, message="Content already owned")

    async def purchase_with_balance(self, buyer_id: int, content_id: int) -> PaymentOutcome:
        """Pay for *content_id* from the buyer's channel balance.

        Raises:
            InsufficientFunds: The guarded debit was refused.
            NotFound: Unknown content or channel.
        """
        content, channel, price = await self._resolve_content(content_id)
        txn, owned = await self._store(self._debit_and_grant, buyer_id, content, price)
        if owned:
            return await self._redeliver(buyer_id, content, price)
        balance = await self._store(self._ledger.read, buyer_id, channel.id)
        if txn is None:
            raise InsufficientFunds(
                f"Balance {balance} cannot cover price {price}",
                balance=balance,
                price=price,
            )

        logger.info(
            "Transaction %s: buyer %s paid %d from balance for content %s",
            txn.external_id,
            buyer_id,
            price,
            content.id,
        )
        self._emit(
            EventType.PURCHASE_CONFIRMED,
            {
                "buyer_id": buyer_id,
                "content_id": content.id,
                "channel_id": channel.id,
                "amount": price,
                "balance": balance,
                "transaction_id": txn.external_id,
                "method": PaymentMethod.BALANCE.value,
            },
        )
        await self._deliver(buyer_id, content.id, txn.external_id)
        return PaymentOutcome(OutcomeKind.PAID, transaction=txn, balance=balance, price=price)

    def _insufficient(self, buyer_id: int, content: ContentItem, exc: InsufficientFunds) -> PaymentOutcome:
        self._emit(
            EventType.INSUFFICIENT_FUNDS,
            {
                "buyer_id": buyer_id,
                "content_id": content.id,
                "channel_id": content.channel_id,
                "balance": exc.balance,
                "price": exc.price,
                "shortfall": exc.shortfall,
                "choices": [ContinuationChoice.GATEWAY_CODE.value, ContinuationChoice.TOPUP_SHORTFALL.value],
                "retry": "topup_again",
            },
        )
        return PaymentOutcome(
            OutcomeKind.INSUFFICIENT_FUNDS,
            balance=exc.balance,
            price=exc.price,
            shortfall=exc.shortfall,
            message=str(exc),
        )

    # ------------------------------------------------------------------
    # Gateway path
    # ------------------------------------------------------------------

    async def _reveal_credential(self, owner_id: int, purpose: PaymentPurpose) -> str:
        try:
            if self._vault is None:
                raise NotConfigured("No credential vault configured")
            return await self._store(self._vault.reveal, owner_id)
        except (NotConfigured, CredentialUnavailable) as exc:
            logger.warning("Gateway credential for owner %s unusable: %s", owner_id, exc)
            self._emit(
                EventType.CONFIG_ERROR,
                {"owner_id": owner_id, "reason": "credential_unavailable", "retry": _retry_hint(purpose)},
            )
            raise ConfigurationError(
                "This channel has not configured payments yet", code="NOT_CONFIGURED"
            ) from exc

    async def _mint(
        self,
        transaction_id: str,
        amount: int,
        buyer_id: int,
        credential: str,
        expires_at: float,
        purpose: PaymentPurpose,
    ) -> GatewayCode:
        try:
            return await asyncio.to_thread(
                self._gateway.mint_payment_code,
                transaction_id,
                amount,
                buyer_id,
                credential,
                expires_at,
            )
        except GatewayRejected as exc:
            self._emit(
                EventType.CONFIG_ERROR,
                {"transaction_id": transaction_id, "reason": "gateway_rejected", "retry": _retry_hint(purpose)},
            )
            raise ConfigurationError(str(exc), code="GATEWAY_REJECTED") from exc
        except GatewayUnavailable as exc:
            if self._config.live:
                logger.error("Gateway unavailable for %s: %s (%s)", transaction_id, exc, exc.code)
                self._emit(
                    EventType.GATEWAY_ERROR,
                    {"transaction_id": transaction_id, "code": exc.code, "retry": _retry_hint(purpose)},
                )
                raise
            logger.warning(
                "Gateway unavailable for %s (%s); using placeholder code", transaction_id, exc.code
            )
            return placeholder_code(transaction_id, amount, expires_at)

    async def _issue_code(
        self,
        *,
        buyer_id: int,
        channel: Channel,
        amount: int,
        purpose: PaymentPurpose,
        content_id: Optional[int] = None,
        pending_content_id: Optional[int] = None,
    ) -> PaymentOutcome:
        now = self._clock()
        transaction_id = make_transaction_id(
            purpose, PaymentMethod.GATEWAY_CODE, buyer_id, content_id=content_id, now=now
        )
        expires_at = now + self._config.payment_ttl_seconds
        credential = await self._reveal_credential(channel.owner_id, purpose)
        code = await self._mint(transaction_id, amount, buyer_id, credential, expires_at, purpose)

        txn = PaymentTransaction(
            external_id=transaction_id,
            buyer_id=buyer_id,
            channel_id=channel.id,
            amount=amount,
            purpose=purpose,
            method=PaymentMethod.GATEWAY_CODE,
            content_id=content_id,
            pending_content_id=pending_content_id,
            expires_at=expires_at,
            gateway_code=code.code,
            gateway_url=code.url,
            created_at=now,
            updated_at=now,
        )
        await self._store(self._sessions.create, txn)
        logger.info(
            "Transaction %s: pending (%s, amount %d, expires %.0f)",
            transaction_id,
            purpose.value,
            amount,
            expires_at,
        )
        self._start_watcher(txn)
        self._emit(
            EventType.CODE_READY,
            {
                "buyer_id": buyer_id,
                "channel_id": channel.id,
                "transaction_id": transaction_id,
                "purpose": purpose.value,
                "content_id": content_id,
                "pending_content_id": pending_content_id,
                "amount": amount,
                "code": code.code,
                "url": code.url,
                "expires_at": expires_at,
                "placeholder": code.placeholder,
            },
        )
        return PaymentOutcome(OutcomeKind.CODE_ISSUED, transaction=txn, code=code, price=amount)

    async def purchase_with_gateway(self, buyer_id: int, content_id: int) -> PaymentOutcome:
        """Mint a gateway code for the full price of *content_id*."""
        content, channel, price = await self._resolve_content(content_id)
        if await self._store(self._ledger.has_access, buyer_id, content.id):
            return await self._redeliver(buyer_id, content, price)
        if price == 0:
            return await self.purchase_with_balance(buyer_id, content_id)
        return await self._issue_code(
            buyer_id=buyer_id,
            channel=channel,
            amount=price,
            purpose=PaymentPurpose.CONTENT_PURCHASE,
            content_id=content.id,
        )

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    async def create_purchase_intent(
        self,
        buyer_id: int,
        content_id: int,
        method: Optional[PaymentMethod] = None,
    ) -> PaymentOutcome:
        """Start buying *content_id*.

        Without an explicit *method* the balance path is taken when the
        balance covers the price; otherwise an ``insufficient_funds``
        outcome is returned so the buyer can choose a gateway code or a
        top-up.  Owned content is redelivered without charge.
        """
        content, channel, price = await self._resolve_content(content_id)
        if await self._store(self._ledger.has_access, buyer_id, content.id):
            return await self._redeliver(buyer_id, content, price)

        if method is PaymentMethod.GATEWAY_CODE:
            return await self.purchase_with_gateway(buyer_id, content_id)

        try:
            return await self.purchase_with_balance(buyer_id, content_id)
        except InsufficientFunds as exc:
            logger.info(
                "Buyer %s cannot afford content %s (balance %d, price %d)",
                buyer_id,
                content.id,
                exc.balance,
                exc.price,
            )
            return self._insufficient(buyer_id, content, exc)

    async def create_topup_intent(
        self,
        buyer_id: int,
        channel_id: int,
        amount: int,
        pending_content_id: Optional[int] = None,
    ) -> PaymentOutcome:
        """Mint a gateway code that credits *amount* to the channel balance."""
        if amount <= 0:
            raise PaymentError("Top-up amount must be positive", code="BAD_AMOUNT")
        channel = await self._require_channel(channel_id)
        return await self._issue_code(
            buyer_id=buyer_id,
            channel=channel,
            amount=amount,
            purpose=PaymentPurpose.BALANCE_TOPUP,
            pending_content_id=pending_content_id,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _settle(self, report: GatewayReport) -> PaymentTransaction:
        """Apply *report* to its pending transaction inside one scope.

        Raises:
            NotFound: Unknown transaction id.
            RaceLost: The transaction is already terminal.
            ExpiredTransaction: The deadline passed; the row is now expired.
            AmountMismatch: Too little was received; the row is now failed.
        """
        txn_id = report.transaction_id
        before = self._sessions.get(txn_id)
        if before is None:
            raise NotFound(f"Transaction {txn_id} not found", code="TRANSACTION_NOT_FOUND")
        bonus = 0
        if before.purpose is PaymentPurpose.BALANCE_TOPUP:
            bonus = topup_bonus(before.amount, self._catalog.active_topup_bonus(before.channel_id, self._clock()))

        now = self._clock()
        terminal: Optional[TransactionStatus] = None
        with self._db.atomic() as cur:
            txn = self._sessions.get(txn_id, cursor=cur)
            if txn is None or txn.status.is_terminal:
                raise RaceLost(f"Transaction {txn_id} already resolved", code="RACE_LOST")

            if txn.is_expired(now):
                terminal = TransactionStatus.EXPIRED
                self._sessions.transition(
                    txn_id, terminal, failure_reason="confirmation after expiry", cursor=cur
                )
            elif report.received_amount is None or report.received_amount < txn.amount:
                terminal = TransactionStatus.FAILED
                self._sessions.transition(
                    txn_id,
                    terminal,
                    failure_reason=f"amount mismatch: expected {txn.amount}, received {report.received_amount}",
                    cursor=cur,
                )
            else:
                if not self._sessions.transition(
                    txn_id, TransactionStatus.PAID, bonus_amount=bonus, cursor=cur
                ):
                    raise RaceLost(f"Transaction {txn_id} already resolved", code="RACE_LOST")
                if txn.purpose is PaymentPurpose.CONTENT_PURCHASE and txn.content_id is not None:
                    self._ledger.grant_access(
                        txn.buyer_id, txn.content_id, txn.amount, txn_id, cursor=cur
                    )
                    self._ledger.record_purchase(
                        txn.buyer_id,
                        txn.content_id,
                        txn.amount,
                        PaymentMethod.GATEWAY_CODE.value,
                        txn_id,
                        cursor=cur,
                    )
                elif txn.purpose is PaymentPurpose.BALANCE_TOPUP:
                    self._ledger.credit(txn.buyer_id, txn.channel_id, txn.amount + bonus, cursor=cur)
                    self._db.log_activity(
                        txn.buyer_id,
                        "balance_topup",
                        f"Top-up of {txn.amount} confirmed",
                        channel_id=txn.channel_id,
                        metadata={"amount": txn.amount, "bonus": bonus, "transaction_id": txn_id},
                        cursor=cur,
                    )
                txn.status = TransactionStatus.PAID
                txn.bonus_amount = bonus
                txn.updated_at = now

            if terminal is not None:
                self._db.log_activity(
                    txn.buyer_id,
                    f"payment_{terminal.value}",
                    f"Transaction {txn_id} {terminal.value} on confirmation",
                    channel_id=txn.channel_id,
                    metadata={"transaction_id": txn_id, "received_amount": report.received_amount},
                    cursor=cur,
                )

        if terminal is TransactionStatus.EXPIRED:
            raise ExpiredTransaction(
                f"Confirmation for {txn_id} arrived after expiry", code="EXPIRED"
            )
        if terminal is TransactionStatus.FAILED:
            raise AmountMismatch(
                f"Received {report.received_amount} for {txn_id}, expected {txn.amount}",
                code="AMOUNT_MISMATCH",
            )
        return txn

    async def reconcile(self, report: GatewayReport) -> PaymentOutcome:
        """Resolve the transaction named by a ``complete`` *report* exactly once.

        Both the polling watcher and the callback path end here; this is
        the only writer of terminal status for confirmations.
        """
        txn_id = report.transaction_id
        try:
            txn = await self._store(self._settle, report)
        except NotFound:
            logger.warning("Confirmation for unknown transaction %s (%s)", txn_id, report.source)
            return PaymentOutcome(OutcomeKind.NOT_FOUND, message=f"Unknown transaction {txn_id}")
        except RaceLost:
            logger.debug("Transaction %s: %s confirmation lost the race", txn_id, report.source)
            current = await self._store(self._sessions.get, txn_id)
            return PaymentOutcome(OutcomeKind.RACE_LOST, transaction=current, message="Already resolved")
        except ExpiredTransaction as exc:
            logger.warning("Transaction %s: pending -> expired (%s)", txn_id, exc)
            current = await self._store(self._sessions.get, txn_id)
            self._announce_terminal(current, EventType.PAYMENT_EXPIRED, report.source)
            return PaymentOutcome(OutcomeKind.EXPIRED, transaction=current, message=str(exc))
        except AmountMismatch as exc:
            logger.warning("Transaction %s: pending -> failed (%s)", txn_id, exc)
            current = await self._store(self._sessions.get, txn_id)
            self._announce_terminal(current, EventType.PAYMENT_FAILED, report.source)
            return PaymentOutcome(OutcomeKind.FAILED, transaction=current, message=str(exc))

        self._cancel_watcher(txn_id)
        logger.info("Transaction %s: pending -> paid (%s)", txn_id, report.source)
        if txn.purpose is PaymentPurpose.CONTENT_PURCHASE and txn.content_id is not None:
            self._emit(
                EventType.PURCHASE_CONFIRMED,
                {
                    "buyer_id": txn.buyer_id,
                    "content_id": txn.content_id,
                    "channel_id": txn.channel_id,
                    "amount": txn.amount,
                    "transaction_id": txn_id,
                    "method": PaymentMethod.GATEWAY_CODE.value,
                },
                source=report.source,
            )
            await self._deliver(txn.buyer_id, txn.content_id, txn_id)
            return PaymentOutcome(OutcomeKind.PAID, transaction=txn, price=txn.amount)

        balance = await self._store(self._ledger.read, txn.buyer_id, txn.channel_id)
        self._emit(
            EventType.TOPUP_CONFIRMED,
            {
                "buyer_id": txn.buyer_id,
                "channel_id": txn.channel_id,
                "amount": txn.amount,
                "bonus": txn.bonus_amount,
                "balance": balance,
                "transaction_id": txn_id,
                "pending_content_id": txn.pending_content_id,
            },
            source=report.source,
        )
        if txn.pending_content_id is not None:
            await self._offer_continuation(txn.buyer_id, txn.pending_content_id)
        return PaymentOutcome(OutcomeKind.PAID, transaction=txn, balance=balance)

    def _announce_terminal(
        self,
        txn: Optional[PaymentTransaction],
        event_type: EventType,
        source: str,
    ) -> None:
        if txn is None:
            return
        self._cancel_watcher(txn.external_id)
        self._emit(
            event_type,
            {
                "buyer_id": txn.buyer_id,
                "channel_id": txn.channel_id,
                "transaction_id": txn.external_id,
                "purpose": txn.purpose.value,
                "amount": txn.amount,
                "reason": txn.failure_reason,
                "retry": _retry_hint(txn.purpose),
            },
            source=source,
        )

    async def confirm_by_external_callback(self, payload: Mapping[str, Any]) -> PaymentOutcome:
        """Consume a parsed gateway callback body.

        Raises:
            PaymentError: ``code="BAD_PAYLOAD"`` for an unusable body.
        """
        report = parse_gateway_report(payload, source="callback")
        if not report.complete:
            current = await self._store(self._sessions.get, report.transaction_id)
            if current is None:
                logger.warning("Callback for unknown transaction %s", report.transaction_id)
                return PaymentOutcome(OutcomeKind.NOT_FOUND, message=f"Unknown transaction {report.transaction_id}")
            logger.info(
                "Callback for %s reported %r; leaving status %s",
                report.transaction_id,
                report.raw_status,
                current.status.value,
            )
            return PaymentOutcome(
                _STATUS_OUTCOME[current.status],
                transaction=current,
                message=STATUS_TEXT[current.status],
            )
        return await self.reconcile(report)

    # ------------------------------------------------------------------
    # Pending-content continuation
    # ------------------------------------------------------------------

    async def _offer_continuation(self, buyer_id: int, content_id: int) -> None:
        try:
            content, channel, price = await self._resolve_content(content_id)
        except NotFound:
            logger.warning("Pending content %s for buyer %s no longer exists", content_id, buyer_id)
            return
        if await self._store(self._ledger.has_access, buyer_id, content.id):
            return
        balance = await self._store(self._ledger.read, buyer_id, channel.id)
        shortfall = max(price - balance, 0)
        choices = [ContinuationChoice.GATEWAY_CODE, ContinuationChoice.ABANDON]
        if shortfall == 0:
            choices.insert(0, ContinuationChoice.BALANCE)
        else:
            choices.insert(1, ContinuationChoice.TOPUP_SHORTFALL)
        self._emit(
            EventType.PENDING_CONTINUATION,
            {
                "buyer_id": buyer_id,
                "content_id": content.id,
                "channel_id": channel.id,
                "balance": balance,
                "price": price,
                "shortfall": shortfall,
                "choices": [c.value for c in choices],
            },
        )

    async def continue_pending_purchase(
        self,
        buyer_id: int,
        content_id: int,
        choice: ContinuationChoice,
    ) -> PaymentOutcome:
        """Carry out the buyer's answer to a continuation offer."""
        if choice is ContinuationChoice.ABANDON:
            await self._store(
                self._db.log_activity,
                buyer_id,
                "purchase_abandoned",
                f"Abandoned pending purchase of content {content_id}",
                metadata={"content_id": content_id},
            )
            return PaymentOutcome(OutcomeKind.ABANDONED, message="Purchase abandoned")

        if choice is ContinuationChoice.GATEWAY_CODE:
            return await self.purchase_with_gateway(buyer_id, content_id)

        content, channel, price = await self._resolve_content(content_id)
        if choice is ContinuationChoice.TOPUP_SHORTFALL:
            balance = await self._store(self._ledger.read, buyer_id, channel.id)
            shortfall = price - balance
            if shortfall > 0:
                return await self.create_topup_intent(
                    buyer_id, channel.id, shortfall, pending_content_id=content.id
                )

        try:
            return await self.purchase_with_balance(buyer_id, content_id)
        except InsufficientFunds as exc:
            return self._insufficient(buyer_id, content, exc)

    # ------------------------------------------------------------------
    # Cancellation, expiry and status
    # ------------------------------------------------------------------

    def _close(
        self,
        txn: PaymentTransaction,
        status: TransactionStatus,
        reason: str,
    ) -> bool:
        with self._db.atomic() as cur:
            won = self._sessions.transition(txn.external_id, status, failure_reason=reason, cursor=cur)
            if won:
                self._db.log_activity(
                    txn.buyer_id,
                    f"payment_{status.value}",
                    f"Transaction {txn.external_id} {status.value}",
                    channel_id=txn.channel_id,
                    metadata={"transaction_id": txn.external_id, "reason": reason},
                    cursor=cur,
                )
        return won

    async def _expire(self, txn: PaymentTransaction, source: str) -> bool:
        won = await self._store(self._close, txn, TransactionStatus.EXPIRED, "deadline passed")
        if not won:
            logger.debug("Transaction %s: expiry lost the race", txn.external_id)
            return False
        logger.info("Transaction %s: pending -> expired (%s)", txn.external_id, source)
        txn.status = TransactionStatus.EXPIRED
        self._announce_terminal(txn, EventType.PAYMENT_EXPIRED, source)
        return True

    async def cancel(self, transaction_id: str, buyer_id: Optional[int] = None) -> PaymentOutcome:
        """Buyer-initiated cancellation of a pending transaction.

        Raises:
            NotFound: Unknown id, or the id belongs to another buyer.
        """
        txn = await self._store(self._sessions.get, transaction_id)
        if txn is None or (buyer_id is not None and txn.buyer_id != buyer_id):
            raise NotFound(f"Transaction {transaction_id} not found", code="TRANSACTION_NOT_FOUND")

        won = await self._store(self._close, txn, TransactionStatus.CANCELLED, "cancelled by buyer")
        if not won:
            current = await self._store(self._sessions.get, transaction_id)
            logger.debug("Transaction %s: cancel lost the race", transaction_id)
            return PaymentOutcome(
                OutcomeKind.RACE_LOST,
                transaction=current,
                message=STATUS_TEXT[current.status] if current else "",
            )

        logger.info("Transaction %s: pending -> cancelled (buyer)", transaction_id)
        txn.status = TransactionStatus.CANCELLED
        self._cancel_watcher(transaction_id)
        self._emit(
            EventType.PAYMENT_CANCELLED,
            {
                "buyer_id": txn.buyer_id,
                "channel_id": txn.channel_id,
                "transaction_id": transaction_id,
                "purpose": txn.purpose.value,
                "retry": _retry_hint(txn.purpose),
            },
            source="buyer",
        )
        return PaymentOutcome(OutcomeKind.CANCELLED, transaction=txn, message=STATUS_TEXT[txn.status])

    async def check_status(self, transaction_id: str) -> PaymentOutcome:
        """Report a transaction's current state, expiring it if overdue."""
        txn = await self._store(self._sessions.get, transaction_id)
        if txn is None:
            return PaymentOutcome(OutcomeKind.NOT_FOUND, message=f"Unknown transaction {transaction_id}")
        if txn.status is TransactionStatus.PENDING and txn.is_expired(self._clock()):
            await self._expire(txn, "status_check")
            txn = await self._store(self._sessions.get, transaction_id)
        return PaymentOutcome(
            _STATUS_OUTCOME[txn.status],
            transaction=txn,
            price=txn.amount,
            message=STATUS_TEXT[txn.status],
        )

    async def expire_stale(self) -> List[str]:
        """Expire every pending transaction past its deadline."""
        overdue = await self._store(self._sessions.list_overdue, self._clock())
        expired = []
        for txn in overdue:
            if await self._expire(txn, "sweep"):
                expired.append(txn.external_id)
        return expired

    # ------------------------------------------------------------------
    # Watchers
    # ------------------------------------------------------------------

    def _start_watcher(self, txn: PaymentTransaction) -> None:
        if txn.external_id in self._watchers:
            return
        task = asyncio.get_running_loop().create_task(
            self._watch(txn), name=f"payment-watcher:{txn.external_id}"
        )
        self._watchers[txn.external_id] = task
        task.add_done_callback(self._watcher_done)

    def _watcher_done(self, task: asyncio.Task[None]) -> None:
        transaction_id = task.get_name().partition(":")[2]
        if self._watchers.get(transaction_id) is task:
            del self._watchers[transaction_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Watcher for %s died", transaction_id, exc_info=task.exception()
            )

    def _cancel_watcher(self, transaction_id: str) -> None:
        task = self._watchers.get(transaction_id)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    @property
    def active_watchers(self) -> List[str]:
        return sorted(self._watchers)

    async def _poll_gateway(self, txn: PaymentTransaction) -> Optional[GatewayReport]:
        if self._vault is None or (txn.gateway_code and txn.gateway_code.startswith("MOCK_QRIS_")):
            return None
        channel = await self._store(self._catalog.get_channel, txn.channel_id)
        if channel is None:
            return None
        try:
            credential = await self._store(self._vault.reveal, channel.owner_id)
        except (NotConfigured, CredentialUnavailable):
            return None
        if is_placeholder_credential(credential):
            return None
        try:
            return await asyncio.to_thread(
                self._gateway.get_payment_status, txn.external_id, credential
            )
        except PaymentError as exc:
            logger.debug("Status poll for %s failed: %s (%s)", txn.external_id, exc, exc.code)
            return None

    async def _watch(self, txn: PaymentTransaction) -> None:
        """Poll until *txn* leaves ``pending`` or its ceiling passes."""
        expires_at = txn.expires_at if txn.expires_at is not None else self._clock() + self._config.payment_ttl_seconds
        ceiling = expires_at + self._config.watcher_grace_seconds
        logger.debug("Watcher started for %s", txn.external_id)
        while self._clock() <= ceiling:
            await asyncio.sleep(self._config.poll_interval_seconds)
            try:
                current = await self._store(self._sessions.get, txn.external_id)
                if current is None or current.status.is_terminal:
                    return
                if current.is_expired(self._clock()):
                    await self._expire(current, "poll")
                    return
                report = await self._poll_gateway(current)
                if report is not None and report.complete:
                    await self.reconcile(report)
            except StorageUnavailable as exc:
                logger.warning("Watcher for %s: %s", txn.external_id, exc)
            except Exception:
                logger.exception("Error in watcher poll cycle for %s", txn.external_id)
        logger.warning("Watcher for %s reached its ceiling while still pending", txn.external_id)

    async def resume_watchers(self) -> int:
        """Restart watchers for pending gateway transactions after a restart.

        Overdue transactions are expired instead.  Returns the number of
        watchers started.
        """
        pending = await self._store(self._sessions.list_pending)
        now = self._clock()
        started = 0
        for txn in pending:
            if txn.is_expired(now):
                await self._expire(txn, "resume")
            elif txn.method is PaymentMethod.GATEWAY_CODE and txn.external_id not in self._watchers:
                self._start_watcher(txn)
                started += 1
        if started:
            logger.info("Resumed %d payment watcher(s)", started)
        return started

    async def shutdown(self) -> None:
        """Cancel every running watcher and wait for them to finish."""
        tasks = list(self._watchers.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._watchers.clear()
