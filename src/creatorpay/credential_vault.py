"""Encrypted per-owner gateway credentials.

Each channel owner has at most one gateway credential.  It is encrypted
with AES-GCM (via ``cryptography``) under the process-wide
:class:`~creatorpay.config.VaultKey`, with a fresh random nonce on every
call.  The stored blob is ``base64(nonce || ciphertext_and_tag)``.

Example::

    vault = CredentialVault(db, VaultKey.from_env())
    vault.store(7761064473, "oy-api-key")
    key = vault.reveal(7761064473)
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import time
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from creatorpay.persistence import PaymentDB

if TYPE_CHECKING:
    from creatorpay.config import VaultKey

logger = logging.getLogger(__name__)

_NONCE_LENGTH = 12  # AES-GCM standard nonce size
_TAG_LENGTH = 16


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CredentialVaultError(Exception):
    """Base class for vault failures."""


class NotConfigured(CredentialVaultError):
    """The owner has no stored credential."""


class CredentialUnavailable(CredentialVaultError):
    """The stored blob cannot be decrypted (corrupt or wrong key)."""


# ---------------------------------------------------------------------------
# CredentialVault
# ---------------------------------------------------------------------------


class CredentialVault:
    """Stores and reveals one encrypted credential per channel owner.

    :param db: Shared :class:`~creatorpay.persistence.PaymentDB`.
    :param key: Read-only key material built once at startup.
    """

    def __init__(self, db: PaymentDB, key: VaultKey) -> None:
        self._db = db
        self._aead = AESGCM(key.key)

    def _encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(_NONCE_LENGTH)
        ct = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ct).decode("ascii")

    def _decrypt(self, blob: str) -> str:
        try:
            payload = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CredentialUnavailable("Stored credential is not valid base64") from exc
        if len(payload) < _NONCE_LENGTH + _TAG_LENGTH:
            raise CredentialUnavailable("Stored credential is truncated")
        nonce, body = payload[:_NONCE_LENGTH], payload[_NONCE_LENGTH:]
        try:
            pt_bytes = self._aead.decrypt(nonce, body, None)
        except InvalidTag as exc:
            raise CredentialUnavailable(
                "Decryption failed: wrong key or corrupted credential"
            ) from exc
        try:
            return pt_bytes.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CredentialUnavailable("Decrypted credential is not UTF-8") from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def store(self, owner_id: int, plaintext: str) -> None:
        """Encrypt *plaintext* and replace the owner's credential."""
        if not plaintext:
            raise ValueError("Credential must not be empty")
        blob = self._encrypt(plaintext)
        now = time.time()
        with self._db.atomic() as cur:
            cur.execute(
                """
                INSERT INTO channel_credentials (owner_id, blob, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    blob = excluded.blob,
                    updated_at = excluded.updated_at
                """,
                (owner_id, blob, now, now),
            )
        logger.info("Stored gateway credential for owner %s", owner_id)

    def reveal(self, owner_id: int) -> str:
        """Return the owner's plaintext credential.

        :raises NotConfigured: If no credential is stored.
        :raises CredentialUnavailable: If the blob cannot be decrypted.
        """
        row = self._db.fetch_one(
            "SELECT blob FROM channel_credentials WHERE owner_id = ?",
            (owner_id,),
        )
        if row is None:
            raise NotConfigured(f"No gateway credential stored for owner {owner_id}")
        return self._decrypt(row["blob"])

    def is_configured(self, owner_id: int) -> bool:
        """Return ``True`` if a credential row exists (it may still be undecryptable)."""
        row = self._db.fetch_one(
            "SELECT 1 AS present FROM channel_credentials WHERE owner_id = ?",
            (owner_id,),
        )
        return row is not None

    def delete(self, owner_id: int) -> bool:
        """Remove the owner's credential.  Returns ``False`` if none was stored."""
        with self._db.atomic() as cur:
            cur.execute("DELETE FROM channel_credentials WHERE owner_id = ?", (owner_id,))
            deleted = cur.rowcount > 0
        if deleted:
            logger.info("Deleted gateway credential for owner %s", owner_id)
        return deleted
