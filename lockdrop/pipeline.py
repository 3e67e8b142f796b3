# lockdrop/pipeline.py
"""
Message pipeline: sequences cipher, key wrapping, integrity and storage.

No cryptography or networking lives here; each step delegates to its
module and errors propagate unchanged.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from . import cipher
from .cipher import EncryptedPayload, SymmetricKey
from .config import LockdropConfig
from .errors import HashMismatch, ValidationError
from .integrity import compute_hash_hex, verify_hash
from .keywrap import (
    CurveFamily,
    ExchangeCapability,
    WrappedKey,
    check_passphrase,
    convert_signing_key_to_exchange_key,
    unwrap_key,
    unwrap_key_with_passphrase,
    wrap_key,
    wrap_key_with_passphrase,
)
from .ledger import LedgerRecord, LedgerService, check_unlockable, now_ms
from .redeem import RedeemArtifact
from .storage import ContentDescriptor, ContentStore, ProgressCallback


logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    """Looks up a wallet's signing public key."""

    async def signing_public_key(self, address: str) -> Tuple[bytes, CurveFamily]:
        ...


@dataclass(frozen=True)
class MessageBundle:
    """Result of creating a message."""
    key_blob: ContentDescriptor
    message_blob: ContentDescriptor
    integrity_hash: str
    unlock_timestamp: int
    message_id: Optional[str] = None

    def to_record(self, sender: str, recipient: str) -> LedgerRecord:
        return LedgerRecord(
            key_blob_address=self.key_blob.address,
            message_blob_address=self.message_blob.address,
            integrity_hash=self.integrity_hash,
            unlock_timestamp=self.unlock_timestamp,
            sender=sender,
            recipient=recipient,
            message_id=self.message_id,
            created_at=now_ms(),
        )


@dataclass(frozen=True)
class RedeemPackage:
    artifact: bytes
    bundle: MessageBundle


class MessagePipeline:
    """Create and open time-locked messages.

    Args:
        store: Content store for both blobs
        config: Shared configuration (PBKDF2 iterations)
        ledger: Optional ledger service; create_message submits to it
        identity: Optional identity provider for recipient key lookup
    """

    def __init__(self, store: ContentStore, config: LockdropConfig = None,
                 ledger: LedgerService = None, identity: IdentityProvider = None):
        self.store = store
        self.config = config or store.config
        self.ledger = ledger
        self.identity = identity

    async def resolve_exchange_key(self, address: str) -> bytes:
        """Recipient's X25519 key, derived from their registered signing key."""
        if self.identity is None:
            raise ValidationError("No identity provider configured", operation="resolve_exchange_key")
        public_key, curve = await self.identity.signing_public_key(address)
        return convert_signing_key_to_exchange_key(public_key, curve)

    async def _seal_content(self, plaintext: bytes, key: SymmetricKey,
                            on_progress: Optional[ProgressCallback]) -> Tuple[str, ContentDescriptor]:
        payload = cipher.encrypt(plaintext, key)
        blob = payload.to_blob()
        integrity_hash, descriptor = await asyncio.gather(
            asyncio.to_thread(compute_hash_hex, blob),
            self.store.upload(blob, on_progress, name="message upload"),
        )
        return integrity_hash, descriptor

    async def create_message(
        self,
        plaintext: bytes,
        unlock_timestamp: int,
        recipient_exchange_key: Optional[bytes] = None,
        sender: Optional[str] = None,
        recipient: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> MessageBundle:
        """Encrypt, store and (optionally) register a message.

        Args:
            plaintext: Message bytes
            unlock_timestamp: Epoch milliseconds; must be in the future
            recipient_exchange_key: X25519 key; looked up from ``recipient``
                through the identity provider when omitted
            sender: Sender address for the ledger record
            recipient: Recipient address
            on_progress: Message upload progress percentages

        Raises:
            ValidationError: unlock time not in the future, or no recipient key
        """
        if unlock_timestamp <= now_ms():
            raise ValidationError("Unlock time must be in the future", operation="create_message")
        if recipient_exchange_key is None:
            if recipient is None:
                raise ValidationError("A recipient key or address is required", operation="create_message")
            recipient_exchange_key = await self.resolve_exchange_key(recipient)

        key = cipher.generate_key()
        try:
            wrapped = wrap_key(key, recipient_exchange_key)
            integrity_hash, message_blob = await self._seal_content(plaintext, key, on_progress)
        finally:
            key.wipe()

        key_blob = await self.store.upload(wrapped.to_json(), name="key upload")
        bundle = MessageBundle(
            key_blob=key_blob,
            message_blob=message_blob,
            integrity_hash=integrity_hash,
            unlock_timestamp=unlock_timestamp,
        )

        if self.ledger is not None and sender and recipient:
            message_id = await self.ledger.submit(bundle.to_record(sender, recipient))
            bundle = MessageBundle(
                key_blob=key_blob,
                message_blob=message_blob,
                integrity_hash=integrity_hash,
                unlock_timestamp=unlock_timestamp,
                message_id=message_id,
            )

        logger.info(
            f"Created message {bundle.message_id or message_blob.address}: "
            f"{message_blob.size} byte blob, unlocks at {unlock_timestamp}"
        )
        return bundle

    async def _fetch_and_decrypt(self, address: str, integrity_hash: str,
                                 key: SymmetricKey) -> bytes:
        blob = await self.store.download(address, name="message download")
        if not verify_hash(blob, integrity_hash):
            raise HashMismatch(
                "Message blob does not match its recorded integrity hash",
                operation="open_message",
                expected_hash=integrity_hash,
                actual_hash=compute_hash_hex(blob),
                metadata={"size_bytes": len(blob)},
            )
        return cipher.decrypt(EncryptedPayload.from_blob(blob), key)

    async def open_message(self, record: LedgerRecord, capability: ExchangeCapability,
                           now: Optional[int] = None) -> bytes:
        """Recover a message's plaintext once it has unlocked.

        Raises:
            MessageLocked: unlock time not reached
            UnwrapFailure: capability does not belong to the recipient
            HashMismatch: message blob was altered
        """
        check_unlockable(record.unlock_timestamp, now)
        key_blob = await self.store.download(record.key_blob_address, name="key download")
        key = await unwrap_key(WrappedKey.from_json(key_blob), capability)
        with key:
            return await self._fetch_and_decrypt(
                record.message_blob_address, record.integrity_hash, key
            )

    async def create_redeem_artifact(
        self,
        plaintext: bytes,
        passphrase: str,
        unlock_timestamp: int,
        expires_at: int,
        sender: str,
        instructions: str = "",
        on_progress: Optional[ProgressCallback] = None,
    ) -> RedeemPackage:
        """Store a passphrase-protected message and seal a redeem artifact for it.

        Raises:
            WeakPassphrase: before any key or network work
        """
        check_passphrase(passphrase)
        if expires_at <= now_ms():
            raise ValidationError("Redeem artifact expiry must be in the future",
                                  operation="create_redeem_artifact")

        key = cipher.generate_key()
        try:
            wrapped = await asyncio.to_thread(
                wrap_key_with_passphrase, key, passphrase, self.config.pbkdf2_iterations
            )
            integrity_hash, message_blob = await self._seal_content(plaintext, key, on_progress)
        finally:
            key.wipe()

        key_blob = await self.store.upload(wrapped.to_json(), name="key upload")
        artifact = RedeemArtifact(
            key_blob_address=key_blob.address,
            message_blob_address=message_blob.address,
            integrity_hash=integrity_hash,
            unlock_timestamp=unlock_timestamp,
            sender=sender,
            instructions=instructions,
            expires_at=expires_at,
        )
        bundle = MessageBundle(
            key_blob=key_blob,
            message_blob=message_blob,
            integrity_hash=integrity_hash,
            unlock_timestamp=unlock_timestamp,
        )
        sealed = await asyncio.to_thread(artifact.seal, passphrase)
        return RedeemPackage(artifact=sealed, bundle=bundle)

    async def redeem(self, artifact: bytes, passphrase: str,
                     now: Optional[int] = None) -> bytes:
        """Open a redeem artifact and recover the message plaintext.

        Raises:
            InvalidPassphrase: wrong passphrase for the artifact or key blob
            ArtifactExpired: artifact is past its expiry
            MessageLocked: unlock time not reached
            HashMismatch: message blob was altered
        """
        opened = await asyncio.to_thread(RedeemArtifact.open, artifact, passphrase, True, now)
        check_unlockable(opened.unlock_timestamp, now)
        key_blob = await self.store.download(opened.key_blob_address, name="key download")
        key = await asyncio.to_thread(
            unwrap_key_with_passphrase, WrappedKey.from_json(key_blob), passphrase
        )
        with key:
            return await self._fetch_and_decrypt(
                opened.message_blob_address, opened.integrity_hash, key
            )
