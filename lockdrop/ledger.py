# lockdrop/ledger.py
"""
Metadata ledger interface.

The ledger (a smart contract reached over RPC) is an external collaborator.
This module defines the record it stores, the client protocol an RPC
adapter implements, and strict decoding of whatever the ledger hands back.
"""

import logging
import math
import re
import time
from dataclasses import dataclass, asdict
from typing import Optional, Protocol

from .config import LockdropConfig
from .errors import LedgerFailure, MessageLocked, ParseError
from .storage import is_valid_content_address
from .transport import ResilientTransport


logger = logging.getLogger(__name__)

_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class LedgerRecord:
    """Everything a recipient needs to find and verify a message.

    Timestamps are epoch milliseconds.
    """
    key_blob_address: str
    message_blob_address: str
    integrity_hash: str
    unlock_timestamp: int
    sender: str
    recipient: str
    message_id: Optional[str] = None
    created_at: Optional[int] = None

    def __post_init__(self):
        for name in ("key_blob_address", "message_blob_address"):
            if not is_valid_content_address(getattr(self, name)):
                raise ParseError(f"Ledger record has an invalid {name}", metadata={"field": name})
        if not isinstance(self.integrity_hash, str) or not _HEX_DIGEST.match(self.integrity_hash):
            raise ParseError("Ledger record integrity hash must be 64 lowercase hex characters")
        if isinstance(self.unlock_timestamp, bool) or not isinstance(self.unlock_timestamp, int) \
                or self.unlock_timestamp <= 0:
            raise ParseError("Ledger record unlock timestamp must be a positive integer")
        if not self.sender or not self.recipient:
            raise ParseError("Ledger record requires sender and recipient")

    def to_dict(self) -> dict:
        return asdict(self)

    def to_contract_args(self) -> dict:
        """camelCase field names used by the contract."""
        return {
            "id": self.message_id,
            "encryptedKeyCID": self.key_blob_address,
            "encryptedMessageCID": self.message_blob_address,
            "messageHash": self.integrity_hash,
            "unlockTimestamp": self.unlock_timestamp,
            "sender": self.sender,
            "recipient": self.recipient,
            "createdAt": self.created_at,
        }


class LedgerClient(Protocol):
    """RPC adapter for the metadata ledger."""

    async def submit(self, record: LedgerRecord) -> str:
        """Store record; return the ledger's message id."""

    async def fetch(self, message_id: str) -> dict:
        """Return the raw stored record."""


_CONTRACT_FIELDS = {
    "encryptedKeyCID": "key_blob_address",
    "encryptedMessageCID": "message_blob_address",
    "messageHash": "integrity_hash",
    "unlockTimestamp": "unlock_timestamp",
    "sender": "sender",
    "recipient": "recipient",
}
_CONTRACT_OPTIONAL = {"id": "message_id", "createdAt": "created_at"}

_RECORD_FIELDS = {
    "key_blob_address", "message_blob_address", "integrity_hash",
    "unlock_timestamp", "sender", "recipient",
}
_RECORD_OPTIONAL = {"message_id", "created_at"}


def decode_ledger_message(raw, message_id: Optional[str] = None) -> LedgerRecord:
    """Decode a ledger response into a LedgerRecord.

    Exactly two shapes are accepted: the contract's camelCase message and
    the snake_case record form produced by LedgerRecord.to_dict(). Unknown
    keys, missing keys and wrong field types are a ParseError.
    """
    if not isinstance(raw, dict):
        raise ParseError("Ledger message must be an object", metadata={"type": type(raw).__name__})

    keys = set(raw)
    if "encryptedKeyCID" in keys:
        required, optional = _CONTRACT_FIELDS, _CONTRACT_OPTIONAL
    elif "key_blob_address" in keys:
        required = {name: name for name in _RECORD_FIELDS}
        optional = {name: name for name in _RECORD_OPTIONAL}
    else:
        raise ParseError("Unrecognised ledger message shape", metadata={"fields": sorted(keys)})

    missing = set(required) - keys
    unknown = keys - set(required) - set(optional)
    if missing or unknown:
        raise ParseError(
            "Ledger message fields do not match the expected shape",
            metadata={"missing": sorted(missing), "unknown": sorted(unknown)},
        )

    values = {target: raw[source] for source, target in required.items()}
    for source, target in optional.items():
        if raw.get(source) is not None:
            values[target] = raw[source]
    if message_id is not None:
        values.setdefault("message_id", message_id)

    for name in ("key_blob_address", "message_blob_address", "integrity_hash", "sender", "recipient"):
        if not isinstance(values[name], str):
            raise ParseError(f"Ledger field {name} must be a string")
    if values.get("message_id") is not None and not isinstance(values["message_id"], str):
        values["message_id"] = str(values["message_id"])

    return LedgerRecord(**values)


def check_unlockable(unlock_timestamp: int, now: Optional[int] = None) -> None:
    """Raise MessageLocked until unlock_timestamp (epoch ms) has passed."""
    now = now_ms() if now is None else now
    if now < unlock_timestamp:
        remaining_ms = unlock_timestamp - now
        minutes = math.ceil(remaining_ms / 1000 / 60)
        raise MessageLocked(
            f"Message is still locked. Please wait {minutes} more minute(s) before unlocking.",
            remaining_seconds=remaining_ms / 1000,
        )


class LedgerService:
    """Ledger calls under the ledger retry policy."""

    def __init__(self, client: LedgerClient, config: LockdropConfig = None,
                 transport: ResilientTransport = None):
        self._client = client
        self.config = config or LockdropConfig()
        self._transport = transport or ResilientTransport()

    async def submit(self, record: LedgerRecord) -> str:
        """Submit record and return its message id.

        Raises:
            LedgerFailure: submission failed permanently or exhausted its attempts
        """
        result = await self._transport.execute(
            lambda: self._client.submit(record),
            self.config.ledger_policy(),
            name="ledger submit",
            failure=LedgerFailure,
            metadata={"message_blob_address": record.message_blob_address},
        )
        logger.info(f"Ledger record submitted as {result.value}")
        return result.value

    async def fetch(self, message_id: str) -> LedgerRecord:
        result = await self._transport.execute(
            lambda: self._client.fetch(message_id),
            self.config.ledger_policy(),
            name="ledger fetch",
            failure=LedgerFailure,
            metadata={"message_id": message_id},
        )
        return decode_ledger_message(result.value, message_id=message_id)
