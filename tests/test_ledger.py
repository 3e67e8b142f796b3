"""
Tests for lockdrop/ledger.py - record decoding, unlock checks and the ledger service.
"""
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from conftest import CID_V0, CID_V1
from lockdrop.errors import ConnectivityError, LedgerFailure, MessageLocked, ParseError
from lockdrop.ledger import (
    LedgerRecord,
    LedgerService,
    check_unlockable,
    decode_ledger_message,
)


SENDER = "0x" + "11" * 20
RECIPIENT = "0x" + "22" * 20


def make_record(**overrides):
    fields = dict(
        key_blob_address=CID_V1,
        message_blob_address=CID_V0,
        integrity_hash="cd" * 32,
        unlock_timestamp=1_700_000_000_000,
        sender=SENDER,
        recipient=RECIPIENT,
    )
    fields.update(overrides)
    return LedgerRecord(**fields)


class InMemoryLedger:
    """LedgerClient keeping records in a dict."""

    def __init__(self, failures=None):
        self.records = {}
        self.failures = list(failures or [])
        self.submit_calls = 0

    async def submit(self, record):
        self.submit_calls += 1
        if self.failures:
            raise self.failures.pop(0)
        message_id = str(len(self.records) + 1)
        self.records[message_id] = record.to_contract_args()
        return message_id

    async def fetch(self, message_id):
        return self.records[message_id]


class TestLedgerRecord:

    def test_valid_record(self):
        record = make_record()
        assert record.to_dict()["integrity_hash"] == "cd" * 32

    def test_invalid_address(self):
        with pytest.raises(ParseError):
            make_record(key_blob_address="not-a-cid")

    def test_invalid_hash(self):
        with pytest.raises(ParseError):
            make_record(integrity_hash="CD" * 32)
        with pytest.raises(ParseError):
            make_record(integrity_hash="cd" * 16)

    def test_invalid_timestamp(self):
        with pytest.raises(ParseError):
            make_record(unlock_timestamp="soon")
        with pytest.raises(ParseError):
            make_record(unlock_timestamp=True)

    def test_contract_args(self):
        args = make_record(message_id="7").to_contract_args()
        assert args["encryptedKeyCID"] == CID_V1
        assert args["encryptedMessageCID"] == CID_V0
        assert args["messageHash"] == "cd" * 32
        assert args["id"] == "7"


class TestDecodeLedgerMessage:

    def test_contract_shape(self):
        raw = make_record(message_id="3", created_at=1).to_contract_args()
        record = decode_ledger_message(raw)
        assert record == make_record(message_id="3", created_at=1)

    def test_contract_shape_without_optional_fields(self):
        raw = make_record().to_contract_args()
        del raw["id"]
        del raw["createdAt"]
        assert decode_ledger_message(raw, message_id="9").message_id == "9"

    def test_record_shape(self):
        record = make_record(message_id="4")
        assert decode_ledger_message(record.to_dict()) == record

    def test_numeric_message_id_normalised(self):
        raw = make_record().to_contract_args()
        raw["id"] = 12
        assert decode_ledger_message(raw).message_id == "12"

    def test_unknown_shape(self):
        with pytest.raises(ParseError):
            decode_ledger_message({"cid": CID_V1})

    def test_not_an_object(self):
        with pytest.raises(ParseError):
            decode_ledger_message([CID_V1, CID_V0])

    def test_unknown_field(self):
        raw = make_record().to_contract_args()
        raw["memo"] = "hi"
        with pytest.raises(ParseError):
            decode_ledger_message(raw)

    def test_missing_field(self):
        raw = make_record().to_dict()
        del raw["sender"]
        with pytest.raises(ParseError):
            decode_ledger_message(raw)

    def test_wrong_type(self):
        raw = make_record().to_contract_args()
        raw["sender"] = 42
        with pytest.raises(ParseError):
            decode_ledger_message(raw)


class TestCheckUnlockable:

    def test_unlocked(self):
        check_unlockable(1000, now=1000)
        check_unlockable(1000, now=2000)

    def test_locked_reports_minutes(self):
        with pytest.raises(MessageLocked) as exc_info:
            check_unlockable(10 * 60_000 + 1, now=0)
        assert "11 more minute(s)" in str(exc_info.value)
        assert exc_info.value.metadata["remaining_seconds"] == pytest.approx(600.001)


class TestLedgerService:

    def test_submit_and_fetch(self, config, transport):
        client = InMemoryLedger()
        service = LedgerService(client, config, transport)
        message_id = asyncio.run(service.submit(make_record()))
        fetched = asyncio.run(service.fetch(message_id))
        assert fetched.key_blob_address == CID_V1
        assert fetched.message_id == message_id

    def test_submit_retries(self, config, transport, sleeper):
        client = InMemoryLedger(failures=[ConnectivityError("rpc down")])
        service = LedgerService(client, config, transport)
        asyncio.run(service.submit(make_record()))
        assert client.submit_calls == 2
        assert len(sleeper.delays) == 1

    def test_submit_exhausted(self, config, transport):
        client = InMemoryLedger(failures=[ConnectivityError("rpc down")] * 3)
        service = LedgerService(client, config, transport)
        with pytest.raises(LedgerFailure) as exc_info:
            asyncio.run(service.submit(make_record()))
        assert exc_info.value.attempts == 3
