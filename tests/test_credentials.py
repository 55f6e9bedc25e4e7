"""
Tests for the credential codec and store.
"""

import json

import pytest
from cryptography.fernet import Fernet

from whatsend.credentials import CredentialCodec, CredentialStore
from whatsend.credentials.codec import CredentialDecodeError, fresh_credentials, is_registered
from whatsend.persistence.repo import WhatSendRepository


@pytest.fixture
def paired_credentials():
    creds = fresh_credentials()
    creds["creds"]["registered"] = True
    creds["creds"]["me"] = {"id": "5511999999999:1@s.whatsapp.net"}
    creds["keys"] = {
        "pre-key": {"1": {"private": b"\x00\x01\xff" * 11, "public": bytes(range(32))}},
        "app-state-sync-key": {"AAAA": {"keyData": b"\x10" * 32, "timestamp": 1704067200}},
    }
    return creds


class TestCredentialCodec:
    """Tests for CredentialCodec."""

    def test_round_trip_keeps_binary_fields(self, paired_credentials):
        codec = CredentialCodec()

        decoded = codec.decode(codec.encode(paired_credentials))

        assert decoded == paired_credentials
        assert isinstance(decoded["creds"]["noise_key"]["private"], bytes)
        assert decoded["keys"]["pre-key"]["1"]["public"] == bytes(range(32))

    def test_encoded_blob_is_text(self, paired_credentials):
        blob = CredentialCodec().encode(paired_credentials)

        parsed = json.loads(blob)
        assert parsed["creds"]["noise_key"]["private"]["type"] == "Buffer"

    def test_reads_buffers_as_byte_lists(self):
        blob = json.dumps({
            "creds": {"noise_key": {"private": {"type": "Buffer", "data": [1, 2, 3]}}},
            "keys": {},
        })

        decoded = CredentialCodec().decode(blob)

        assert decoded["creds"]["noise_key"]["private"] == b"\x01\x02\x03"

    def test_round_trip_keeps_numeric_keys(self, paired_credentials):
        paired_credentials["keys"]["pre-key"] = {
            1: {"public": b"\x01\x02"},
            2: {"public": b"\x03\x04"},
        }
        paired_credentials["keys"]["session"] = {"5511999999999.0": {"chain": (7, b"\x09")}}
        codec = CredentialCodec()

        decoded = codec.decode(codec.encode(paired_credentials))

        assert decoded == paired_credentials
        assert decoded["keys"]["pre-key"][1]["public"] == b"\x01\x02"
        assert decoded["keys"]["session"]["5511999999999.0"]["chain"] == (7, b"\x09")

    def test_encrypted_round_trip(self, paired_credentials):
        codec = CredentialCodec(Fernet.generate_key().decode())

        blob = codec.encode(paired_credentials)

        assert codec.encrypted
        assert "noise_key" not in blob
        assert codec.decode(blob) == paired_credentials

    def test_wrong_key_is_decode_error(self, paired_credentials):
        blob = CredentialCodec(Fernet.generate_key().decode()).encode(paired_credentials)

        with pytest.raises(CredentialDecodeError):
            CredentialCodec(Fernet.generate_key().decode()).decode(blob)

    @pytest.mark.parametrize("blob", ["not json", "[]", '{"keys": {}}', '{"creds": 5}'])
    def test_malformed_blob_is_decode_error(self, blob):
        with pytest.raises(CredentialDecodeError):
            CredentialCodec().decode(blob)

    def test_missing_keys_section_defaults_to_empty(self):
        decoded = CredentialCodec().decode('{"creds": {"registered": false}}')

        assert decoded["keys"] == {}

    def test_fresh_credentials_are_unregistered(self):
        creds = fresh_credentials()

        assert not is_registered(creds)
        assert len(creds["creds"]["noise_key"]["public"]) == 32
        assert fresh_credentials()["creds"]["noise_key"] != creds["creds"]["noise_key"]


class TestCredentialStore:
    """Tests for CredentialStore."""

    def test_load_without_record_gives_fresh_identity(self, credential_store, sample_tenant_id):
        creds = credential_store.load(sample_tenant_id)

        assert not is_registered(creds)
        assert creds["keys"] == {}

    def test_save_then_load(self, credential_store, sample_tenant_id, paired_credentials):
        credential_store.save(sample_tenant_id, paired_credentials)

        assert credential_store.load(sample_tenant_id) == paired_credentials

    def test_save_overwrites(self, credential_store, sample_tenant_id, paired_credentials):
        credential_store.save(sample_tenant_id, fresh_credentials())
        credential_store.save(sample_tenant_id, paired_credentials)

        assert is_registered(credential_store.load(sample_tenant_id))

    def test_clear(self, credential_store, session_factory, sample_tenant_id, paired_credentials):
        credential_store.save(sample_tenant_id, paired_credentials)

        credential_store.clear(sample_tenant_id)

        db = session_factory()
        try:
            record = WhatSendRepository(db).get_session(sample_tenant_id)
            assert record.credential_blob is None
        finally:
            db.close()
        assert not is_registered(credential_store.load(sample_tenant_id))

    def test_corrupt_blob_loads_fresh_identity(self, credential_store, session_factory, sample_tenant_id):
        db = session_factory()
        try:
            record, _ = WhatSendRepository(db).get_or_create_session(sample_tenant_id)
            record.credential_blob = "{broken"
            db.commit()
        finally:
            db.close()

        creds = credential_store.load(sample_tenant_id)

        assert not is_registered(creds)

    def test_encrypted_store(self, session_factory, sample_tenant_id, paired_credentials):
        store = CredentialStore(session_factory, CredentialCodec(Fernet.generate_key().decode()))

        store.save(sample_tenant_id, paired_credentials)

        assert store.load(sample_tenant_id) == paired_credentials
