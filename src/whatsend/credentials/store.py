"""
Credential Store

Durable per-tenant storage of the protocol credential blob.
"""

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from notifycore.db import session_scope
from whatsend.credentials.codec import CredentialCodec, CredentialDecodeError, fresh_credentials
from whatsend.persistence.repo import WhatSendRepository

logger = logging.getLogger(__name__)


class CredentialStore:
    """
    Loads, saves and clears credential blobs in whatsapp_sessions.

    load() never fails: missing, unreadable or undecodable data yields a
    fresh identity, which simply means the tenant has to pair again.
    """

    def __init__(self, session_factory=None, codec: CredentialCodec | None = None):
        self.session_factory = session_factory
        self.codec = codec or CredentialCodec()

    def load(self, tenant_id: str) -> dict[str, Any]:
        try:
            with session_scope(self.session_factory) as db:
                record = WhatSendRepository(db).get_session(tenant_id)
                blob = record.credential_blob if record else None
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to read credentials, starting unpaired: {e}",
                extra={"tenant_id": tenant_id},
                exc_info=True,
            )
            return fresh_credentials()

        if not blob:
            return fresh_credentials()

        try:
            return self.codec.decode(blob)
        except CredentialDecodeError as e:
            logger.warning(
                f"Stored credentials are corrupt, starting unpaired: {e}",
                extra={"tenant_id": tenant_id},
            )
            return fresh_credentials()

    def save(self, tenant_id: str, credentials: dict[str, Any]) -> None:
        """Persist credentials (last write wins). The row is locked while writing."""
        blob = self.codec.encode(credentials)
        with session_scope(self.session_factory) as db:
            record, _created = WhatSendRepository(db).get_or_create_session(tenant_id, for_update=True)
            record.credential_blob = blob

        logger.debug("Saved credentials", extra={"tenant_id": tenant_id})

    def clear(self, tenant_id: str) -> None:
        """Forget the credentials; the next connect starts a new pairing."""
        with session_scope(self.session_factory) as db:
            record = WhatSendRepository(db).get_session(tenant_id, for_update=True)
            if record:
                record.credential_blob = None

        logger.info("Cleared credentials", extra={"tenant_id": tenant_id})
