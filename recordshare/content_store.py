"""
Content store adapter.

Wraps a blob store so that every payload is addressed by a CIDv1 computed
locally from its bytes. Identical payloads always map to one ContentObject and
are written to the blob store once. When the blob store is unavailable the
caller can fall back to put_degraded, which spools the bytes to a local
pending directory until the reconciler re-uploads them.
"""

import os
import base64
import hashlib
import logging
from typing import List

from recordshare.constants import PENDING_DIR, SIGNED_URL_TTL
from recordshare.errors import NotFound, StoreUnavailable
from recordshare.models import ContentObject

logger = logging.getLogger(__name__)

CONTENT_TABLE = "content"

# CIDv1 prefix: version 1, raw codec, sha2-256 multihash of 32 bytes
_CID_PREFIX = bytes([0x01, 0x55, 0x12, 0x20])


def content_address(data: bytes) -> str:
    """
    Compute the content identifier of a payload

    Args:
        data: The raw bytes

    Returns:
        str: A base32 CIDv1 string, e.g. "bafkrei..."
    """
    digest = hashlib.sha256(data).digest()
    encoded = base64.b32encode(_CID_PREFIX + digest).decode("ascii").lower().rstrip("=")
    return "b" + encoded


class ContentStoreAdapter:
    def __init__(self, blob_store, table_store, pending_dir: str = PENDING_DIR):
        self.blob_store = blob_store
        self.table_store = table_store
        self.pending_dir = pending_dir

    def get(self, content_id: str) -> ContentObject:
        row = self.table_store.get(CONTENT_TABLE, content_id)
        if row is None:
            raise NotFound(f"Content {content_id} not found")
        return ContentObject.model_validate(row)

    def put(self, data: bytes, mime_type: str) -> ContentObject:
        """
        Persist a payload in the blob store

        Known durable content is returned without touching the blob store, so
        retried uploads are deduplicated.

        Raises:
            StoreUnavailable: If the blob store cannot be reached
        """
        content_id = content_address(data)
        existing = self.table_store.get(CONTENT_TABLE, content_id)
        if existing is not None and not existing["degraded"]:
            logger.info(f"Content {content_id} already stored, skipping upload")
            return ContentObject.model_validate(existing)

        locator = self.blob_store.put(data)
        content = ContentObject(
            id=content_id,
            byte_size=len(data),
            mime_type=mime_type,
            storage_locator=locator,
        )
        self.table_store.upsert(CONTENT_TABLE, content_id, content.model_dump(mode="json"))
        self._discard_spool(content_id)
        return content

    def put_degraded(self, data: bytes, mime_type: str) -> ContentObject:
        """
        Record a payload the blob store could not accept

        The bytes are spooled locally under their content address and the
        returned object carries degraded=True and no locator.
        """
        content_id = content_address(data)
        existing = self.table_store.get(CONTENT_TABLE, content_id)
        if existing is not None and not existing["degraded"]:
            return ContentObject.model_validate(existing)

        path = self._spool_path(content_id)
        try:
            os.makedirs(self.pending_dir, exist_ok=True)
            if not os.path.exists(path):
                with open(path, "wb") as f:
                    f.write(data)
        except OSError as e:
            raise StoreUnavailable(f"Cannot spool content locally: {e}") from e

        content = ContentObject(
            id=content_id,
            byte_size=len(data),
            mime_type=mime_type,
            degraded=True,
        )
        self.table_store.upsert(CONTENT_TABLE, content_id, content.model_dump(mode="json"))
        logger.warning(f"Blob store unavailable, content {content_id} spooled for reconciliation")
        return content

    def resolve(self, content_id: str) -> str:
        """
        Return the storage locator of durable content

        Raises:
            NotFound: If the content id is unknown
            StoreUnavailable: If the content is only spooled locally
        """
        content = self.get(content_id)
        if content.degraded:
            raise StoreUnavailable(f"Content {content_id} has not been persisted yet")
        return content.storage_locator

    def fetch(self, content_id: str) -> bytes:
        content = self.get(content_id)
        if content.degraded:
            return self._read_spool(content_id)
        return self.blob_store.get(content.storage_locator)

    def signed_url(self, content_id: str, ttl: int = SIGNED_URL_TTL) -> str:
        return self.blob_store.signed_url(self.resolve(content_id), ttl)

    def pending_ids(self) -> List[str]:
        rows = self.table_store.scan(CONTENT_TABLE, lambda r: r["degraded"])
        return sorted(r["id"] for r in rows)

    def heal(self, content_id: str) -> ContentObject:
        """Re-upload spooled content; raises StoreUnavailable if the store is still down"""
        content = self.get(content_id)
        if not content.degraded:
            return content
        return self.put(self._read_spool(content_id), content.mime_type)

    def _spool_path(self, content_id: str) -> str:
        return os.path.join(self.pending_dir, content_id)

    def _read_spool(self, content_id: str) -> bytes:
        try:
            with open(self._spool_path(content_id), "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise NotFound(f"Spooled content {content_id} is missing") from e

    def _discard_spool(self, content_id: str) -> None:
        path = self._spool_path(content_id)
        if os.path.exists(path):
            os.remove(path)
