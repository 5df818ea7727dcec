"""
Blob store collaborators for the content store adapter.

IPFSBlobStore talks to an IPFS daemon through its HTTP API with plain
requests calls, bypassing ipfshttpclient version checks. LocalBlobStore keeps
blobs in a directory on disk. Both report an unreachable backend as
StoreUnavailable and never hang longer than their timeout.
"""

import os
import time
import hashlib
import logging
from typing import Optional
from urllib.parse import quote, urlencode

import requests
from cryptography.exceptions import InvalidSignature as BadDigest
from cryptography.hazmat.primitives import hashes, hmac

from recordshare.constants import (
    BLOB_STORE_TIMEOUT, IPFS_API_URL, IPFS_GATEWAY_URL, SIGNED_URL_SECRET,
)
from recordshare.errors import NotFound, StoreUnavailable

logger = logging.getLogger(__name__)

IPFS_PREFIX = "ipfs://"
LOCAL_PREFIX = "local://"


def _digest(secret: str, locator: str, expires: int) -> hmac.HMAC:
    h = hmac.HMAC(secret.encode(), hashes.SHA256())
    h.update(f"{locator}|{expires}".encode())
    return h


def sign_locator(locator: str, expires: int, secret: str = SIGNED_URL_SECRET) -> str:
    """Return the hex HMAC-SHA256 of a locator and its expiry timestamp"""
    return _digest(secret, locator, expires).finalize().hex()


def verify_locator_signature(locator: str, expires: int, signature: str,
                             secret: str = SIGNED_URL_SECRET, now: Optional[float] = None) -> bool:
    """
    Check a signed URL token

    Returns:
        bool: True if the signature matches and the expiry has not passed
    """
    if (now if now is not None else time.time()) >= expires:
        return False
    try:
        _digest(secret, locator, expires).verify(bytes.fromhex(signature))
    except (BadDigest, ValueError):
        return False
    return True


def _signed_query(locator: str, ttl: int, secret: str) -> str:
    expires = int(time.time()) + int(ttl)
    return urlencode({"expires": expires, "signature": sign_locator(locator, expires, secret)})


class BlobStore:
    """Interface every blob store implements"""

    def put(self, data: bytes) -> str:
        raise NotImplementedError

    def get(self, locator: str) -> bytes:
        raise NotImplementedError

    def signed_url(self, locator: str, ttl: int) -> str:
        raise NotImplementedError

    def is_available(self) -> bool:
        raise NotImplementedError


class IPFSBlobStore(BlobStore):
    def __init__(self, api_url: str = IPFS_API_URL, gateway_url: str = IPFS_GATEWAY_URL,
                 timeout: float = BLOB_STORE_TIMEOUT, secret: str = SIGNED_URL_SECRET):
        self.api_url = api_url.rstrip("/")
        self.gateway_url = gateway_url.rstrip("/")
        self.timeout = timeout
        self.secret = secret

    def _post(self, command: str, **kwargs) -> requests.Response:
        try:
            response = requests.post(f"{self.api_url}/{command}", timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning(f"IPFS {command} failed: {e}")
            raise StoreUnavailable(f"IPFS is not reachable: {e}") from e
        if response.status_code >= 500 and command != "cat":
            raise StoreUnavailable(f"IPFS {command} error: {response.status_code} - {response.text}")
        return response

    def put(self, data: bytes) -> str:
        """
        Add and pin data on IPFS

        Returns:
            str: The ipfs:// locator of the added data
        """
        response = self._post("add", params={"cid-version": 1, "pin": "true"}, files={"file": data})
        if response.status_code != 200:
            raise StoreUnavailable(f"IPFS add error: {response.status_code} - {response.text}")
        cid = response.json()["Hash"]
        logger.info(f"Stored {len(data)} bytes on IPFS with CID: {cid}")
        return f"{IPFS_PREFIX}{cid}"

    def get(self, locator: str) -> bytes:
        if not locator.startswith(IPFS_PREFIX):
            raise NotFound(f"Not an IPFS locator: {locator}")
        cid = locator[len(IPFS_PREFIX):]
        response = self._post("cat", params={"arg": cid})
        if response.status_code != 200:
            # The daemon answers 500 with a message for unknown or unparsable CIDs
            raise NotFound(f"CID not found in IPFS: {cid}")
        return response.content

    def signed_url(self, locator: str, ttl: int) -> str:
        cid = locator[len(IPFS_PREFIX):]
        return f"{self.gateway_url}/{cid}?{_signed_query(locator, ttl, self.secret)}"

    def is_available(self) -> bool:
        try:
            node_id = self._post("id").json()
        except (StoreUnavailable, ValueError):
            return False
        logger.debug(f"IPFS node ID: {node_id.get('ID', 'unknown')}")
        return True


class LocalBlobStore(BlobStore):
    """Blobs stored as files named by their sha256 digest"""

    def __init__(self, root: str, base_url: str = "/api/blobs", secret: str = SIGNED_URL_SECRET):
        self.root = root
        self.base_url = base_url.rstrip("/")
        self.secret = secret

    def _path(self, name: str) -> str:
        if not name or os.sep in name or name.startswith("."):
            raise NotFound(f"Invalid blob name: {name}")
        return os.path.join(self.root, name)

    def put(self, data: bytes) -> str:
        name = hashlib.sha256(data).hexdigest()
        path = self._path(name)
        try:
            os.makedirs(self.root, exist_ok=True)
            if not os.path.exists(path):
                with open(path, "wb") as f:
                    f.write(data)
        except OSError as e:
            raise StoreUnavailable(f"Local storage is not writable: {e}") from e
        logger.info(f"Stored file locally with hash: {name}")
        return f"{LOCAL_PREFIX}{name}"

    def get(self, locator: str) -> bytes:
        if not locator.startswith(LOCAL_PREFIX):
            raise NotFound(f"Not a local locator: {locator}")
        path = self._path(locator[len(LOCAL_PREFIX):])
        if not os.path.exists(path):
            raise NotFound(f"Blob not found in local storage: {locator}")
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise StoreUnavailable(f"Local storage is not readable: {e}") from e

    def signed_url(self, locator: str, ttl: int) -> str:
        name = locator[len(LOCAL_PREFIX):]
        return f"{self.base_url}/{quote(name)}?{_signed_query(locator, ttl, self.secret)}"

    def is_available(self) -> bool:
        return os.access(self.root, os.W_OK) if os.path.exists(self.root) else True
