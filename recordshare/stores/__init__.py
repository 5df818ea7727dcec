from recordshare.stores.blob_store import (
    IPFS_PREFIX, LOCAL_PREFIX, BlobStore, IPFSBlobStore, LocalBlobStore, sign_locator, verify_locator_signature,
)
from recordshare.stores.table_store import JSONTableStore, MemoryTableStore

__all__ = [
    "IPFS_PREFIX",
    "LOCAL_PREFIX",
    "BlobStore",
    "IPFSBlobStore",
    "LocalBlobStore",
    "JSONTableStore",
    "MemoryTableStore",
    "sign_locator",
    "verify_locator_signature",
]
