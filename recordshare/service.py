"""
Caller-facing facade over the record sharing core.

Every public method returns a Result(data, error, degraded, message) instead
of raising: error is None or an ErrorKind, and degraded tells the caller the
result was produced while the blob store was unavailable.
"""

import os
import logging
import datetime
from collections import namedtuple
from functools import wraps
from typing import Iterable, Optional

from recordshare.access_requests import AccessRequestBook
from recordshare.audit import AuditLog
from recordshare.constants import (
    ALL_RECORDS, ALLOWED_MIME_TYPES, BLOB_STORE, LOCAL_STORAGE_DIR, MAX_FILE_SIZE, PENDING_DIR,
    SIGNED_URL_TTL, TABLE_STORE_PATH,
)
from recordshare.content_store import ContentStoreAdapter
from recordshare.errors import Forbidden, RecordShareError, StoreUnavailable, ValidationError
from recordshare.grants import GrantLedger
from recordshare.identity import IdentityRegistry
from recordshare.reconcile import Reconciler
from recordshare.registry import RecordRegistry
from recordshare.sharing import SharingLog
from recordshare.stores import IPFSBlobStore, JSONTableStore, LocalBlobStore

logger = logging.getLogger(__name__)

Result = namedtuple("Result", ["data", "error", "degraded", "message"], defaults=[None, False, None])


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def returns_result(method):
    """Convert core exceptions into Result values"""
    @wraps(method)
    def wrapper(*args, **kwargs):
        try:
            data = method(*args, **kwargs)
        except RecordShareError as e:
            logger.info(f"{method.__name__} failed with {e.kind.value}: {e.message}")
            return Result(None, e.kind, False, e.message)
        if isinstance(data, Result):
            return data
        return Result(data, None, bool(getattr(data, "degraded", False)))
    return wrapper


def validate_upload(data: bytes, mime_type: str) -> None:
    if not data:
        raise ValidationError("File is empty")
    if len(data) > MAX_FILE_SIZE:
        raise ValidationError(f"File size too large. Maximum size: {MAX_FILE_SIZE // (1024 * 1024)}MB")
    if mime_type not in ALLOWED_MIME_TYPES:
        raise ValidationError(f"Invalid file type: {mime_type}")


class RecordShareService:
    def __init__(self, blob_store, table_store, pending_dir: str = PENDING_DIR,
                 verifier=None, clock=None):
        self.clock = clock or _utcnow
        self.audit = AuditLog(table_store, clock=self.clock)
        self.identity = IdentityRegistry(table_store, verifier=verifier, audit=self.audit, clock=self.clock)
        self.content_store = ContentStoreAdapter(blob_store, table_store, pending_dir=pending_dir)
        self.registry = RecordRegistry(table_store, profiles=self.identity, audit=self.audit, clock=self.clock)
        self.ledger = GrantLedger(table_store, registry=self.registry, profiles=self.identity, audit=self.audit, clock=self.clock)
        self.requests = AccessRequestBook(table_store, self.ledger, profiles=self.identity,
                                          audit=self.audit, clock=self.clock)
        self.sharing = SharingLog(table_store, profiles=self.identity, audit=self.audit, clock=self.clock)
        self.reconciler = Reconciler(self.content_store, self.registry, self.sharing)

    @classmethod
    def from_config(cls, backend: Optional[str] = None) -> "RecordShareService":
        """Build a service from environment configuration"""
        backend = backend or BLOB_STORE
        if backend == "local":
            blob_store = LocalBlobStore(os.path.join(LOCAL_STORAGE_DIR, "blobs"))
        else:
            blob_store = IPFSBlobStore()
        logger.info(f"Using {backend} blob store and table store at {TABLE_STORE_PATH}")
        return cls(blob_store, JSONTableStore(TABLE_STORE_PATH), pending_dir=PENDING_DIR)

    def _store_content(self, data: bytes, mime_type: str):
        # Blob store failures fall back to the local spool; anything else propagates
        try:
            return self.content_store.put(data, mime_type)
        except StoreUnavailable as e:
            logger.warning(f"Entering degraded mode: {e.message}")
            return self.content_store.put_degraded(data, mime_type)

    # Identity

    @returns_result
    def register_profile(self, profile_id: str, role: str, display_name: str = ""):
        return self.identity.register_profile(profile_id, role, display_name)

    @returns_result
    def register_with_wallet(self, profile_id: str, role: str, display_name: str,
                             wallet_address: str, signature: str, challenge_message: str):
        """Register a profile bound to a wallet that has just signed a challenge"""
        address = self.identity.verify_challenge(wallet_address, signature, challenge_message)
        return self.identity.register_profile(profile_id, role, display_name, address)

    @returns_result
    def get_profile(self, profile_id: str):
        return self.identity.get_profile(profile_id)

    @returns_result
    def bind_wallet(self, profile_id: str, wallet_address: str):
        return self.identity.bind_wallet(profile_id, wallet_address)

    @returns_result
    def issue_challenge(self, wallet_address: str):
        return self.identity.issue_challenge(wallet_address)

    @returns_result
    def verify_wallet_ownership(self, wallet_address: str, signature: str, challenge_message: str):
        return self.identity.verify_challenge(wallet_address, signature, challenge_message)

    @returns_result
    def authenticate_by_wallet(self, wallet_address: str, signature: str, challenge_message: str):
        return self.identity.authenticate_by_wallet(wallet_address, signature, challenge_message)

    # Records

    @returns_result
    def upload_record(self, patient_id: str, data: bytes, mime_type: str, file_name: str,
                      tags: Optional[Iterable[str]] = None, description: str = ""):
        """Validate, content-address, store (or spool) and register an upload"""
        validate_upload(data, mime_type)
        self.registry.validate_patient(patient_id)
        content = self._store_content(data, mime_type)
        return self.registry.create_record(patient_id, content, file_name, tags, description)

    @returns_result
    def create_record(self, patient_id: str, content, file_name: str,
                      tags: Optional[Iterable[str]] = None, description: str = ""):
        return self.registry.create_record(patient_id, content, file_name, tags, description)

    @returns_result
    def list_records(self, patient_id: str):
        return self.registry.list_records(patient_id)

    @returns_result
    def update_tags(self, record_id: str, caller_id: str, new_tags: Iterable[str]):
        return self.registry.update_tags(record_id, caller_id, new_tags)

    @returns_result
    def update_description(self, record_id: str, caller_id: str, description: str):
        return self.registry.update_description(record_id, caller_id, description)

    @returns_result
    def open_record(self, record_id: str, caller_id: str, ttl: int = SIGNED_URL_TTL):
        """
        Return a signed URL for a record if the caller owns it or holds a live grant

        The grant check always runs before the content is resolved.
        """
        record = self.registry.get_record(record_id)
        if caller_id != record.owner_patient_id:
            if not self.ledger.is_authorized(caller_id, record.owner_patient_id, record_id):
                logger.warning(f"{caller_id} denied access to record {record_id}")
                raise Forbidden("Not authorized to access this record")
        url = self.content_store.signed_url(record.content_id, ttl)
        self.audit.append("record_opened", caller_id, record_id)
        return Result({"record": record, "url": url, "expires_in": ttl}, None, False)

    @returns_result
    def accessible_records(self, doctor_id: str, patient_id: str):
        now = self.clock()
        return [r for r in self.registry.list_records(patient_id)
                if self.ledger.is_authorized(doctor_id, patient_id, r.record_id, now)]

    # Grants

    @returns_result
    def create_grant(self, patient_id: str, doctor_id: str, scope: str = ALL_RECORDS,
                     expires_at: Optional[datetime.datetime] = None):
        return self.ledger.create_grant(patient_id, doctor_id, scope, expires_at)

    @returns_result
    def revoke_grant(self, grant_id: str, caller_id: str):
        return self.ledger.revoke_grant(grant_id, caller_id)

    @returns_result
    def is_authorized(self, doctor_id: str, patient_id: str, record_id: str,
                      now: Optional[datetime.datetime] = None):
        return self.ledger.is_authorized(doctor_id, patient_id, record_id, now)

    @returns_result
    def list_grants_for_patient(self, patient_id: str, include_inactive: bool = False):
        return self.ledger.list_grants_for_patient(patient_id, include_inactive)

    @returns_result
    def list_grants_for_doctor(self, doctor_id: str):
        return self.ledger.list_grants_for_doctor(doctor_id)

    # Access requests

    @returns_result
    def request_access(self, doctor_id: str, patient_id: str, reason: str, scope: str = ALL_RECORDS):
        return self.requests.create_request(doctor_id, patient_id, reason, scope)

    @returns_result
    def respond_to_request(self, request_id: str, caller_id: str, approve: bool,
                           expires_at: Optional[datetime.datetime] = None):
        return self.requests.respond(request_id, caller_id, approve, expires_at)

    @returns_result
    def list_requests_for_patient(self, patient_id: str):
        return self.requests.list_for_patient(patient_id)

    @returns_result
    def list_requests_for_doctor(self, doctor_id: str):
        return self.requests.list_for_doctor(doctor_id)

    # Sharing

    @returns_result
    def share_upload(self, doctor_id: str, patient_id: str, data: bytes, mime_type: str,
                     file_name: str, description: str = "",
                     expires_at: Optional[datetime.datetime] = None):
        validate_upload(data, mime_type)
        self.sharing.validate_share(doctor_id, patient_id, file_name, expires_at)
        content = self._store_content(data, mime_type)
        return self.sharing.share_file(doctor_id, patient_id, content, file_name, description, expires_at)

    @returns_result
    def share_file(self, doctor_id: str, patient_id: str, content, file_name: str,
                   description: str = "", expires_at: Optional[datetime.datetime] = None):
        return self.sharing.share_file(doctor_id, patient_id, content, file_name, description, expires_at)

    @returns_result
    def mark_viewed(self, shared_file_id: str, caller_id: str):
        return self.sharing.mark_viewed(shared_file_id, caller_id)

    @returns_result
    def list_shared_for_doctor(self, doctor_id: str):
        return self.sharing.list_for_doctor(doctor_id)

    @returns_result
    def list_shared_for_patient(self, patient_id: str):
        return self.sharing.list_for_patient(patient_id)

    @returns_result
    def open_shared_file(self, shared_file_id: str, caller_id: str, ttl: int = SIGNED_URL_TTL):
        shared = self.sharing.get(shared_file_id)
        if caller_id not in (shared.doctor_id, shared.patient_id):
            raise Forbidden("Not authorized to access this file")
        if caller_id == shared.patient_id and shared.is_expired(self.clock()):
            raise Forbidden("Sharing has expired")
        url = self.content_store.signed_url(shared.content_id, ttl)
        return Result({"shared_file": shared, "url": url, "expires_in": ttl}, None, False)

    # Maintenance

    @returns_result
    def reconcile(self):
        return self.reconciler.run()

    @returns_result
    def audit_trail(self, subject_id: str):
        return self.audit.events_for(subject_id)
