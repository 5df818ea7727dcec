"""
Sharing and delivery log for files a doctor pushes to a patient.

This channel does not consult the grant ledger: the doctor is the author of
the file being delivered. Entries cannot be deleted once shared; the patient
may only acknowledge that a file was viewed.
"""

import uuid
import logging
import threading
import datetime
from typing import List, Optional

from recordshare.constants import ROLES
from recordshare.errors import Forbidden, NotFound, ValidationError
from recordshare.models import ContentObject, SharedFile
from recordshare.registry import sort_newest_first

logger = logging.getLogger(__name__)

SHARED_FILES_TABLE = "shared_files"


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


class SharingLog:
    def __init__(self, table_store, profiles=None, audit=None, clock=None):
        self.table_store = table_store
        self.profiles = profiles
        self.audit = audit
        self.clock = clock or _utcnow
        self._view_lock = threading.Lock()

    def _check_role(self, profile_id: str, role: str) -> None:
        if not profile_id:
            raise ValidationError(f"{role} id is required")
        if self.profiles is None:
            return
        try:
            profile = self.profiles.get_profile(profile_id)
        except NotFound:
            raise ValidationError(f"Unknown {role}: {profile_id}")
        if profile.role != role:
            raise ValidationError(f"Profile {profile_id} is not a {role}")

    def validate_share(self, doctor_id: str, patient_id: str, file_name: str,
                       expires_at: Optional[datetime.datetime] = None,
                       now: Optional[datetime.datetime] = None) -> None:
        """Raise ValidationError for a share that share_file would reject"""
        self._check_role(doctor_id, ROLES["DOCTOR"])
        self._check_role(patient_id, ROLES["PATIENT"])
        if not file_name or not file_name.strip():
            raise ValidationError("file_name is required")
        if expires_at is not None:
            if expires_at.tzinfo is None:
                raise ValidationError("expires_at must be timezone-aware")
            if expires_at <= (now or self.clock()):
                raise ValidationError("expires_at must be in the future")

    def share_file(self, doctor_id: str, patient_id: str, content: ContentObject, file_name: str,
                   description: str = "", expires_at: Optional[datetime.datetime] = None) -> SharedFile:
        """
        Deliver a file from a doctor to a patient

        Succeeds with degraded content; the entry then carries degraded=True
        until the reconciler heals it.
        """
        now = self.clock()
        self.validate_share(doctor_id, patient_id, file_name, expires_at, now)

        shared = SharedFile(
            id=str(uuid.uuid4()),
            doctor_id=doctor_id,
            patient_id=patient_id,
            file_name=file_name.strip(),
            content_id=content.id,
            locator=content.storage_locator,
            mime_type=content.mime_type,
            byte_size=content.byte_size,
            description=description or "",
            shared_at=now,
            expires_at=expires_at,
            degraded=content.degraded,
        )
        self.table_store.insert(SHARED_FILES_TABLE, shared.id, shared.model_dump(mode="json"))
        logger.info(f"{doctor_id} shared {shared.file_name} with {patient_id} (degraded={shared.degraded})")
        if self.audit:
            self.audit.append("file_shared", doctor_id, shared.id,
                              {"patient_id": patient_id, "content_id": content.id})
        return shared

    def get(self, shared_file_id: str) -> SharedFile:
        row = self.table_store.get(SHARED_FILES_TABLE, shared_file_id)
        if row is None:
            raise NotFound(f"Shared file {shared_file_id} not found")
        return SharedFile.model_validate(row)

    def mark_viewed(self, shared_file_id: str, caller_id: str) -> SharedFile:
        shared = self.get(shared_file_id)
        if caller_id != shared.patient_id:
            raise Forbidden("Only the receiving patient may acknowledge this file")
        with self._view_lock:
            shared = self.get(shared_file_id)
            if shared.is_viewed:
                return shared
            row = self.table_store.update(
                SHARED_FILES_TABLE, shared_file_id,
                {"is_viewed": True, "viewed_at": self.clock().isoformat()},
            )
        if self.audit:
            self.audit.append("file_viewed", caller_id, shared_file_id)
        return SharedFile.model_validate(row)

    def list_for_doctor(self, doctor_id: str) -> List[SharedFile]:
        return self._list(lambda r: r["doctor_id"] == doctor_id)

    def list_for_patient(self, patient_id: str) -> List[SharedFile]:
        return self._list(lambda r: r["patient_id"] == patient_id)

    def _list(self, predicate) -> List[SharedFile]:
        files = [SharedFile.model_validate(r) for r in self.table_store.scan(SHARED_FILES_TABLE, predicate)]
        return sort_newest_first(files, lambda f: f.shared_at, lambda f: f.id)

    def list_degraded(self) -> List[SharedFile]:
        return self._list(lambda r: r["degraded"])

    def mark_healed(self, shared_file_id: str, content: ContentObject) -> SharedFile:
        shared = self.get(shared_file_id)
        if content.degraded or content.id != shared.content_id:
            raise ValidationError(f"Content {content.id} cannot heal shared file {shared_file_id}")
        row = self.table_store.update(
            SHARED_FILES_TABLE, shared_file_id,
            {"degraded": False, "locator": content.storage_locator},
        )
        logger.info(f"Shared file {shared_file_id} healed")
        return SharedFile.model_validate(row)
