from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Optional, Set
import datetime

from recordshare.constants import ALL_RECORDS


class ContentObject(BaseModel):
    """Model for a content-addressed blob"""
    model_config = ConfigDict(frozen=True)

    id: str
    byte_size: int
    mime_type: str
    storage_locator: Optional[str] = None
    degraded: bool = False


class Record(BaseModel):
    """Model for a patient's catalog entry referencing one ContentObject"""
    record_id: str
    owner_patient_id: str
    content_id: str
    file_name: str
    tags: Set[str] = Field(default_factory=set)
    description: str = ""
    created_at: datetime.datetime
    degraded: bool = False


class AccessGrant(BaseModel):
    """Model for a doctor's time-bounded permission on a patient's record(s)"""
    grant_id: str
    doctor_id: str
    patient_id: str
    scope: str
    granted_at: datetime.datetime
    expires_at: Optional[datetime.datetime] = None
    revoked_at: Optional[datetime.datetime] = None
    request_id: Optional[str] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime.datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_active(self, now: datetime.datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)

    def covers(self, record_id: str) -> bool:
        return self.scope == ALL_RECORDS or self.scope == record_id


class SharedFile(BaseModel):
    """Model for a file a doctor pushed to a patient"""
    id: str
    doctor_id: str
    patient_id: str
    file_name: str
    content_id: str
    locator: Optional[str] = None
    mime_type: str = ""
    byte_size: int = 0
    description: str = ""
    shared_at: datetime.datetime
    expires_at: Optional[datetime.datetime] = None
    is_viewed: bool = False
    viewed_at: Optional[datetime.datetime] = None
    degraded: bool = False

    def is_expired(self, now: datetime.datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class Profile(BaseModel):
    profile_id: str
    role: str
    display_name: str = ""
    created_at: datetime.datetime


class IdentityBinding(BaseModel):
    profile_id: str
    wallet_address: str


class AccessRequest(BaseModel):
    """Model for a doctor's request to be granted access"""
    request_id: str
    doctor_id: str
    patient_id: str
    scope: str
    reason: str
    status: str = "pending"  # pending, approved, denied
    created_at: datetime.datetime
    updated_at: datetime.datetime
    grant_id: Optional[str] = None


class AuditEvent(BaseModel):
    """Model for one entry of the hash-chained audit log"""
    sequence: int
    action: str
    actor_id: str
    subject_id: str
    details: Dict[str, str] = Field(default_factory=dict)
    timestamp: datetime.datetime
    previous_hash: str
    event_hash: str
