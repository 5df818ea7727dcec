"""
Doctor access requests.

A doctor asks a patient for access to one record or to all records. The
patient approves or denies; an approval goes through the grant ledger, so it
either creates a grant or extends the active one for the same scope.
"""

import uuid
import logging
import threading
import datetime
from typing import List, Optional

from recordshare.constants import ALL_RECORDS
from recordshare.errors import Conflict, Forbidden, NotFound, ValidationError
from recordshare.models import AccessRequest
from recordshare.registry import sort_newest_first

logger = logging.getLogger(__name__)

REQUESTS_TABLE = "access_requests"
PENDING_REQUEST_INDEX = "pending_requests"

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_DENIED = "denied"


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def _pending_key(doctor_id, patient_id, scope):
    return f"{doctor_id}|{patient_id}|{scope}"


class AccessRequestBook:
    def __init__(self, table_store, ledger, profiles=None, audit=None, clock=None):
        self.table_store = table_store
        self.ledger = ledger
        self.profiles = profiles
        self.audit = audit
        self.clock = clock or _utcnow
        self._lock = threading.Lock()

    def create_request(self, doctor_id: str, patient_id: str, reason: str,
                       scope: str = ALL_RECORDS) -> AccessRequest:
        """
        Raises:
            ValidationError: If an id or the reason is missing
            Conflict: If a pending request already exists for this scope
        """
        if not doctor_id or not patient_id:
            raise ValidationError("doctor_id and patient_id are required")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required")
        if not scope:
            raise ValidationError("Must specify a record id or request all records")
        if self.profiles is not None:
            for profile_id, role in ((doctor_id, "doctor"), (patient_id, "patient")):
                try:
                    profile = self.profiles.get_profile(profile_id)
                except NotFound:
                    raise ValidationError(f"Unknown {role}: {profile_id}")
                if profile.role != role:
                    raise ValidationError(f"Profile {profile_id} is not a {role}")

        now = self.clock()
        request = AccessRequest(
            request_id=str(uuid.uuid4()),
            doctor_id=doctor_id,
            patient_id=patient_id,
            scope=scope,
            reason=reason.strip(),
            created_at=now,
            updated_at=now,
        )
        key = _pending_key(doctor_id, patient_id, scope)
        if not self.table_store.claim_unique(PENDING_REQUEST_INDEX, key, request.request_id):
            raise Conflict("You already have a pending request for this patient/record")
        try:
            self.table_store.insert(REQUESTS_TABLE, request.request_id, request.model_dump(mode="json"))
        except Exception:
            self.table_store.release_unique(PENDING_REQUEST_INDEX, key, request.request_id)
            raise
        logger.info(f"{doctor_id} requested access to {scope} of {patient_id}")
        return request

    def get_request(self, request_id: str) -> AccessRequest:
        row = self.table_store.get(REQUESTS_TABLE, request_id)
        if row is None:
            raise NotFound(f"Access request {request_id} not found")
        return AccessRequest.model_validate(row)

    def list_for_patient(self, patient_id: str) -> List[AccessRequest]:
        return self._list(lambda r: r["patient_id"] == patient_id)

    def list_for_doctor(self, doctor_id: str) -> List[AccessRequest]:
        return self._list(lambda r: r["doctor_id"] == doctor_id)

    def _list(self, predicate) -> List[AccessRequest]:
        requests = [AccessRequest.model_validate(r) for r in self.table_store.scan(REQUESTS_TABLE, predicate)]
        return sort_newest_first(requests, lambda r: r.created_at, lambda r: r.request_id)

    def respond(self, request_id: str, caller_id: str, approve: bool,
                expires_at: Optional[datetime.datetime] = None) -> AccessRequest:
        """
        Approve or deny a pending request

        Raises:
            Forbidden: If the caller is not the patient the request was sent to
            Conflict: If the request was already answered
        """
        request = self.get_request(request_id)
        if caller_id != request.patient_id:
            raise Forbidden("Only the patient may answer this request")

        with self._lock:
            request = self.get_request(request_id)
            if request.status != STATUS_PENDING:
                raise Conflict(f"Access request {request_id} is already {request.status}")
            changes = {"status": STATUS_APPROVED if approve else STATUS_DENIED}
            if approve:
                grant = self.ledger.create_grant(
                    request.patient_id, request.doctor_id, request.scope,
                    expires_at=expires_at, request_id=request.request_id,
                )
                changes["grant_id"] = grant.grant_id
            changes["updated_at"] = self.clock().isoformat()
            row = self.table_store.update(REQUESTS_TABLE, request_id, changes)
            self.table_store.release_unique(
                PENDING_REQUEST_INDEX,
                _pending_key(request.doctor_id, request.patient_id, request.scope),
                request_id,
            )

        logger.info(f"Access request {request_id} {changes['status']}")
        if self.audit:
            self.audit.append("access_request_" + changes["status"], caller_id, request_id,
                              {"grant_id": changes.get("grant_id", "")})
        return AccessRequest.model_validate(row)
