"""
Access grant ledger.

A grant lets one doctor read one record, or every record, of one patient
until it expires or is revoked. Grants are never deleted. At most one grant is
active per (doctor, patient, scope) tuple: writes to a tuple are serialized by
a per-key lock, and the table store holds a unique index from the tuple to the
active grant id.

Policy for a create on a tuple that already has an active grant: the existing
grant is extended, never duplicated. An open-ended expiry wins, otherwise the
later expiry is kept. create_grant never shortens a grant.

Expiry is evaluated lazily against the injected clock on every check, so the
ledger is only as correct as that clock.
"""

import uuid
import logging
import threading
import datetime
from contextlib import contextmanager
from typing import Dict, List, Optional

from recordshare.constants import ALL_RECORDS, ROLES
from recordshare.errors import Conflict, Forbidden, NotFound, StoreUnavailable, ValidationError
from recordshare.models import AccessGrant
from recordshare.registry import sort_newest_first

logger = logging.getLogger(__name__)

GRANTS_TABLE = "grants"
ACTIVE_GRANT_INDEX = "active_grants"


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def grant_key(doctor_id: str, patient_id: str, scope: str) -> str:
    return f"{doctor_id}|{patient_id}|{scope}"


class KeyedLock:
    """One lock per key, created on first use"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


class GrantLedger:
    def __init__(self, table_store, registry=None, profiles=None, audit=None, clock=None):
        self.table_store = table_store
        self.registry = registry
        self.profiles = profiles
        self.audit = audit
        self.clock = clock or _utcnow
        self._locks = KeyedLock()

    def _validate(self, patient_id, doctor_id, scope, expires_at, now):
        if not patient_id or not doctor_id:
            raise ValidationError("patient_id and doctor_id are required")
        if doctor_id == patient_id:
            raise ValidationError("A patient cannot grant access to themselves")
        if self.profiles is not None:
            for profile_id, role in ((patient_id, ROLES["PATIENT"]), (doctor_id, ROLES["DOCTOR"])):
                try:
                    profile = self.profiles.get_profile(profile_id)
                except NotFound:
                    raise ValidationError(f"Unknown {role}: {profile_id}")
                if profile.role != role:
                    raise ValidationError(f"Profile {profile_id} is not a {role}")
        if not scope:
            raise ValidationError("scope must be a record id or ALL_RECORDS")
        if expires_at is not None:
            if expires_at.tzinfo is None:
                raise ValidationError("expires_at must be timezone-aware")
            if expires_at <= now:
                raise ValidationError("expires_at must be in the future")
        if scope != ALL_RECORDS and self.registry is not None:
            try:
                record = self.registry.get_record(scope)
            except NotFound:
                raise ValidationError(f"Record {scope} does not exist")
            if record.owner_patient_id != patient_id:
                raise Forbidden(f"Record {scope} is not owned by {patient_id}")

    def _audit(self, action: str, actor_id: str, grant_id: str, details: Dict[str, str]) -> None:
        # Runs after the ledger write has committed, so an audit outage is logged, not raised
        if self.audit is None:
            return
        try:
            self.audit.append(action, actor_id, grant_id, details)
        except StoreUnavailable as e:
            logger.error(f"Could not audit {action} for grant {grant_id}: {e.message}")

    def get_grant(self, grant_id: str) -> AccessGrant:
        row = self.table_store.get(GRANTS_TABLE, grant_id)
        if row is None:
            raise NotFound(f"Grant {grant_id} not found")
        return AccessGrant.model_validate(row)

    def active_grant_for(self, doctor_id: str, patient_id: str, scope: str,
                         now: Optional[datetime.datetime] = None) -> Optional[AccessGrant]:
        now = now or self.clock()
        grant_id = self.table_store.lookup_unique(ACTIVE_GRANT_INDEX, grant_key(doctor_id, patient_id, scope))
        if grant_id is None:
            return None
        grant = self.get_grant(grant_id)
        return grant if grant.is_active(now) else None

    def create_grant(self, patient_id: str, doctor_id: str, scope: str = ALL_RECORDS,
                     expires_at: Optional[datetime.datetime] = None,
                     request_id: Optional[str] = None) -> AccessGrant:
        """
        Grant a doctor access to a record or to all records of a patient

        Args:
            patient_id: The granting patient
            doctor_id: The doctor receiving access
            scope: A record id owned by the patient, or ALL_RECORDS
            expires_at: Optional timezone-aware expiry; None means no expiry
            request_id: The access request this grant answers, if any

        Returns:
            AccessGrant: The new grant, or the existing active grant after extension
        """
        now = self.clock()
        self._validate(patient_id, doctor_id, scope, expires_at, now)
        key = grant_key(doctor_id, patient_id, scope)

        with self._locks.hold(key):
            existing_id = self.table_store.lookup_unique(ACTIVE_GRANT_INDEX, key)
            if existing_id is not None:
                existing = self.get_grant(existing_id)
                if existing.is_active(now):
                    return self._extend(existing, expires_at)
                # Expired but still indexed
                self.table_store.release_unique(ACTIVE_GRANT_INDEX, key, existing_id)

            grant = AccessGrant(
                grant_id=str(uuid.uuid4()),
                doctor_id=doctor_id,
                patient_id=patient_id,
                scope=scope,
                granted_at=now,
                expires_at=expires_at,
                request_id=request_id,
            )
            if not self.table_store.claim_unique(ACTIVE_GRANT_INDEX, key, grant.grant_id):
                raise Conflict(f"An active grant already exists for {key}")
            try:
                self.table_store.insert(GRANTS_TABLE, grant.grant_id, grant.model_dump(mode="json"))
            except Exception:
                self.table_store.release_unique(ACTIVE_GRANT_INDEX, key, grant.grant_id)
                raise

        logger.info(f"Granted {doctor_id} access to {scope} of {patient_id} until {expires_at or 'revoked'}")
        self._audit("grant_created", patient_id, grant.grant_id,
                    {"doctor_id": doctor_id, "scope": scope,
                     "expires_at": expires_at.isoformat() if expires_at else ""})
        return grant

    def _extend(self, grant: AccessGrant, expires_at: Optional[datetime.datetime]) -> AccessGrant:
        if grant.expires_at is None:
            new_expiry = None
        elif expires_at is None:
            new_expiry = None
        else:
            new_expiry = max(grant.expires_at, expires_at)

        if new_expiry == grant.expires_at:
            logger.info(f"Grant {grant.grant_id} already covers the requested period")
            return grant

        row = self.table_store.update(
            GRANTS_TABLE, grant.grant_id,
            {"expires_at": new_expiry.isoformat() if new_expiry else None},
        )
        logger.info(f"Extended grant {grant.grant_id} until {new_expiry or 'revoked'}")
        self._audit("grant_extended", grant.patient_id, grant.grant_id,
                    {"expires_at": new_expiry.isoformat() if new_expiry else ""})
        return AccessGrant.model_validate(row)

    def revoke_grant(self, grant_id: str, caller_id: str) -> AccessGrant:
        """
        Revoke a grant. Revoking an already revoked grant is a no-op.

        Raises:
            NotFound: If the grant does not exist
            Forbidden: If the caller is not the grant's patient
        """
        grant = self.get_grant(grant_id)
        if caller_id != grant.patient_id:
            logger.warning(f"{caller_id} attempted to revoke grant {grant_id} of {grant.patient_id}")
            raise Forbidden("Only the granting patient may revoke this grant")

        key = grant_key(grant.doctor_id, grant.patient_id, grant.scope)
        with self._locks.hold(key):
            grant = self.get_grant(grant_id)
            if grant.is_revoked:
                return grant
            now = self.clock()
            row = self.table_store.update(GRANTS_TABLE, grant_id, {"revoked_at": now.isoformat()})
            self.table_store.release_unique(ACTIVE_GRANT_INDEX, key, grant_id)

        logger.info(f"Revoked grant {grant_id}")
        self._audit("grant_revoked", caller_id, grant_id, {"doctor_id": grant.doctor_id})
        return AccessGrant.model_validate(row)

    def is_authorized(self, doctor_id: str, patient_id: str, record_id: str,
                      now: Optional[datetime.datetime] = None) -> bool:
        """
        Check whether any live grant lets the doctor read the record

        Reads the table store on every call. A StoreUnavailable from the table
        store propagates; it is never turned into an authorization.
        """
        if now is not None and now.tzinfo is None:
            raise ValidationError("now must be timezone-aware")
        now = now or self.clock()
        grants = self.table_store.scan(
            GRANTS_TABLE,
            lambda g: g["doctor_id"] == doctor_id and g["patient_id"] == patient_id and g["revoked_at"] is None,
        )
        for row in grants:
            grant = AccessGrant.model_validate(row)
            if grant.is_active(now) and grant.covers(record_id):
                return True
        return False

    def list_grants_for_patient(self, patient_id: str, include_inactive: bool = False,
                                now: Optional[datetime.datetime] = None) -> List[AccessGrant]:
        now = now or self.clock()
        grants = [AccessGrant.model_validate(r)
                  for r in self.table_store.scan(GRANTS_TABLE, lambda g: g["patient_id"] == patient_id)]
        if not include_inactive:
            grants = [g for g in grants if g.is_active(now)]
        return sort_newest_first(grants, lambda g: g.granted_at, lambda g: g.grant_id)

    def list_grants_for_doctor(self, doctor_id: str,
                               now: Optional[datetime.datetime] = None) -> List[AccessGrant]:
        now = now or self.clock()
        grants = [AccessGrant.model_validate(r)
                  for r in self.table_store.scan(GRANTS_TABLE, lambda g: g["doctor_id"] == doctor_id)]
        return sort_newest_first([g for g in grants if g.is_active(now)],
                                 lambda g: g.granted_at, lambda g: g.grant_id)
