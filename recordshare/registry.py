"""
Record registry: the patient's catalog of uploaded documents.

Records are append-only. Only the owning patient may change tags or the
description; there is no delete.
"""

import uuid
import logging
import datetime
from typing import Iterable, List, Optional

from recordshare.constants import ROLES
from recordshare.errors import Forbidden, NotFound, ValidationError
from recordshare.models import ContentObject, Record

logger = logging.getLogger(__name__)

RECORDS_TABLE = "records"


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def normalize_tags(tags: Optional[Iterable[str]]) -> set:
    return {t.strip() for t in (tags or []) if t and t.strip()}


def sort_newest_first(items, timestamp, identifier):
    """Order by timestamp descending, ties broken by ascending identifier"""
    ordered = sorted(items, key=identifier)
    return sorted(ordered, key=timestamp, reverse=True)


class RecordRegistry:
    def __init__(self, table_store, profiles=None, audit=None, clock=None):
        self.table_store = table_store
        self.profiles = profiles
        self.audit = audit
        self.clock = clock or _utcnow

    def validate_patient(self, patient_id: str) -> None:
        """
        Raises:
            ValidationError: If patient_id is empty or not a registered patient
        """
        if not patient_id or not isinstance(patient_id, str):
            raise ValidationError("patient_id is required")
        if self.profiles is None:
            return
        try:
            profile = self.profiles.get_profile(patient_id)
        except NotFound:
            raise ValidationError(f"Unknown patient: {patient_id}")
        if profile.role != ROLES["PATIENT"]:
            raise ValidationError(f"Profile {patient_id} is not a patient")

    def create_record(self, patient_id: str, content: ContentObject, file_name: str,
                      tags: Optional[Iterable[str]] = None, description: str = "") -> Record:
        self.validate_patient(patient_id)
        if not file_name or not file_name.strip():
            raise ValidationError("file_name is required")

        record = Record(
            record_id=str(uuid.uuid4()),
            owner_patient_id=patient_id,
            content_id=content.id,
            file_name=file_name.strip(),
            tags=normalize_tags(tags),
            description=description or "",
            created_at=self.clock(),
            degraded=content.degraded,
        )
        self.table_store.insert(RECORDS_TABLE, record.record_id, record.model_dump(mode="json"))
        logger.info(f"Created record {record.record_id} for {patient_id} (degraded={record.degraded})")
        if self.audit:
            self.audit.append("record_created", patient_id, record.record_id,
                              {"content_id": content.id, "degraded": record.degraded})
        return record

    def get_record(self, record_id: str) -> Record:
        row = self.table_store.get(RECORDS_TABLE, record_id)
        if row is None:
            raise NotFound(f"Record {record_id} not found")
        return Record.model_validate(row)

    def list_records(self, patient_id: str) -> List[Record]:
        rows = self.table_store.scan(RECORDS_TABLE, lambda r: r["owner_patient_id"] == patient_id)
        records = [Record.model_validate(r) for r in rows]
        return sort_newest_first(records, lambda r: r.created_at, lambda r: r.record_id)

    def _owned(self, record_id: str, caller_id: str) -> Record:
        record = self.get_record(record_id)
        if caller_id != record.owner_patient_id:
            logger.warning(f"{caller_id} attempted to modify record {record_id} owned by {record.owner_patient_id}")
            raise Forbidden("Only the owning patient may modify this record")
        return record

    def update_tags(self, record_id: str, caller_id: str, new_tags: Iterable[str]) -> Record:
        self._owned(record_id, caller_id)
        tags = normalize_tags(new_tags)
        row = self.table_store.update(RECORDS_TABLE, record_id, {"tags": sorted(tags)})
        if self.audit:
            self.audit.append("record_tags_updated", caller_id, record_id, {"tags": ",".join(sorted(tags))})
        return Record.model_validate(row)

    def update_description(self, record_id: str, caller_id: str, description: str) -> Record:
        self._owned(record_id, caller_id)
        row = self.table_store.update(RECORDS_TABLE, record_id, {"description": description or ""})
        if self.audit:
            self.audit.append("record_description_updated", caller_id, record_id)
        return Record.model_validate(row)

    def list_degraded(self) -> List[Record]:
        rows = self.table_store.scan(RECORDS_TABLE, lambda r: r["degraded"])
        return [Record.model_validate(r) for r in rows]

    def mark_healed(self, record_id: str, content: ContentObject) -> Record:
        if content.degraded or content.id != self.get_record(record_id).content_id:
            raise ValidationError(f"Content {content.id} cannot heal record {record_id}")
        row = self.table_store.update(RECORDS_TABLE, record_id, {"degraded": False})
        logger.info(f"Record {record_id} healed")
        return Record.model_validate(row)
