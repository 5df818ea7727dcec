"""
Append-only audit log.

Each event is chained to the previous one by hashing the previous event hash
together with the canonical JSON form of the new event, the way a block
references its parent. verify_chain() recomputes every link.
"""

import json
import hashlib
import logging
import threading
import datetime
from typing import Dict, List, Optional

from recordshare.models import AuditEvent

logger = logging.getLogger(__name__)

AUDIT_TABLE = "audit"
GENESIS_HASH = "0" * 64


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def compute_event_hash(previous_hash: str, sequence: int, action: str, actor_id: str,
                       subject_id: str, details: Dict[str, str], timestamp: datetime.datetime) -> str:
    body = json.dumps(
        {
            "sequence": sequence,
            "action": action,
            "actor_id": actor_id,
            "subject_id": subject_id,
            "details": details,
            "timestamp": timestamp.isoformat(),
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256((previous_hash + body).encode("utf-8")).hexdigest()


class AuditLog:
    def __init__(self, table_store, clock=None):
        self.table_store = table_store
        self.clock = clock or _utcnow
        self._lock = threading.Lock()

    def _head(self) -> Optional[AuditEvent]:
        rows = self.table_store.scan(AUDIT_TABLE)
        if not rows:
            return None
        return AuditEvent.model_validate(max(rows, key=lambda r: r["sequence"]))

    def append(self, action: str, actor_id: str, subject_id: str,
               details: Optional[Dict[str, str]] = None) -> AuditEvent:
        details = {k: str(v) for k, v in (details or {}).items()}
        with self._lock:
            head = self._head()
            sequence = head.sequence + 1 if head else 0
            previous_hash = head.event_hash if head else GENESIS_HASH
            timestamp = self.clock()
            event = AuditEvent(
                sequence=sequence,
                action=action,
                actor_id=actor_id,
                subject_id=subject_id,
                details=details,
                timestamp=timestamp,
                previous_hash=previous_hash,
                event_hash=compute_event_hash(
                    previous_hash, sequence, action, actor_id, subject_id, details, timestamp
                ),
            )
            self.table_store.insert(AUDIT_TABLE, f"{sequence:012d}", event.model_dump(mode="json"))
        logger.info(f"Audit {sequence}: {action} by {actor_id} on {subject_id}")
        return event

    def events(self) -> List[AuditEvent]:
        rows = sorted(self.table_store.scan(AUDIT_TABLE), key=lambda r: r["sequence"])
        return [AuditEvent.model_validate(r) for r in rows]

    def events_for(self, subject_id: str) -> List[AuditEvent]:
        return [e for e in self.events() if e.subject_id == subject_id]

    def verify_chain(self) -> bool:
        previous_hash = GENESIS_HASH
        for expected_sequence, event in enumerate(self.events()):
            if event.sequence != expected_sequence or event.previous_hash != previous_hash:
                logger.error(f"Audit chain broken at sequence {event.sequence}")
                return False
            recomputed = compute_event_hash(
                previous_hash, event.sequence, event.action, event.actor_id,
                event.subject_id, event.details, event.timestamp,
            )
            if recomputed != event.event_hash:
                logger.error(f"Audit event {event.sequence} hash mismatch")
                return False
            previous_hash = event.event_hash
        return True
