"""
Reconciliation pass for content stored in degraded mode.

Spooled payloads are re-uploaded through the content store adapter. Records
and shared files whose content has become durable are then marked healed.
Nothing is dropped when the blob store is still unavailable; the remaining
ids are reported as pending.
"""

import logging
from typing import Dict, List

from recordshare.errors import NotFound, StoreUnavailable

logger = logging.getLogger(__name__)


class Reconciler:
    def __init__(self, content_store, registry, sharing_log):
        self.content_store = content_store
        self.registry = registry
        self.sharing_log = sharing_log

    def run(self) -> Dict[str, List[str]]:
        """
        Returns:
            dict: content ids healed and still pending, plus the ids of the
            records and shared files that were healed
        """
        healed, pending, missing = [], [], []
        pending_ids = self.content_store.pending_ids()
        for index, content_id in enumerate(pending_ids):
            try:
                self.content_store.heal(content_id)
                healed.append(content_id)
            except StoreUnavailable as e:
                logger.warning(f"Blob store still unavailable, {len(pending_ids) - index} items left: {e}")
                pending.extend(pending_ids[index:])
                break
            except NotFound as e:
                logger.error(f"Cannot heal {content_id}: {e}")
                missing.append(content_id)

        records = []
        for record in self.registry.list_degraded():
            content = self.content_store.get(record.content_id)
            if not content.degraded:
                self.registry.mark_healed(record.record_id, content)
                records.append(record.record_id)

        shared_files = []
        for shared in self.sharing_log.list_degraded():
            content = self.content_store.get(shared.content_id)
            if not content.degraded:
                self.sharing_log.mark_healed(shared.id, content)
                shared_files.append(shared.id)

        logger.info(f"Reconciliation healed {len(healed)} contents, {len(pending)} pending")
        return {
            "healed": healed,
            "pending": pending,
            "missing": missing,
            "records": records,
            "shared_files": shared_files,
        }
