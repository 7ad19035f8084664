from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from ..infrastructure.error_handling import RemoteError, ValidationError
from ..infrastructure.storage import CleanupItem, Store
from ..integrations.meta_client import MetaClient
from ..models import Owner

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    deleted: int = 0
    paused: int = 0
    failed: int = 0


class Cleanup:
    """Retries deletion of remote objects left behind by failed or timed-out builds."""

    def __init__(self, store: Store, client_factory: Callable[[Owner], MetaClient], max_attempts: int = 5):
        self.store = store
        self.client_factory = client_factory
        self.max_attempts = max_attempts

    def run(self) -> CleanupReport:
        report = CleanupReport()
        for item in self.store.pending_cleanup(self.max_attempts):
            owner = self.store.get_owner(item.owner_id)
            if owner is None or not owner.token_valid:
                self.store.resolve_cleanup(item.id, error="no valid credential for owner")
                report.failed += 1
                continue
            self._process(self.client_factory(owner), item, report)
        if report.deleted or report.paused or report.failed:
            logger.info(
                "Cleanup done: deleted=%d paused=%d failed=%d",
                report.deleted, report.paused, report.failed,
            )
        return report

    def _process(self, client: MetaClient, item: CleanupItem, report: CleanupReport) -> None:
        try:
            client.delete_object(item.object_id)
        except (RemoteError, ValidationError) as e:
            logger.warning("Delete of %s %s failed: %s; pausing instead", item.object_type, item.object_id, e)
            try:
                client.update_status(item.object_id, "PAUSED")
            except (RemoteError, ValidationError) as pause_err:
                self.store.resolve_cleanup(item.id, error=f"delete: {e}; pause: {pause_err}")
                report.failed += 1
                return
            # paused objects stay queued so deletion is retried next run
            self.store.resolve_cleanup(item.id, error=f"delete: {e} (paused)")
            report.paused += 1
            return
        self.store.resolve_cleanup(item.id)
        report.deleted += 1
        logger.info("Deleted orphaned %s %s", item.object_type, item.object_id)
