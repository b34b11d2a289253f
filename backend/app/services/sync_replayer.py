"""
sync_replayer.py — Drains the device sync queue against the server.

Items are replayed one at a time in queue order (priority, then age) so two
edits of the same entity never reach the server out of order.

Outcome per item:
  2xx         → item completed, record synced (server merge applied locally)
  5xx / 408 / 429 / transport error → retry with exponential backoff
  other 4xx   → failed immediately, the server rejected the payload
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping, Optional

import httpx

from app.services.local_store import ENTITY_STORE, LocalRecordStore
from app.services.perf_monitor import timed
from app.services.sync_queue_engine import MAX_RETRIES

logger = logging.getLogger("bca-sync.replayer")

ENTITY_ENDPOINTS: Dict[str, str] = {
    "assessment": "/api/v1/sync/assessments",
    "deficiency": "/api/v1/sync/deficiencies",
    "photo": "/api/v1/sync/photos",
}

RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


@dataclass
class SyncReport:
    attempted: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    conflicts: int = 0
    conflict_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _is_retryable(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUSES


class SyncReplayer:
    """
    Replays queued offline mutations through an httpx.Client.

    The client is expected to carry the API base URL and the bearer token;
    the replayer only supplies paths.
    """

    def __init__(
        self,
        store: LocalRecordStore,
        client: httpx.Client,
        max_retries: int = MAX_RETRIES,
    ):
        self.store = store
        self.client = client
        self.max_retries = max_retries

    @timed
    def run(self, now: Optional[int] = None, limit: Optional[int] = None) -> SyncReport:
        report = SyncReport()
        items = self.store.pending_queue(now)
        if limit is not None:
            items = items[:limit]
        for item in items:
            self._replay(item, now, report)
        if report.attempted:
            logger.info(
                "replay finished: %d completed, %d retried, %d failed",
                report.completed, report.retried, report.failed,
                extra={"sync_report": report.to_dict()},
            )
        return report

    # ------------------------------------------------------------------

    def _replay(self, item: Mapping[str, Any], now: Optional[int], report: SyncReport) -> None:
        entity_type = item["entity_type"]
        endpoint = ENTITY_ENDPOINTS.get(entity_type)
        if endpoint is None:
            self.store.fail(item["id"], f"Unknown entity type: {entity_type}", now, permanent=True)
            report.failed += 1
            return

        if self.store.claim(item["id"]) is None:
            report.skipped += 1
            return

        store_name = ENTITY_STORE[entity_type]
        record = self.store.get(store_name, item["item_id"])
        if record is None:
            # Deleted locally after it was queued
            self.store.complete(item["id"])
            report.skipped += 1
            return

        payload = {
            "record": {**record, "entity_type": entity_type},
            "base": self.store.get_base(store_name, item["item_id"]),
        }
        report.attempted += 1

        try:
            response = self.client.post(endpoint, json=payload)
        except httpx.TransportError as exc:
            self._retry(item, store_name, f"transport error: {exc}", now, report)
            return

        if response.is_success:
            self._acknowledge(item, store_name, record, response.json(), report)
        elif _is_retryable(response.status_code):
            self._retry(item, store_name, f"HTTP {response.status_code}", now, report)
        else:
            self._reject(item, store_name, f"HTTP {response.status_code}: {response.text[:200]}", now, report)

    def _acknowledge(self, item, store_name: str, record: Mapping[str, Any],
                     body: Mapping[str, Any], report: SyncReport) -> None:
        merged = body.get("merged")
        if merged:
            self.store.apply_server_version(
                store_name, item["item_id"], merged, expected_updated_at=record["updated_at"],
            )
        else:
            self.store.mark_synced(store_name, item["item_id"], expected_updated_at=record["updated_at"])
        self.store.complete(item["id"])
        report.completed += 1

        if body.get("conflicts"):
            report.conflicts += 1
            if body.get("conflict_id"):
                report.conflict_ids.append(body["conflict_id"])
            logger.info(
                "%s %s synced with conflicts: %s",
                item["entity_type"], item["item_id"], body["conflicts"],
            )

    def _retry(self, item, store_name: str, error: str, now: Optional[int], report: SyncReport) -> None:
        updated = self.store.fail(item["id"], error, now, self.max_retries)
        report.errors.append(error)
        if updated and updated["status"] == "failed":
            self.store.mark_failed(store_name, item["item_id"], error)
            report.failed += 1
        else:
            self.store.record_attempt_error(store_name, item["item_id"], error)
            report.retried += 1
        logger.debug("replay of %s failed: %s", item["item_id"], error)

    def _reject(self, item, store_name: str, error: str, now: Optional[int], report: SyncReport) -> None:
        self.store.fail(item["id"], error, now, self.max_retries, permanent=True)
        self.store.mark_failed(
            store_name, item["item_id"], error, exhausted=True, max_retries=self.max_retries,
        )
        report.errors.append(error)
        report.failed += 1
