"""
Publication Approvals — Ingestion Boundary

Translates an already-validated request into a status store write:
POST creates a DRAFT record, PUT approves it. Business rejections come
back as a typed response with a reason code, never as an exception.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from approvals.store import StatusStore
from approvals.types import StatusRecord, WriteResult

logger = logging.getLogger("publication_approvals.ingest")


@dataclass
class IngestResponse:
    entity_id: str
    status: str                 # accepted | rejected
    reason: str | None = None
    record: StatusRecord | None = None

    @property
    def accepted(self) -> bool:
        return self.status == "accepted"

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "status": self.status,
            "reason": self.reason,
            "record": self.record.to_image() if self.record else None,
        }


class IngestionHandler:
    def __init__(self, store: StatusStore):
        self.store = store

    def handle(self, method: str, body: dict[str, Any]) -> IngestResponse:
        entity_id = str((body or {}).get("entity_id") or "").strip()
        if not entity_id:
            raise ValueError("entity_id is required")

        method = method.upper()
        if method == "POST":
            return self._respond(entity_id, self.store.create_record(entity_id, body.get("attributes") or {}))
        if method == "PUT":
            return self._respond(entity_id, self.store.approve_record(entity_id))
        raise ValueError(f"Unsupported method {method!r}; expected POST or PUT")

    def create(self, entity_id: str, attributes: dict[str, Any] | None = None) -> IngestResponse:
        return self.handle("POST", {"entity_id": entity_id, "attributes": attributes or {}})

    def approve(self, entity_id: str) -> IngestResponse:
        return self.handle("PUT", {"entity_id": entity_id})

    @staticmethod
    def _respond(entity_id: str, result: WriteResult) -> IngestResponse:
        if result.ok:
            return IngestResponse(entity_id, "accepted", record=result.record)
        logger.info("Request for %s rejected: %s", entity_id, result.reason.value)
        return IngestResponse(entity_id, "rejected", reason=result.reason.value, record=result.record)
