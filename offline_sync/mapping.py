"""
Mapping contract between remote records and mirrored entities.

The remote project-management API is an external data source; a
``RecordMapper`` describes how one kind of its records becomes an ``Entity``
(id ``<kind>-<externalId>``, normalized status, opaque payload).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .models import Entity, InteractionStatus

logger = logging.getLogger(__name__)

DEFAULT_STATUS_ALIASES: dict[str, InteractionStatus] = {
    "open": InteractionStatus.OPEN,
    "draft": InteractionStatus.OPEN,
    "in progress": InteractionStatus.IN_PROGRESS,
    "in_progress": InteractionStatus.IN_PROGRESS,
    "pending": InteractionStatus.IN_PROGRESS,
    "closed": InteractionStatus.RESOLVED,
    "resolved": InteractionStatus.RESOLVED,
    "void": InteractionStatus.RESOLVED,
    "critical": InteractionStatus.CRITICAL,
    "overdue": InteractionStatus.CRITICAL,
}


def make_entity_id(kind: str, external_id: Any) -> str:
    return f"{kind}-{external_id}"


@dataclass
class RecordMapper:
    """Converts raw remote records of one kind into entities.

    Args:
        kind: Interaction type used as the id prefix (``rfi``, ``submittal``).
        id_field: Record field holding the external id.
        status_field: Record field holding the status; either a string or an
            object carrying ``name`` or ``status``.
        status_aliases: Lower-cased remote status -> normalized status.
    """
    kind: str
    id_field: str = "id"
    status_field: str = "status"
    status_aliases: dict[str, InteractionStatus] = field(
        default_factory=lambda: dict(DEFAULT_STATUS_ALIASES)
    )

    def normalize_status(self, raw: Any) -> InteractionStatus:
        """Map a remote status value, defaulting to ``open``."""
        name = raw
        if isinstance(raw, dict):
            name = raw.get("name") or raw.get("status") or ""
        if not isinstance(name, str) or not name:
            if raw is not None:
                logger.warning(f"Unexpected {self.kind} status value: {raw!r}")
            return InteractionStatus.OPEN
        return self.status_aliases.get(name.strip().lower(), InteractionStatus.OPEN)

    def to_entity(self, record: dict, project_id: Optional[int] = None) -> Entity:
        """Build an entity from a raw record.

        Raises:
            ValueError: if the record has no external id.
        """
        external_id = record.get(self.id_field)
        if external_id is None or external_id == "":
            raise ValueError(f"{self.kind} record has no '{self.id_field}' field")

        payload = {k: v for k, v in record.items() if k not in (self.id_field, self.status_field)}
        return Entity(
            id=make_entity_id(self.kind, external_id),
            status=self.normalize_status(record.get(self.status_field)),
            payload=payload,
            project_id=project_id,
        )

    def to_entities(self, records: list[dict], project_id: Optional[int] = None) -> list[Entity]:
        """Map a batch, skipping (and logging) records that cannot be mapped."""
        entities = []
        for record in records:
            try:
                entities.append(self.to_entity(record, project_id))
            except ValueError as e:
                logger.warning(f"Skipping unmappable record: {e}")
        return entities
