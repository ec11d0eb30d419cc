"""
Record Mapping Tests
"""

import pytest

from offline_sync.mapping import RecordMapper, make_entity_id
from offline_sync.models import InteractionStatus


class TestRecordMapper:
    """Tests for remote record -> entity conversion."""

    @pytest.fixture
    def mapper(self):
        return RecordMapper(kind="rfi")

    def test_make_entity_id(self):
        assert make_entity_id("submittal", 17) == "submittal-17"

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Open", InteractionStatus.OPEN),
            ("in progress", InteractionStatus.IN_PROGRESS),
            ("closed", InteractionStatus.RESOLVED),
            ("VOID", InteractionStatus.RESOLVED),
            ({"name": "Closed"}, InteractionStatus.RESOLVED),
            ({"status": "in progress"}, InteractionStatus.IN_PROGRESS),
            ("something else", InteractionStatus.OPEN),
            (None, InteractionStatus.OPEN),
            (42, InteractionStatus.OPEN),
        ],
    )
    def test_normalize_status(self, mapper, raw, expected):
        assert mapper.normalize_status(raw) == expected

    def test_to_entity(self, mapper):
        entity = mapper.to_entity(
            {"id": 1042, "status": {"name": "Closed"}, "subject": "Door hardware"},
            project_id=7,
        )
        assert entity.id == "rfi-1042"
        assert entity.kind == "rfi"
        assert entity.external_id == "1042"
        assert entity.status == InteractionStatus.RESOLVED
        assert entity.project_id == 7
        assert entity.payload == {"subject": "Door hardware"}
        assert entity.sync_pending is False

    def test_custom_fields(self):
        mapper = RecordMapper(kind="submittal", id_field="number", status_field="state")
        entity = mapper.to_entity({"number": "A-3", "state": "open", "title": "Shop drawings"})
        assert entity.id == "submittal-A-3"
        assert entity.payload == {"title": "Shop drawings"}

    def test_missing_id_raises(self, mapper):
        with pytest.raises(ValueError):
            mapper.to_entity({"status": "open"})

    def test_to_entities_skips_unmappable(self, mapper):
        entities = mapper.to_entities([{"id": 1}, {"subject": "no id"}, {"id": 2}], project_id=3)
        assert [e.id for e in entities] == ["rfi-1", "rfi-2"]
        assert all(e.project_id == 3 for e in entities)
