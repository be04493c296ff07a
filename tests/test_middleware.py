"""Tests for log redaction and request-context helpers."""

from mood_engine.api.middleware import user_id_from_path
from mood_engine.logger import REDACTED, redact_private_fields


class TestRedaction:
    def test_masks_free_text(self):
        event = redact_private_fields(None, "info", {"event": "x", "text": "dear diary", "user_id": "u1"})
        assert event["text"] == f"{REDACTED} (10 chars)"
        assert event["user_id"] == "u1"

    def test_non_string_values(self):
        event = redact_private_fields(None, "info", {"event": "x", "query": ["a", "b"]})
        assert event["query"] == REDACTED

    def test_leaves_other_events_alone(self):
        event = {"event": "calibration.trained", "training_n": 30}
        assert redact_private_fields(None, "info", dict(event)) == event


class TestUserIdFromPath:
    def test_user_scoped_routes(self):
        assert user_id_from_path("/graph/predict/P001") == "P001"
        assert user_id_from_path("/graph/associations/P002") == "P002"
        assert user_id_from_path("/trends/u-9") == "u-9"

    def test_other_routes(self):
        assert user_id_from_path("/entries") is None
        assert user_id_from_path("/health") is None
        assert user_id_from_path("/baselines/") is None
