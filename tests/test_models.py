"""Tests for data models and submission validation."""
import pytest
from datetime import datetime, timezone

from core.errors import ValidationError
from core.producer import validate_submission
from models.schemas import HealthReport, MAX_MESSAGE_LENGTH, Message


class TestMessage:
    def test_defaults(self):
        m = Message(email="a@example.com", message="hi")
        assert m.sent is False
        assert len(m.id) == 32
        assert m.created_at.tzinfo is not None

    def test_ids_are_unique(self):
        ids = {Message(email="a@example.com", message="hi").id for _ in range(50)}
        assert len(ids) == 50

    def test_public_layout(self):
        created = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        m = Message(id="m1", email="a@example.com", message="hi", created_at=created)
        assert m.to_public() == {
            "id": "m1",
            "email": "a@example.com",
            "message": "hi",
            "createdAt": "2024-05-01T12:00:00+00:00",
            "sent": False,
        }

    def test_receipt_omits_delivery_state(self):
        m = Message(id="m1", email="a@example.com", message="hi")
        assert m.to_receipt() == {"id": "m1", "email": "a@example.com", "message": "hi"}


class TestValidateSubmission:
    def test_valid(self):
        sub = validate_submission({"email": "a@example.com", "message": "hello"})
        assert str(sub.email) == "a@example.com"
        assert sub.message == "hello"

    def test_unknown_fields_ignored(self):
        sub = validate_submission({"email": "a@example.com", "message": "hello", "extra": 1})
        assert not hasattr(sub, "extra")

    def test_message_at_limit_accepted(self):
        sub = validate_submission({"email": "a@example.com", "message": "x" * MAX_MESSAGE_LENGTH})
        assert len(sub.message) == MAX_MESSAGE_LENGTH

    def test_message_over_limit_rejected(self):
        with pytest.raises(ValidationError) as exc:
            validate_submission({"email": "a@example.com", "message": "x" * (MAX_MESSAGE_LENGTH + 1)})
        assert len(exc.value.errors) == 1
        assert '"message"' in exc.value.errors[0]

    def test_empty_message_rejected(self):
        with pytest.raises(ValidationError) as exc:
            validate_submission({"email": "a@example.com", "message": ""})
        assert '"message"' in str(exc.value)

    def test_bad_email_rejected(self):
        with pytest.raises(ValidationError) as exc:
            validate_submission({"email": "not-an-email", "message": "hi"})
        assert '"email"' in str(exc.value)

    def test_every_violation_reported(self):
        with pytest.raises(ValidationError) as exc:
            validate_submission({})
        assert len(exc.value.errors) == 2
        text = str(exc.value)
        assert '"email"' in text and '"message"' in text
        assert ", " in text

    def test_wrong_types_rejected(self):
        with pytest.raises(ValidationError):
            validate_submission({"email": 42, "message": ["a"]})

    @pytest.mark.parametrize("payload", [None, [], "text", 3])
    def test_non_object_rejected(self, payload):
        with pytest.raises(ValidationError) as exc:
            validate_submission(payload)
        assert exc.value.errors == ['"body" must be a JSON object']


class TestHealthReport:
    def test_public_layout(self):
        assert HealthReport(store=True, queue=False).to_public() == {"store": "up", "queue": "down"}
        assert HealthReport().to_public() == {"store": "down", "queue": "down"}
