"""
Tests for feedback submissions.
"""

import pytest
from sqlmodel import select

from subtrack.core.errors import ValidationFailed
from subtrack.models.feedback import Feedback
from subtrack.services.feedback_service import FeedbackService, clean_email, clean_message


class TestCleaning:
    def test_message_trimmed(self):
        assert clean_message("  works great \n") == "works great"

    @pytest.mark.parametrize("message", [None, "", "   \n\t"])
    def test_empty_message_rejected(self, message):
        with pytest.raises(ValidationFailed) as exc:
            clean_message(message)
        assert exc.value.field == "message"

    def test_message_length_limit(self):
        assert len(clean_message("x" * 1000)) == 1000
        with pytest.raises(ValidationFailed):
            clean_message("x" * 1001)

    @pytest.mark.parametrize("email", [None, "", "   "])
    def test_blank_email_is_none(self, email):
        assert clean_email(email) is None

    def test_email_trimmed(self):
        assert clean_email(" me@example.com ") == "me@example.com"

    @pytest.mark.parametrize("email", ["me", "me@", "me@example", "a b@example.com"])
    def test_malformed_email_rejected(self, email):
        with pytest.raises(ValidationFailed) as exc:
            clean_email(email)
        assert exc.value.field == "email"


class TestFeedbackService:
    def test_submit_stores_trimmed_values(self, db, user_id):
        stored = FeedbackService(db).submit(user_id, "  the chart is off by a month ", "")

        row = db.exec(select(Feedback).where(Feedback.id == stored.id)).one()
        assert row.message == "the chart is off by a month"
        assert row.email is None
        assert row.user_id == user_id

    def test_rejected_submission_stores_nothing(self, db, user_id):
        with pytest.raises(ValidationFailed):
            FeedbackService(db).submit(user_id, "   ", "me@example.com")
        assert FeedbackService(db).list_for_user(user_id) == []

    def test_list_for_user_only_returns_own(self, db, user_id):
        service = FeedbackService(db)
        service.submit(user_id, "first")
        service.submit("someone_else", "not mine")

        assert [fb.message for fb in service.list_for_user(user_id)] == ["first"]
