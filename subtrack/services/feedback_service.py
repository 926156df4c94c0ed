"""
Feedback submissions.

The message is trimmed and required; the email is trimmed, optional, and
stored only when it looks like an address.
"""

import logging
import re
from typing import List, Optional

from sqlmodel import Session, select

from subtrack.core.errors import ValidationFailed
from subtrack.models.feedback import MAX_MESSAGE_LENGTH, Feedback

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def clean_message(message: Optional[str]) -> str:
    cleaned = (message or "").strip()
    if not cleaned:
        raise ValidationFailed("message", "Please enter your feedback")
    if len(cleaned) > MAX_MESSAGE_LENGTH:
        raise ValidationFailed("message", f"Feedback must be at most {MAX_MESSAGE_LENGTH} characters")
    return cleaned


def clean_email(email: Optional[str]) -> Optional[str]:
    cleaned = (email or "").strip()
    if not cleaned:
        return None
    if len(cleaned) > 320 or not _EMAIL_RE.match(cleaned):
        raise ValidationFailed("email", "Enter a valid email address or leave it empty")
    return cleaned


class FeedbackService:
    def __init__(self, db: Session):
        self.db = db

    def submit(self, user_id: Optional[str], message: Optional[str], email: Optional[str] = None) -> Feedback:
        feedback = Feedback(user_id=user_id, message=clean_message(message), email=clean_email(email))
        self.db.add(feedback)
        self.db.commit()
        self.db.refresh(feedback)
        logger.info("Feedback received: id=%s user=%s reply_to=%s",
                    feedback.id, user_id, "yes" if feedback.email else "no")
        return feedback

    def list_for_user(self, user_id: str) -> List[Feedback]:
        return list(self.db.exec(
            select(Feedback)
            .where(Feedback.user_id == user_id)
            .order_by(Feedback.created_at.desc())
        ).all())
