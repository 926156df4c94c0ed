"""
Feedback Model
==============

Free-text feedback submitted from the in-app feedback box. The reply
address is optional.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel

MAX_MESSAGE_LENGTH = 1000


class Feedback(SQLModel, table=True):
    __tablename__ = "feedback"

    id: str = Field(
        default_factory=lambda: uuid.uuid4().hex[:8], primary_key=True
    )
    user_id: Optional[str] = Field(default=None, index=True, max_length=128)
    message: str = Field(max_length=MAX_MESSAGE_LENGTH)
    email: Optional[str] = Field(default=None, max_length=320)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
