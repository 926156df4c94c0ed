"""
Feedback Router
===============

- POST /api/feedback   {"message": "...", "email": "optional"}
                       empty message or malformed email → 422 STK-VAL-001
- GET  /api/feedback   the caller's own submissions, newest first
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlmodel import Session

from subtrack.auth.session_auth import AuthenticatedUser, get_current_user
from subtrack.core.database import get_session
from subtrack.services.feedback_service import FeedbackService

logger = logging.getLogger(__name__)

router = APIRouter()


class FeedbackCreate(BaseModel):
    message: Optional[str] = None
    email: Optional[str] = None


class FeedbackResponse(BaseModel):
    id: str
    message: str
    email: Optional[str] = None
    created_at: datetime


@router.post("", response_model=FeedbackResponse, status_code=201, summary="Submit feedback")
def submit_feedback(
    body: FeedbackCreate,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_session),
):
    feedback = FeedbackService(db).submit(user.user_id, body.message, body.email)
    return FeedbackResponse(**feedback.model_dump(include={"id", "message", "email", "created_at"}))


@router.get("", response_model=List[FeedbackResponse], summary="Your feedback")
def list_feedback(
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_session),
):
    return [
        FeedbackResponse(**fb.model_dump(include={"id", "message", "email", "created_at"}))
        for fb in FeedbackService(db).list_for_user(user.user_id)
    ]
