"""
UserAccess record store.

Thin synchronous wrapper over the user_access table that publishes a
change event after every committed write. Async callers go through
core.async_utils.run_sync.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence

from sqlmodel import SQLModel, select

from subtrack.core.database import get_session_context
from subtrack.models.access import UserAccess
from subtrack.services.change_feed import ChangeFeed, ChangeKind, change_feed

logger = logging.getLogger(__name__)

TABLE = "user_access"


class UserAccessStore:
    def __init__(
        self,
        session_factory: Callable = get_session_context,
        feed: ChangeFeed = change_feed,
    ):
        self._session_factory = session_factory
        self._feed = feed

    def get(self, user_id: str) -> Optional[UserAccess]:
        with self._session_factory() as session:
            return session.exec(
                select(UserAccess).where(UserAccess.user_id == user_id)
            ).first()

    def list_all(self) -> List[UserAccess]:
        with self._session_factory() as session:
            return list(session.exec(select(UserAccess)).all())

    def insert(self, access: UserAccess) -> UserAccess:
        """Insert a new record; raises IntegrityError if the user already has one."""
        with self._session_factory() as session:
            session.add(access)
            session.commit()
            session.refresh(access)
        logger.info("user_access created: user=%s type=%s status=%s",
                    access.user_id, access.user_type, access.subscription_status)
        self._feed.publish(
            TABLE, ChangeKind.INSERT, access.user_id,
            row=access.model_dump(mode="json"), owner_id=access.user_id,
        )
        return access

    def upsert_fields(
        self,
        user_id: str,
        defaults: dict,
        also_add: Sequence[SQLModel] = (),
        **fields: Any,
    ) -> UserAccess:
        """Update *fields* on the user's record, creating it from *defaults* if absent.

        Rows in *also_add* are committed in the same transaction, so either
        all of them land together with the access change or none do.
        """
        with self._session_factory() as session:
            access = session.exec(
                select(UserAccess).where(UserAccess.user_id == user_id)
            ).first()
            old = access.model_dump(mode="json") if access else None
            if access is None:
                access = UserAccess(user_id=user_id, **defaults)
            for name, value in fields.items():
                setattr(access, name, value)
            access.updated_at = datetime.now(timezone.utc)
            session.add(access)
            for row in also_add:
                session.add(row)
            try:
                session.commit()
            except Exception:
                session.rollback()
                raise
            session.refresh(access)

        self._feed.publish(
            TABLE,
            ChangeKind.UPDATE if old else ChangeKind.INSERT,
            user_id,
            row=access.model_dump(mode="json"),
            old=old,
            owner_id=user_id,
        )
        return access
