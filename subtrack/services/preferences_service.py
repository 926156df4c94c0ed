"""
Per-user display preferences (currently just the display currency).

The row is created with the default currency on first read.
"""

import logging
from datetime import datetime, timezone

from sqlmodel import Session, select

from subtrack.config import settings
from subtrack.models.access import UserPreferences
from subtrack.models.currency import CurrencyCode, parse_currency
from subtrack.services.change_feed import ChangeFeed, ChangeKind, change_feed

logger = logging.getLogger(__name__)

TABLE = "user_preferences"


class PreferencesService:
    def __init__(self, db: Session, feed: ChangeFeed = change_feed):
        self.db = db
        self._feed = feed

    def get_preferences(self, user_id: str) -> UserPreferences:
        prefs = self.db.exec(
            select(UserPreferences).where(UserPreferences.user_id == user_id)
        ).first()
        if prefs is not None:
            return prefs

        prefs = UserPreferences(
            user_id=user_id,
            currency=parse_currency(settings.default_display_currency).value,
        )
        self.db.add(prefs)
        self.db.commit()
        self.db.refresh(prefs)
        logger.debug("Created default preferences for %s", user_id)
        return prefs

    def display_currency(self, user_id: str) -> CurrencyCode:
        return parse_currency(self.get_preferences(user_id).currency)

    def set_display_currency(self, user_id: str, currency) -> UserPreferences:
        code = parse_currency(currency)
        prefs = self.get_preferences(user_id)
        old = prefs.model_dump(mode="json")
        prefs.currency = code.value
        prefs.updated_at = datetime.now(timezone.utc)
        self.db.add(prefs)
        self.db.commit()
        self.db.refresh(prefs)

        self._feed.publish(
            TABLE, ChangeKind.UPDATE, user_id,
            row=prefs.model_dump(mode="json"), old=old, owner_id=user_id,
        )
        return prefs
