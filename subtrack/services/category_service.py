"""
Category Service
================

CRUD for subscription categories.

- System defaults (user_id NULL, is_default True) are shared by everyone,
  seeded idempotently at startup, and can be neither renamed nor deleted.
- User categories are visible only to their owner. Names are compared
  exactly (case-sensitive, after trimming) against the owner's own
  categories plus the defaults.
- Deleting a category detaches every subscription that referenced it
  (category_id → NULL) in the same transaction as the delete, so no
  subscription is ever left pointing at a missing category.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlmodel import Session, or_, select

from subtrack.core.errors import (
    CategoryImmutable,
    CategoryNotFound,
    DuplicateCategoryName,
    ValidationFailed,
)
from subtrack.models.subscription import Category, Subscription
from subtrack.services.change_feed import ChangeFeed, ChangeKind, change_feed

logger = logging.getLogger(__name__)

TABLE = "subscription_categories"
OTHER = "Other"
MAX_NAME_LENGTH = 100

DEFAULT_CATEGORIES = (
    "Entertainment",
    "Productivity",
    "Utilities",
    "Health & Fitness",
    "Education",
    OTHER,
)


def seed_default_categories(session: Session) -> int:
    """Insert any missing default category. Returns the number inserted."""
    existing = set(
        session.exec(
            select(Category.name).where(Category.is_default == True)  # noqa: E712
        ).all()
    )
    added = 0
    for name in DEFAULT_CATEGORIES:
        if name in existing:
            continue
        session.add(Category(name=name, user_id=None, is_default=True))
        added += 1
    if added:
        session.commit()
        logger.info("Seeded %d default categories", added)
    return added


def category_sort_key(category: Category):
    """User categories first, then defaults, "Other" last; A-Z within each."""
    if category.is_default and category.name == OTHER:
        group = 2
    elif category.is_default:
        group = 1
    else:
        group = 0
    return (group, category.name.casefold(), category.name)


def _clean_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationFailed("name", "Category name is required")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationFailed("name", f"Category name must be at most {MAX_NAME_LENGTH} characters")
    return cleaned


class CategoryService:
    """Category CRUD scoped to one owner."""

    def __init__(self, db: Session, feed: ChangeFeed = change_feed):
        self.db = db
        self._feed = feed

    def _visible(self, owner_id: str):
        return select(Category).where(
            or_(Category.user_id == owner_id, Category.is_default == True)  # noqa: E712
        )

    def list_categories(self, owner_id: str) -> List[Category]:
        rows = self.db.exec(self._visible(owner_id)).all()
        return sorted(rows, key=category_sort_key)

    def get_category(self, owner_id: str, category_id: str) -> Category:
        category = self.db.get(Category, category_id)
        if category is None or (not category.is_default and category.user_id != owner_id):
            raise CategoryNotFound(category_id)
        return category

    def _ensure_unique(self, owner_id: str, name: str, exclude_id: Optional[str] = None) -> None:
        stmt = self._visible(owner_id).where(Category.name == name)
        for row in self.db.exec(stmt).all():
            if row.id != exclude_id:
                raise DuplicateCategoryName(name)

    def create_category(self, owner_id: str, name: str) -> Category:
        cleaned = _clean_name(name)
        self._ensure_unique(owner_id, cleaned)

        category = Category(user_id=owner_id, name=cleaned, is_default=False)
        self.db.add(category)
        self.db.commit()
        self.db.refresh(category)
        logger.info("Category created: id=%s user=%s", category.id, owner_id)

        self._feed.publish(
            TABLE, ChangeKind.INSERT, category.id,
            row=category.model_dump(mode="json"), owner_id=owner_id,
        )
        return category

    def rename_category(self, owner_id: str, category_id: str, name: str) -> Category:
        category = self.get_category(owner_id, category_id)
        if category.is_default:
            raise CategoryImmutable(category_id)
        cleaned = _clean_name(name)
        self._ensure_unique(owner_id, cleaned, exclude_id=category.id)

        old = category.model_dump(mode="json")
        category.name = cleaned
        category.updated_at = datetime.now(timezone.utc)
        self.db.add(category)
        self.db.commit()
        self.db.refresh(category)

        self._feed.publish(
            TABLE, ChangeKind.UPDATE, category.id,
            row=category.model_dump(mode="json"), old=old, owner_id=owner_id,
        )
        return category

    def delete_category(self, owner_id: str, category_id: str) -> int:
        """Delete a user category. Returns how many subscriptions were detached."""
        category = self.get_category(owner_id, category_id)
        if category.is_default:
            raise CategoryImmutable(category_id)

        now = datetime.now(timezone.utc)
        referencing = list(
            self.db.exec(select(Subscription).where(Subscription.category_id == category.id)).all()
        )
        detached = []
        for sub in referencing:
            old = sub.model_dump(mode="json")
            sub.category_id = None
            sub.updated_at = now
            self.db.add(sub)
            detached.append((sub, old))

        old_category = category.model_dump(mode="json")
        self.db.delete(category)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error("Category delete rolled back: id=%s user=%s", category_id, owner_id)
            raise

        logger.info(
            "Category deleted: id=%s user=%s detached=%d", category_id, owner_id, len(detached),
        )
        for sub, old in detached:
            self.db.refresh(sub)
            self._feed.publish(
                "subscriptions", ChangeKind.UPDATE, sub.id,
                row=sub.model_dump(mode="json"), old=old, owner_id=sub.user_id,
            )
        self._feed.publish(
            TABLE, ChangeKind.DELETE, category_id, old=old_category, owner_id=owner_id,
        )
        return len(detached)
