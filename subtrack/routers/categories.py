"""
Categories Router
=================

- GET    /api/categories          defaults + own, in display order
- POST   /api/categories          create (409 STK-CAT-001 on duplicate name)
- PATCH  /api/categories/{id}     rename (403 STK-CAT-002 for defaults)
- DELETE /api/categories/{id}     delete; subscriptions become uncategorised
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlmodel import Session

from subtrack.auth.session_auth import AuthenticatedUser, get_current_user
from subtrack.core.database import get_session
from subtrack.models.subscription import Category
from subtrack.services.category_service import CategoryService

logger = logging.getLogger(__name__)

router = APIRouter()


class CategoryRequest(BaseModel):
    name: str = Field(..., max_length=200)


class CategoryResponse(BaseModel):
    id: str
    name: str
    is_default: bool
    user_id: Optional[str] = None


class CategoryDeleteResponse(BaseModel):
    deleted: str
    subscriptions_detached: int


def _to_response(category: Category) -> CategoryResponse:
    return CategoryResponse(
        id=category.id,
        name=category.name,
        is_default=category.is_default,
        user_id=category.user_id,
    )


@router.get("", response_model=List[CategoryResponse], summary="List categories")
def list_categories(
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_session),
):
    return [_to_response(c) for c in CategoryService(db).list_categories(user.user_id)]


@router.post("", response_model=CategoryResponse, status_code=status.HTTP_201_CREATED)
def create_category(
    body: CategoryRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_session),
):
    return _to_response(CategoryService(db).create_category(user.user_id, body.name))


@router.patch("/{category_id}", response_model=CategoryResponse)
def rename_category(
    category_id: str,
    body: CategoryRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_session),
):
    return _to_response(CategoryService(db).rename_category(user.user_id, category_id, body.name))


@router.delete("/{category_id}", response_model=CategoryDeleteResponse)
def delete_category(
    category_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_session),
):
    detached = CategoryService(db).delete_category(user.user_id, category_id)
    return CategoryDeleteResponse(deleted=category_id, subscriptions_detached=detached)
