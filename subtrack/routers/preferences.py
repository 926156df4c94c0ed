"""
Preferences Router

- GET /api/preferences
- PUT /api/preferences   {"currency": "EUR"}; unknown codes → 422 STK-FX-002
"""

from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlmodel import Session

from subtrack.auth.session_auth import AuthenticatedUser, get_current_user
from subtrack.core.database import get_session
from subtrack.models.currency import CURRENCY_NAMES, CURRENCY_SYMBOLS, CurrencyCode
from subtrack.services.preferences_service import PreferencesService

router = APIRouter()


class PreferencesUpdate(BaseModel):
    currency: str


class CurrencyInfo(BaseModel):
    code: str
    symbol: str
    name: str


class PreferencesResponse(BaseModel):
    currency: str
    supported_currencies: List[CurrencyInfo]


def _response(currency: str) -> PreferencesResponse:
    return PreferencesResponse(
        currency=currency,
        supported_currencies=[
            CurrencyInfo(code=code.value, symbol=CURRENCY_SYMBOLS[code], name=CURRENCY_NAMES[code])
            for code in CurrencyCode
        ],
    )


@router.get("", response_model=PreferencesResponse)
def get_preferences(
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_session),
):
    return _response(PreferencesService(db).get_preferences(user.user_id).currency)


@router.put("", response_model=PreferencesResponse)
def update_preferences(
    body: PreferencesUpdate,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_session),
):
    prefs = PreferencesService(db).set_display_currency(user.user_id, body.currency)
    return _response(prefs.currency)
