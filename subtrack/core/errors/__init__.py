"""
Error code system.

SubtrackError is the base exception for all structured errors.
Raise it (or one of the typed subclasses below) with an error code from the
registry, and the error middleware will produce a structured JSON response.

Usage:
    from subtrack.core.errors import RateUnavailable
    raise RateUnavailable("EUR", "INR")
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^STK-[A-Z]{2,6}-\d{3}$")


class SubtrackError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "STK-FX-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
    """

    def __init__(
        self,
        code: str,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


# ── Currency ──────────────────────────────────────────────────────────

class UnknownCurrency(SubtrackError):
    CODE = "STK-FX-002"

    def __init__(self, code: str) -> None:
        super().__init__(
            self.CODE,
            detail=f"unsupported currency code {code!r}",
            context={"currency": code},
        )
        self.field = "currency"
        self.currency = code


class RateUnavailable(SubtrackError):
    """The rate table for *base* has no entry for *target*."""

    CODE = "STK-FX-001"

    def __init__(self, base: str, target: str) -> None:
        super().__init__(
            self.CODE,
            detail=f"no exchange rate from {base} to {target}",
            context={"base": base, "target": target},
        )
        self.base = base
        self.target = target


# ── Validation ────────────────────────────────────────────────────────

class ValidationFailed(SubtrackError):
    """Field-level validation error. Never mutates state."""

    CODE = "STK-VAL-001"

    def __init__(self, field: str, message: str, code: str | None = None) -> None:
        super().__init__(code or self.CODE, detail=message, context={"field": field})
        self.field = field
        self.message = message


class DuplicateCategoryName(ValidationFailed):
    CODE = "STK-CAT-001"

    def __init__(self, name: str) -> None:
        super().__init__("name", f"A category named {name!r} already exists", code=self.CODE)
        self.name = name


# ── Resources ─────────────────────────────────────────────────────────

class CategoryImmutable(SubtrackError):
    CODE = "STK-CAT-002"

    def __init__(self, category_id: str) -> None:
        super().__init__(
            self.CODE,
            detail=f"default category {category_id} cannot be modified",
            context={"category_id": category_id},
        )


class CategoryNotFound(SubtrackError):
    CODE = "STK-CAT-003"

    def __init__(self, category_id: str) -> None:
        super().__init__(
            self.CODE,
            detail=f"category {category_id} not found",
            context={"category_id": category_id},
        )


class SubscriptionNotFound(SubtrackError):
    CODE = "STK-SUB-001"

    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            self.CODE,
            detail=f"subscription {subscription_id} not found",
            context={"subscription_id": subscription_id},
        )


# ── Access / entitlement ──────────────────────────────────────────────

class ProvisioningFailed(SubtrackError):
    CODE = "STK-ACC-001"

    def __init__(self, user_id: str, attempts: int, cause: Exception | None = None) -> None:
        super().__init__(
            self.CODE,
            detail=f"could not write access record after {attempts} attempts: {cause}",
            context={"user_id": user_id, "attempts": attempts},
        )
        self.user_id = user_id


class ProvisioningVerificationFailed(SubtrackError):
    CODE = "STK-ACC-002"

    def __init__(self, user_id: str, attempts: int) -> None:
        super().__init__(
            self.CODE,
            detail=f"access record not readable after write ({attempts} reads)",
            context={"user_id": user_id, "attempts": attempts},
        )
        self.user_id = user_id


class AnalyticsLocked(SubtrackError):
    CODE = "STK-ACC-003"

    def __init__(self, user_id: str, level: str) -> None:
        super().__init__(
            self.CODE,
            detail=f"analytics locked for access level {level}",
            context={"user_id": user_id, "access_level": level},
        )


class AuthenticationRequired(SubtrackError):
    CODE = "STK-AUTH-001"

    def __init__(self, detail: str = "missing or invalid session") -> None:
        super().__init__(self.CODE, detail=detail)


class InvalidWebhookSignature(SubtrackError):
    CODE = "STK-WHK-001"

    def __init__(self, reason: str) -> None:
        super().__init__(self.CODE, detail=reason)
        self.reason = reason


def declared_codes() -> set[str]:
    """The CODE of every SubtrackError subclass currently defined."""
    codes: set[str] = set()
    pending = list(SubtrackError.__subclasses__())
    while pending:
        cls = pending.pop()
        pending.extend(cls.__subclasses__())
        code = getattr(cls, "CODE", None)
        if code:
            codes.add(code)
    return codes
