"""
Tests for the error registry and SubtrackError.
"""

import pytest

from subtrack.core import errors
from subtrack.core.errors import SubtrackError
from subtrack.core.errors.registry import ErrorRegistry, RegistryValidationError, error_registry

RAISED_CODES = {
    "STK-FX-001", "STK-FX-002", "STK-VAL-001", "STK-CAT-001", "STK-CAT-002",
    "STK-CAT-003", "STK-SUB-001", "STK-ACC-001", "STK-ACC-002", "STK-ACC-003",
    "STK-AUTH-001", "STK-WHK-001",
}


def test_every_raised_code_is_registered():
    assert RAISED_CODES <= set(error_registry.all_codes())


def test_http_statuses():
    assert error_registry.lookup("STK-CAT-001").http_status == 409
    assert error_registry.lookup("STK-ACC-003").http_status == 403
    assert error_registry.lookup("STK-WHK-001").http_status == 401


def test_invalid_code_format_rejected():
    with pytest.raises(ValueError):
        SubtrackError("FX-1")


def test_typed_errors_carry_context():
    exc = errors.RateUnavailable("EUR", "INR")
    assert exc.code == "STK-FX-001"
    assert exc.context == {"base": "EUR", "target": "INR"}

    dup = errors.DuplicateCategoryName("Games")
    assert isinstance(dup, errors.ValidationFailed)
    assert dup.field == "name"


def test_registry_rejects_domain_mismatch(tmp_path):
    path = tmp_path / "registry.yaml"
    path.write_text(
        "schema_version: 1\n"
        "errors:\n"
        "  - code: STK-FX-009\n"
        "    domain: CAT\n"
        "    title: Broken\n"
        "    severity: INFO\n"
        "    retryable: false\n"
        "    user_action_required: false\n"
        "    http_status: 400\n"
        "    safe_message: broken\n"
        "    remediation: []\n"
    )
    with pytest.raises(RegistryValidationError):
        ErrorRegistry().load(str(path))


def test_unknown_code_lookup():
    with pytest.raises(KeyError):
        error_registry.lookup("STK-SYS-999")


VALID_ENTRY = (
    "  - code: STK-FX-001\n"
    "    domain: FX\n"
    "    title: Rate unavailable\n"
    "    severity: WARN\n"
    "    retryable: true\n"
    "    user_action_required: false\n"
    "    http_status: 503\n"
    "    safe_message: rates unavailable\n"
    "    remediation: []\n"
)


def test_every_error_class_declares_a_registered_code():
    assert errors.declared_codes() == RAISED_CODES
    assert errors.declared_codes() <= set(error_registry.all_codes())


def test_registry_missing_a_declared_code_fails_to_load(tmp_path):
    path = tmp_path / "registry.yaml"
    path.write_text("schema_version: 1\nerrors:\n" + VALID_ENTRY)

    with pytest.raises(RegistryValidationError) as exc:
        ErrorRegistry().load(str(path))
    assert "STK-WHK-001" in str(exc.value)


def test_registry_load_with_explicit_required_codes(tmp_path):
    path = tmp_path / "registry.yaml"
    path.write_text("schema_version: 1\nerrors:\n" + VALID_ENTRY)

    registry = ErrorRegistry()
    registry.load(str(path), required_codes={"STK-FX-001"})
    assert registry.all_codes() == ["STK-FX-001"]


def test_subclass_code_used_when_raised():
    assert errors.AnalyticsLocked("u1", "free").code == errors.AnalyticsLocked.CODE
    assert errors.DuplicateCategoryName("Games").code == "STK-CAT-001"
    assert errors.ValidationFailed("price", "bad").code == "STK-VAL-001"
