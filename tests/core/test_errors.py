"""Tests for supamanager.core.errors: typed hierarchy and payloads."""

from __future__ import annotations

import pytest

from supamanager.core.errors import (
    ErrorCategory,
    ImmutableFieldError,
    InvalidTransitionError,
    NotFoundError,
    ProvisioningError,
    QuotaExceededError,
    RuntimeOperationError,
    RuntimeUnavailableError,
    ServiceNotFoundError,
    SupaManagerError,
    ValidationError,
    error_payload,
    format_amount,
    is_retryable,
)


class TestCategories:
    @pytest.mark.parametrize(
        "error,category",
        [
            (NotFoundError("x"), ErrorCategory.NOT_FOUND),
            (RuntimeUnavailableError("x"), ErrorCategory.RUNTIME),
            (QuotaExceededError("storage_size", current=2, limit=1), ErrorCategory.QUOTA),
            (InvalidTransitionError("PAUSED", "PROVISIONED"), ErrorCategory.VALIDATION),
        ],
    )
    def test_default_category(self, error, category):
        assert error.category == category

    def test_only_unavailable_is_retryable(self):
        assert is_retryable(RuntimeUnavailableError("down"))
        assert not is_retryable(RuntimeOperationError("bad image"))
        assert not is_retryable(ValueError("plain"))

    def test_service_not_found_is_not_found(self):
        err = ServiceNotFoundError("p1", "auth")
        assert isinstance(err, NotFoundError)
        assert err.context.service == "auth"
        assert err.context.project_id == "p1"


class TestContext:
    def test_with_context_known_and_metadata(self):
        err = NotFoundError("missing").with_context(project_id="p1", ports=[5433])
        data = err.to_dict()
        assert data["context"] == {"project_id": "p1", "ports": [5433]}
        assert data["category"] == "NOT_FOUND"
        assert data["retryable"] is False

    def test_cause_is_chained(self):
        cause = OSError("disk")
        err = ProvisioningError("p1", "create_volume", cause)
        assert err.__cause__ is cause
        assert "create_volume" in err.message
        assert err.to_dict()["cause"] == "disk"


class TestSpecificErrors:
    def test_quota_exceeded_carries_numbers(self):
        err = QuotaExceededError("storage_size", current=1_010_000.0, limit=1_000_000)
        assert err.resource == "storage_size"
        assert "1010000" in err.message
        assert "1000000" in err.message

    def test_immutable_fields_sorted(self):
        err = ImmutableFieldError("p1", ["region", "organization_id"])
        assert err.fields == ["organization_id", "region"]
        assert isinstance(err, ValidationError)

    def test_invalid_transition_is_value_error(self):
        with pytest.raises(ValueError):
            raise InvalidTransitionError("DELETING", "PAUSE")


def test_error_payload_untyped():
    payload = error_payload(RuntimeError("boom"))
    assert payload["error_type"] == "RuntimeError"
    assert payload["message"] == "boom"


def test_error_payload_typed():
    assert error_payload(SupaManagerError("x"))["category"] == "INTERNAL"


@pytest.mark.parametrize("value,expected", [(1_000_000.0, "1000000"), (0.5, "0.5"), (3, "3")])
def test_format_amount(value, expected):
    assert format_amount(value) == expected
