"""
Tests for core exception classes.
"""

import pytest

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)


class TestBaseApplicationError:
    """Tests for BaseApplicationError."""

    def test_default_error_code(self):
        """Should fall back to the class error code."""
        error = BaseApplicationError("Something failed")

        assert error.error_code == "APPLICATION_ERROR"
        assert error.details == {}

    def test_str_includes_code(self):
        """Should prefix the message with the error code."""
        error = ValidationError("Hourly rate must be positive", error_code="INVALID_RATE")

        assert str(error) == "[INVALID_RATE] Hourly rate must be positive"

    def test_to_dict_omits_empty_details(self):
        """Should only include details when present."""
        assert NotFoundError("Cycle missing").to_dict() == {
            "error": "Cycle missing",
            "error_code": "NOT_FOUND",
        }

    def test_to_dict_with_details(self):
        """Should carry the details dict."""
        error = ConflictError("Cycle already advanced", details={"cycle_id": "abc"})

        assert error.to_dict()["details"] == {"cycle_id": "abc"}

    @pytest.mark.parametrize(
        "exc_class, code",
        [
            (ValidationError, "VALIDATION_ERROR"),
            (NotFoundError, "NOT_FOUND"),
            (ConflictError, "CONFLICT"),
            (ExternalServiceError, "EXTERNAL_SERVICE_ERROR"),
        ],
    )
    def test_subclass_codes(self, exc_class, code):
        """Should give each subclass its own default code."""
        error = exc_class("failed")

        assert isinstance(error, BaseApplicationError)
        assert error.error_code == code

    def test_external_errors_not_retryable_by_default(self):
        """Should default is_retryable to False."""
        assert ExternalServiceError("down").is_retryable is False
