"""Unit tests for the exception hierarchy."""

import pytest

from homesync.core.exceptions import (
    AuthorizationError,
    CacheError,
    ConflictError,
    DuplicateResourceError,
    ExternalServiceError,
    HomeSyncError,
    IndexConvergenceError,
    InvalidInputError,
    LockTimeoutError,
    NotFoundError,
    ResourceNotFoundError,
    ValidationError,
)

pytestmark = pytest.mark.unit


class TestHomeSyncError:
    def test_defaults(self):
        error = HomeSyncError()
        assert error.message == "An unexpected error occurred"
        assert error.error_code == "INTERNAL_ERROR"
        assert error.status_code == 500
        assert error.details == {}

    def test_to_dict_omits_empty_details(self):
        assert HomeSyncError("boom").to_dict() == {"code": "INTERNAL_ERROR", "message": "boom"}

    def test_to_dict_includes_details(self):
        error = HomeSyncError("boom", details={"home_id": "h1"})
        assert error.to_dict()["details"] == {"home_id": "h1"}

    def test_overrides(self):
        error = ValidationError("too many", error_code="HOME_LIMIT_REACHED", status_code=422)
        assert error.error_code == "HOME_LIMIT_REACHED"
        assert error.status_code == 422


class TestHierarchy:
    @pytest.mark.parametrize(
        ("exc_class", "parent"),
        [
            (InvalidInputError, ValidationError),
            (ResourceNotFoundError, NotFoundError),
            (DuplicateResourceError, ConflictError),
            (LockTimeoutError, ConflictError),
            (IndexConvergenceError, CacheError),
            (CacheError, ExternalServiceError),
            (AuthorizationError, HomeSyncError),
        ],
    )
    def test_subclassing(self, exc_class, parent):
        assert issubclass(exc_class, parent)


class TestDomainErrors:
    def test_invalid_input_details(self):
        error = InvalidInputError("bad", field="unique_id", value="", constraint="non-empty")
        assert error.details == {"field": "unique_id", "value": "", "constraint": "non-empty"}
        assert error.status_code == 400

    def test_invalid_input_truncates_value(self):
        error = InvalidInputError(field="name", value="x" * 500)
        assert len(error.details["value"]) == 100

    def test_authorization_details(self):
        error = AuthorizationError(
            resource_type="home", resource_ids=["h1", "h2"], organization_id="org-1"
        )
        assert error.status_code == 403
        assert error.error_code == "ACCESS_DENIED"
        assert error.details == {
            "resource_type": "home",
            "resource_ids": ["h1", "h2"],
            "organization_id": "org-1",
        }

    def test_resource_not_found_message(self):
        error = ResourceNotFoundError("home", "h1")
        assert error.message == "Home with id 'h1' not found"
        assert error.details == {"resource_type": "home", "resource_id": "h1"}

    def test_duplicate_resource_message(self):
        error = DuplicateResourceError("device", field="unique_id", value="dev-1")
        assert error.message == "Device with unique_id 'dev-1' already exists"
        assert error.status_code == 409

    def test_lock_timeout_details(self):
        error = LockTimeoutError(lock_keys=["home:h1"], timeout_seconds=0.5)
        assert error.details == {"lock_keys": ["home:h1"], "timeout_seconds": 0.5}
        assert error.error_code == "LOCK_TIMEOUT"

    def test_index_convergence_details(self):
        cause = OSError("connection reset")
        error = IndexConvergenceError(
            "SADD failed",
            operation="add_member",
            key="hsync:h-user-id:u1:homes-id",
            original_error=cause,
        )
        assert error.original_error is cause
        assert error.details == {
            "service": "index_cache",
            "operation": "add_member",
            "key": "hsync:h-user-id:u1:homes-id",
            "original_error_type": "OSError",
        }
        assert error.status_code == 503
