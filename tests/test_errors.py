"""
Tests for typed application errors and the API error envelope
"""

from microloans.errors import (
    AppError, ConflictError, DatabaseError, ForbiddenError, NotFoundError, ServiceError,
    UnauthorizedError, ValidationError, to_error_response,
)


class TestErrorTypes:
    def test_not_found_message(self):
        error = NotFoundError("Loan", "loan-9")
        assert error.message == "Loan with ID 'loan-9' not found"
        assert error.status_code == 404
        assert error.details == {"entity": "Loan", "id": "loan-9"}

    def test_not_found_without_id(self):
        assert NotFoundError("Settings").message == "Settings not found"

    def test_validation_error_is_value_error(self):
        error = ValidationError("Loan amount must be positive", field="loan_amount")
        assert isinstance(error, ValueError)
        assert error.to_dict() == {
            "code": "VALIDATION_ERROR",
            "message": "Loan amount must be positive",
            "details": {"field": "loan_amount"},
        }

    def test_forbidden_carries_permission(self):
        error = ForbiddenError("Permission denied", required_permission="loans.approve")
        assert error.details == {"required_permission": "loans.approve"}

    def test_status_codes(self):
        assert UnauthorizedError().status_code == 401
        assert ConflictError("busy").status_code == 409
        assert ServiceError("down", service="email").status_code == 503
        assert DatabaseError("locked").status_code == 500


class TestErrorResponse:
    """Test conversion into the API payload"""

    def test_app_error(self):
        response = to_error_response(ConflictError("Loan loan-1 was modified concurrently; please retry"))
        assert response == {
            "success": False,
            "error": {"code": "CONFLICT", "message": "Loan loan-1 was modified concurrently; please retry"},
        }

    def test_unexpected_error_hides_internals(self):
        response = to_error_response(KeyError("secret_column"))
        assert response["error"] == {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}
        assert "secret_column" not in str(response)

    def test_subclass_defaults(self):
        assert AppError("x").to_dict() == {"code": "APP_ERROR", "message": "x"}
