"""
Error Module

Typed application errors. Each carries an error code and HTTP status so the
API layer can render actionable messages without leaking internals.
"""

from typing import Any, Dict, Optional


class AppError(Exception):
    """Base class for all expected application errors"""

    code = "APP_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        result = {"code": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class NotFoundError(AppError):
    """Entity id does not resolve"""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: Optional[str] = None):
        if entity_id:
            message = f"{entity} with ID '{entity_id}' not found"
        else:
            message = f"{entity} not found"
        super().__init__(message, {"entity": entity, "id": entity_id} if entity_id else {"entity": entity})
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(AppError, ValueError):
    """Malformed input or a business rule violation the user can correct"""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, {"field": field} if field else None)
        self.field = field


class UnauthorizedError(AppError):
    code = "UNAUTHORIZED"
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class ForbiddenError(AppError):
    """Missing permission, or a transition attempted from the wrong status"""

    code = "FORBIDDEN"
    status_code = 403

    def __init__(self, message: str = "Access denied", required_permission: Optional[str] = None):
        super().__init__(
            message,
            {"required_permission": required_permission} if required_permission else None
        )
        self.required_permission = required_permission


class ConflictError(AppError):
    code = "CONFLICT"
    status_code = 409


class ServiceError(AppError):
    """An external collaborator (email, storage) is unavailable"""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message, {"service": service} if service else None)
        self.service = service


class DatabaseError(AppError):
    code = "DATABASE_ERROR"
    status_code = 500


def to_error_response(error: Exception) -> Dict[str, Any]:
    """Convert any exception into an API error payload"""
    if isinstance(error, AppError):
        return {"success": False, "error": error.to_dict()}
    return {
        "success": False,
        "error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}
    }
