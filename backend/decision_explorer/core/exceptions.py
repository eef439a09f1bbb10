from typing import Any, Dict, Optional

from fastapi import status


class PathwayError(Exception):
    """Base exception for decision-pathway errors"""

    status_code = status.HTTP_400_BAD_REQUEST
    error = "Pathway error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.error, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(PathwayError):
    """Requested entity does not exist"""

    status_code = status.HTTP_404_NOT_FOUND
    error = "Not found"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} not found: {entity_id}", {"entity": entity, "id": str(entity_id)})


class ValidationFailure(PathwayError):
    """Input violates a pathway rule"""

    status_code = 422
    error = "Validation failed"


class ConflictError(PathwayError):
    """Write based on a stale pathway revision"""

    status_code = status.HTTP_409_CONFLICT
    error = "Conflict"


class InstanceStateError(PathwayError):
    """Operation not allowed in the instance's current status"""

    status_code = status.HTTP_409_CONFLICT
    error = "Invalid instance state"


class InvalidReferenceError(PathwayError):
    """Database integrity violation"""

    status_code = status.HTTP_409_CONFLICT
    error = "Invalid reference"


class TreeIntegrityError(PathwayError):
    """Stored node structure cannot be assembled into a tree"""

    status_code = 422
    error = "Invalid pathway tree"


class TreeSaveError(PathwayError):
    """Editor tree save aborted on a node write"""

    status_code = 422
    error = "Tree save failed"


__all__ = [
    "PathwayError",
    "NotFoundError",
    "ValidationFailure",
    "ConflictError",
    "InstanceStateError",
    "InvalidReferenceError",
    "TreeIntegrityError",
    "TreeSaveError",
]
