"""
Error taxonomy shared by the store, the command service and the HTTP layer.
Each class carries the HTTP status the API answers with.
"""


class MDMError(Exception):
    """Base class for errors surfaced to API clients"""
    status_code = 500
    event = "mdm.error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MDMError):
    """Raised when input is malformed or outside an allow-list"""
    status_code = 400
    event = "validation.rejected"


class AuthorizationError(MDMError):
    """Raised when a bearer token or admin secret is missing or wrong"""
    status_code = 401
    event = "auth.rejected"


class NotFoundError(MDMError):
    """Raised when a device or command id does not exist"""
    status_code = 404
    event = "lookup.not_found"


class ConflictError(MDMError):
    """Raised when a unique device identity is already taken"""
    status_code = 409
    event = "store.conflict"


class StoreError(MDMError):
    """Raised when the persistence layer fails"""
    status_code = 500
    event = "store.error"
