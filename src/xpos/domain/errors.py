class AppError(Exception):
    """Base app error."""

    code = "APP_ERROR"


class ValidationError(AppError):
    code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    code = "NOT_FOUND"


class ConflictError(AppError):
    code = "CONFLICT"


class AuthorizationError(AppError):
    code = "FORBIDDEN"


class InvalidStateError(AppError):
    code = "INVALID_STATE"


class CatalogUnavailableError(AppError):
    code = "CATALOG_UNAVAILABLE"


class ShiftNotFoundError(NotFoundError):
    pass


class DrawerNotFoundError(NotFoundError):
    pass


class CurrencyNotFoundError(NotFoundError):
    pass


class EmployeeNotFoundError(NotFoundError):
    pass


class TargetNotFoundError(NotFoundError):
    pass


class ClosingNotFoundError(NotFoundError):
    pass


class ShiftAlreadyActiveError(ConflictError):
    def __init__(self, message: str, active_shift_uuid: str | None = None):
        super().__init__(message)
        self.active_shift_uuid = active_shift_uuid


class TargetAlreadyActiveError(ConflictError):
    pass


class ShiftNotActiveError(ConflictError):
    pass


class InsufficientBalanceError(InvalidStateError):
    pass


class DrawerInactiveError(InvalidStateError):
    pass


class CurrencyInactiveError(InvalidStateError):
    pass


class ClosingNotPendingError(ConflictError):
    pass
