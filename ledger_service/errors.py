class LedgerError(Exception):
    status_code = 400
    kind = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    status_code = 422
    kind = "validation_error"


class NotFoundError(LedgerError):
    status_code = 404
    kind = "not_found"


class ForbiddenError(LedgerError):
    status_code = 403
    kind = "forbidden"


class InvalidTransitionError(LedgerError):
    status_code = 409
    kind = "invalid_transition"


class ConflictError(LedgerError):
    """The row changed between request and commit; re-pull and retry."""
    status_code = 409
    kind = "conflict"


class StorageFailure(LedgerError):
    status_code = 503
    kind = "storage_failure"
