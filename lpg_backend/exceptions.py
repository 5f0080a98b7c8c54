"""
Typed exceptions for the LPG backend.

Every error carries a machine-readable ``code`` and the HTTP ``status_code``
the API answers with. Domain modules raise these; ``main`` renders them as
``{"detail": message, "code": code}``.

    LpgError
    +-- UnauthorizedError
    +-- ForbiddenError
    +-- InvalidRequestError
    |   +-- InsufficientFundsError
    |   +-- InsufficientStockError
    +-- NotFoundError
    +-- AlreadyProcessedError
    +-- AssetLockError
    |   +-- AssetOwnershipError
    +-- HandoverRecordError
    +-- ProcedureFailedError
    +-- ConcurrencyConflictError
    +-- StorageError
    +-- ReconciliationError
"""


class LpgError(Exception):
    """Base exception for all domain errors."""

    code: str = "LPG_ERROR"
    status_code: int = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UnauthorizedError(LpgError):
    code: str = "UNAUTHORIZED"
    status_code: int = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class ForbiddenError(LpgError):
    code: str = "FORBIDDEN"
    status_code: int = 403


class InvalidRequestError(LpgError):
    code: str = "VALIDATION_ERROR"
    status_code: int = 400


class InsufficientFundsError(InvalidRequestError):
    code: str = "INSUFFICIENT_FUNDS"

    def __init__(self, requested, available):
        self.requested = requested
        self.available = available
        super().__init__(f"Insufficient Funds. Wallet Balance: Rs {available}")


class InsufficientStockError(InvalidRequestError):
    """Driver does not carry enough full cylinders for a delivery."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        if available == 0:
            self.code = "NO_STOCK"
            message = "No cylinders found on truck! Cannot complete delivery."
        else:
            message = f"Insufficient stock! You have {available}, but order needs {required}."
        super().__init__(message)


class NotFoundError(LpgError):
    code: str = "NOT_FOUND"
    status_code: int = 404


class AlreadyProcessedError(LpgError):
    code: str = "ALREADY_PROCESSED"
    status_code: int = 409

    def __init__(self, message: str = "Transaction already processed"):
        super().__init__(message)


class AssetLockError(LpgError):
    code: str = "ASSET_LOCK_FAILED"
    status_code: int = 409


class AssetOwnershipError(AssetLockError):
    code: str = "ASSET_OWNERSHIP_MISMATCH"

    def __init__(self, expected: int, locked: int):
        self.expected = expected
        self.locked = locked
        super().__init__("Ownership Validation Failed: You do not possess all selected cylinders.")


class HandoverRecordError(LpgError):
    code: str = "HANDOVER_RECORD_FAILED"
    status_code: int = 500


class ProcedureFailedError(LpgError):
    """A unit-of-work procedure reported ``success=False``; message is passed through."""

    code: str = "PROCEDURE_FAILED"
    status_code: int = 409

    def __init__(self, procedure: str, message: str):
        self.procedure = procedure
        super().__init__(message)


class ConcurrencyConflictError(LpgError):
    code: str = "CONCURRENT_UPDATE"
    status_code: int = 409

    def __init__(self, entity_type: str, entity_id):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} {entity_id} was modified by another request, please reload and retry"
        )


class StorageError(LpgError):
    code: str = "STORAGE_ERROR"
    status_code: int = 502


class ReconciliationError(LpgError):
    code: str = "RECONCILIATION_FAILED"
    status_code: int = 503
