"""Exception taxonomy shared by the ledger layers."""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class InvalidAmount(BusinessRuleViolation, ValueError):
    """Raised for malformed money input or a non-positive payment."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced caterer, sale, or receipt is unknown."""


class CatererNotFound(MissingReferenceError):
    """Raised when a caterer id has no row in the workbook."""


class SaleNotFound(MissingReferenceError):
    """Raised when a sale id has no row in the workbook."""


class UnsupportedMedia(BusinessRuleViolation):
    """Raised when a receipt upload has the wrong type or is too large."""

    def __init__(self, message: str, *, too_large: bool = False) -> None:
        super().__init__(message)
        self.too_large = too_large


class PaymentExceedsBalance(BusinessRuleViolation):
    """Raised when a payment is larger than the bill's outstanding amount."""


class BillAlreadySettled(BusinessRuleViolation):
    """Raised when a payment or status change targets a fully paid bill."""


class ReferentialIntegrityError(BusinessRuleViolation):
    """Raised when a delete would orphan dependent records."""


class ConcurrentUpdateConflict(BusinessRuleViolation):
    """Raised when a caterer stays locked by another writer past the timeout."""


class StoreUnavailable(RuntimeError):
    """Raised when the workbook cannot be read from or written to disk."""


# Failures a caller may retry unchanged; the ledger itself never retries.
RETRYABLE_ERRORS = (ConcurrentUpdateConflict, StoreUnavailable)


__all__ = [
    "BusinessRuleViolation",
    "InvalidAmount",
    "MissingReferenceError",
    "CatererNotFound",
    "SaleNotFound",
    "UnsupportedMedia",
    "PaymentExceedsBalance",
    "BillAlreadySettled",
    "ReferentialIntegrityError",
    "ConcurrentUpdateConflict",
    "StoreUnavailable",
    "RETRYABLE_ERRORS",
]
