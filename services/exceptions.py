"""
Typed failures raised by the payment, ledger and holdings services.

Callers map these to responses; storage-layer exceptions never escape a
service unwrapped.
"""

from typing import Any, Dict, Optional


class PaymentDomainError(Exception):
    """Base class for every failure surfaced by the core services"""

    code = "domain_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class NotFoundError(PaymentDomainError):
    """Entity absent"""
    code = "not_found"


class InvalidStateError(PaymentDomainError):
    """Operation not valid for the entity's current lifecycle state"""
    code = "invalid_state"

    def __init__(self, message: str, current_status: Optional[str] = None, **details: Any):
        super().__init__(message, current_status=current_status, **details)
        self.current_status = current_status


class PaymentWindowExpiredError(PaymentDomainError):
    """Payment window lapsed; the order has been durably marked expired"""
    code = "expired"


class InvalidArgumentError(PaymentDomainError, ValueError):
    """Malformed input"""
    code = "invalid_argument"


class InsufficientPositionError(PaymentDomainError):
    """Sell exceeds the units held"""
    code = "insufficient_position"


class ConflictError(PaymentDomainError):
    """A concurrent write won the race"""
    code = "conflict"


class StorageError(PaymentDomainError):
    """Unexpected storage failure, wrapped so callers never see a raw driver error"""
    code = "storage_error"
