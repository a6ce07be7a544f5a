"""
Normalized processor results.

Every adapter operation answers with one of these instead of a raw provider
payload. Control flow in the engine only ever looks at the tag; the raw
provider response rides along in ``data`` so it can be stored on receipts.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union


@dataclass(frozen=True)
class Success:
    """The provider accepted the operation."""

    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    transaction_id: Optional[str] = None
    status: str = "success"

    success = True

    @property
    def error_code(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class Decline:
    """The provider refused the operation (declined card, invalid token, ...)."""

    message: str
    code: str = "DECLINED"
    data: Dict[str, Any] = field(default_factory=dict)
    transaction_id: Optional[str] = None

    success = False

    @property
    def error_code(self) -> Optional[str]:
        return self.code


@dataclass(frozen=True)
class InfrastructureError:
    """The operation could not complete because of an infrastructure fault."""

    message: str
    code: str = "PROCESSOR_UNAVAILABLE"
    retryable: bool = True
    cause: Optional[BaseException] = None

    success = False

    @property
    def data(self) -> Dict[str, Any]:
        return {"error": self.message}

    @property
    def error_code(self) -> Optional[str]:
        return self.code


ProcessorResult = Union[Success, Decline]
ChargeOutcome = Union[Success, Decline, InfrastructureError]


def as_dict(result: ChargeOutcome) -> Dict[str, Any]:
    """Uniform ``{success, message, data, errorCode}`` view of a result."""
    payload: Dict[str, Any] = {
        "success": result.success,
        "message": result.message,
        "data": result.data,
    }
    if result.error_code:
        payload["errorCode"] = result.error_code
    return payload
