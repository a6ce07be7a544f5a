"""
Exception taxonomy for the settlement core.

Declined charges and other expected provider outcomes are NOT exceptions;
adapters return them as Decline results (see settlement.results).
"""

from typing import Dict, Optional


class SettlementError(Exception):
    """Base class for all settlement errors."""
    pass


class ConfigurationError(SettlementError):
    """Raised when required configuration is missing or invalid."""
    pass


class UnknownProcessor(ConfigurationError):
    """Raised when a processor name is not registered."""

    def __init__(self, name: str):
        super().__init__(f"Invalid processor type: {name}")
        self.name = name


class NoProcessorAvailable(SettlementError):
    """Raised when no candidate (nor the fallback) processor can be selected."""

    def __init__(self, message: str, skipped: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.skipped = skipped or {}


class ProcessorUnavailable(SettlementError):
    """Infrastructure failure talking to a provider (network, auth, outage)."""

    def __init__(self, processor: str, message: str, retryable: bool = True):
        super().__init__(f"[{processor}] {message}")
        self.processor = processor
        self.retryable = retryable


class ProcessorTimeout(ProcessorUnavailable):
    """A provider call exceeded its bounded timeout."""

    def __init__(self, processor: str, timeout: float):
        super().__init__(processor, f"request timed out after {timeout:.1f}s", retryable=True)
        self.timeout = timeout


class OperationNotSupported(SettlementError):
    """Raised by adapter operations a provider does not implement."""

    def __init__(self, processor: str, operation: str):
        super().__init__(f"{operation} is not supported by processor '{processor}'")
        self.processor = processor
        self.operation = operation


class LedgerWriteError(SettlementError):
    """Raised when a receipt cannot be persisted."""
    pass


class RunInProgress(SettlementError):
    """Raised when a billing run is requested while another holds the run lock."""
    pass


class AccountNotFound(SettlementError):
    """Raised when a billing account does not exist."""
    pass


class ReceiptNotFound(SettlementError):
    """Raised when a receipt does not exist."""
    pass


class PaymentValidationError(SettlementError):
    """Raised when submitted payment details or a correction request are not acceptable."""
    pass
