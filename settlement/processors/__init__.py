"""Payment provider adapters."""

from .base import ProcessorAdapter
from .paynetworx_processor import PaynetworxProcessor
from .pyre_processor import PyreProcessor
from .stripe_processor import StripeProcessor

__all__ = [
    "ProcessorAdapter",
    "PaynetworxProcessor",
    "PyreProcessor",
    "StripeProcessor",
]
