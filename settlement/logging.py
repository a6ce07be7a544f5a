import logging
import sys
from typing import Any

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger("settlement.audit")


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the settlement process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def log_action(
    action_type: str,
    message: str,
    level: str = "info",
    **kwargs: Any
) -> None:
    """Standardized audit logging for billing actions."""
    log_data = {
        "action": action_type,
        "message": message,
        **kwargs
    }

    if level == "error":
        logger.error(log_data)
    elif level == "warning":
        logger.warning(log_data)
    else:
        logger.info(log_data)
