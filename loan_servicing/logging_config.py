"""
Structured Logging Configuration Module

JSON records for loan servicing commands. Every command record names the
command (action), the loan it touched and the business date it ran on,
so that a replayed history can be traced back through the log.
"""

import logging
import json
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from .config import LoanServicingConfig, get_config

# Record attributes copied into the JSON entry when present
_STRUCTURED_FIELDS = ("action", "resource", "loan_id", "business_date", "correlation_id", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record; empty structured fields are left out"""

    def format(self, record):
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(
    config: Optional[LoanServicingConfig] = None,
    logger_name: str = "loan_servicing",
) -> logging.Logger:
    """
    Attach a single handler to the engine's logger.

    Args:
        config: Source of log_level, log_format and log_file; the global
            configuration when omitted
        logger_name: Logger to configure; child loggers of the engine
            ("loan_servicing.service", "loan_servicing.events", ...) inherit it

    Returns:
        Configured logger instance
    """
    config = config or get_config()
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(config.log_file) if config.log_file else logging.StreamHandler()
    if config.log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, config.log_level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "loan_servicing") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, resource: Optional[str] = None,
               loan_id: Optional[str] = None, business_date: Optional[date] = None,
               correlation_id: Optional[str] = None, extra: Optional[dict] = None):
    """
    Log a loan command with structured data.

    Args:
        logger: Logger instance
        level: Log level name (info, warning, error)
        message: Log message
        action: Command or business event, e.g. "loan.repayment"
        resource: Resource acted upon, e.g. "loan:loan-1"
        loan_id: Loan the command ran against
        business_date: Business date the command ran on
        correlation_id: Caller-supplied id tying related commands together
        extra: Command changes or error context
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)
    record.action = action
    record.resource = resource
    record.loan_id = loan_id
    record.business_date = business_date.isoformat() if business_date else None
    record.correlation_id = correlation_id
    record.extra = extra or None
    logger.handle(record)
