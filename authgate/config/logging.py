"""
Logging configuration for the gateway.

Everything goes through ``logging.config.dictConfig``. Console output is
plain text or JSON (python-json-logger); a rotating file handler is added
when a log file is configured. The ``authgate`` and ``security.audit``
loggers get their own levels and do not propagate to the root logger.
"""

import logging
import logging.config
import sys
from typing import Any, Dict, List, Optional

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(lineno)d - %(message)s"
JSON_FIELDS = "%(asctime)s %(name)s %(levelname)s %(module)s %(lineno)d %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

AUDIT_LOGGER = "security.audit"
ACCESS_LOGGER = "authgate.access"


def _formatters() -> Dict[str, Dict[str, Any]]:
    return {
        "text": {"format": TEXT_FORMAT, "datefmt": DATE_FORMAT},
        "json": {"()": "pythonjsonlogger.json.JsonFormatter", "format": JSON_FIELDS},
    }


def _handlers(level: str, formatter: str, log_file: Optional[str]) -> Dict[str, Dict[str, Any]]:
    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": formatter,
            "stream": sys.stdout,
        }
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": formatter,
            "filename": log_file,
            "maxBytes": LOG_FILE_MAX_BYTES,
            "backupCount": LOG_FILE_BACKUPS,
            "encoding": "utf8",
        }
    return handlers


def _isolated(level: str, handlers: List[str]) -> Dict[str, Any]:
    return {"level": level, "handlers": handlers, "propagate": False}


def get_logging_config(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    enable_access_log: bool = True,
    audit_log_level: str = "INFO",
) -> Dict[str, Any]:
    """
    Build the dictConfig mapping for the gateway.

    Args:
        log_level: Level for the root, uvicorn and ``authgate`` loggers
        log_format: ``json`` or ``text``
        log_file: Also write to this file, rotated at 10MB
        enable_access_log: Keep uvicorn's own access log
        audit_log_level: Level for ``security.audit``
    """
    formatter = "json" if log_format == "json" else "text"
    handlers = _handlers(log_level, formatter, log_file)
    names = list(handlers)

    loggers = {
        "": {"level": log_level, "handlers": names},
        "uvicorn": _isolated(log_level, names),
        "uvicorn.error": _isolated(log_level, names),
        "authgate": _isolated(log_level, names),
        AUDIT_LOGGER: _isolated(audit_log_level, names),
    }
    if enable_access_log:
        loggers["uvicorn.access"] = _isolated("INFO", names)

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": _formatters(),
        "handlers": handlers,
        "loggers": loggers,
    }


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "text",
    log_file: Optional[str] = None,
    enable_access_log: bool = True,
    audit_log_level: str = "INFO",
) -> None:
    logging.config.dictConfig(
        get_logging_config(
            log_level=log_level.upper(),
            log_format=log_format,
            log_file=log_file,
            enable_access_log=enable_access_log,
            audit_log_level=audit_log_level.upper(),
        )
    )


class StructuredLogger:
    """
    Request and gateway-decision events with fields passed through ``extra``,
    so the JSON formatter emits them as top-level keys.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def log_request(
        self,
        method: str,
        path: str,
        status_code: int,
        response_time: float,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        **fields
    ):
        """
        Log one handled request.

        5xx responses log at ERROR, 4xx at WARNING, everything else at INFO.
        ``None`` values in ``fields`` are dropped.
        """
        event = {
            "event": "http_request",
            "method": method,
            "path": path,
            "status_code": status_code,
            "response_time_ms": response_time,
            "client_ip": client_ip,
            "user_agent": user_agent,
            **fields,
        }
        extra = {k: v for k, v in event.items() if v is not None}

        if status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        self.logger.log(level, f"{method} {path} {status_code}", extra=extra)

    def log_decision(self, method: str, path: str, kind: str, reason: str, principal: Optional[str] = None):
        extra = {
            "event": "gateway_reject",
            "method": method,
            "path": path,
            "kind": kind,
            "reason": reason,
        }
        if principal:
            extra["principal"] = principal
        self.logger.info(f"Rejected {method} {path}: {reason}", extra=extra)


gateway_logger = StructuredLogger(ACCESS_LOGGER)
