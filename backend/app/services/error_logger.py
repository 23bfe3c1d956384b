"""Centralised error logging: exceptions go to the Python logger and the error_logs table.

Usage:
    from app.services.error_logger import log_error
    try:
        ...
    except CommissionError as e:
        await log_error(e, db=db, task_name="create_disbursement", workflow_id=wf)

The HTTP middleware and the Celery activities use ``log_error_standalone``,
which opens its own session so a failed request transaction is not reused.
"""

from __future__ import annotations

import logging
import traceback as tb_module
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.error_log import ErrorLog, ErrorSeverity

logger = logging.getLogger("commission.errors")


def _sanitize_text(value: object, *, max_len: Optional[int] = None) -> str:
    """Normalize control characters before persisting text."""
    text = str(value)
    text = "".join(ch if (ch >= " " or ch in "\n\r\t") else " " for ch in text)
    if max_len is not None:
        return text[:max_len]
    return text


def _clip(value: Optional[str], max_len: int) -> Optional[str]:
    return _sanitize_text(value, max_len=max_len) if value else None


def severity_for(exc: Exception) -> ErrorSeverity:
    category = getattr(exc, "category", None)
    if category == "validation":
        return ErrorSeverity.WARNING
    if category == "state":
        return ErrorSeverity.INFO
    return ErrorSeverity.ERROR


async def log_error(
    exc: Exception,
    *,
    db: Optional[AsyncSession] = None,
    severity: Optional[ErrorSeverity] = None,
    module: Optional[str] = None,
    function_name: Optional[str] = None,
    line_number: Optional[int] = None,
    request_method: Optional[str] = None,
    request_path: Optional[str] = None,
    request_body: Optional[str] = None,
    status_code: Optional[int] = None,
    response_time_ms: Optional[float] = None,
    ip_address: Optional[str] = None,
    task_name: Optional[str] = None,
    workflow_id: Optional[str] = None,
) -> Optional[ErrorLog]:
    """Log an exception to the database and Python logger.

    Without a db session only the Python logger is written.  Returns the
    created ErrorLog row, or None when the DB write was skipped or failed.
    """
    severity = severity or severity_for(exc)
    error_type = type(exc).__name__
    category = getattr(exc, "category", None)
    message = _sanitize_text(exc, max_len=2000)
    traceback_str = _sanitize_text(
        "".join(tb_module.format_exception(type(exc), exc, exc.__traceback__)),
        max_len=10000,
    )

    # Auto-detect module/function/line from traceback if not provided
    if exc.__traceback__ and not module:
        frame = exc.__traceback__
        while frame.tb_next:
            frame = frame.tb_next
        module = frame.tb_frame.f_code.co_filename
        function_name = function_name or frame.tb_frame.f_code.co_name
        line_number = line_number or frame.tb_lineno

    where = task_name or (f"{request_method or '?'} {request_path}" if request_path else "-")
    if severity in (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL):
        logger.error("[%s] %s: %s (%s, workflow=%s)", severity.value.upper(), error_type, message,
                     where, workflow_id, exc_info=exc)
    else:
        logger.warning("[%s] %s: %s (%s, workflow=%s)", severity.value.upper(), error_type, message,
                       where, workflow_id)

    if db is None:
        return None

    try:
        entry = ErrorLog(
            severity=severity,
            error_type=error_type,
            category=category,
            message=message,
            traceback=traceback_str,
            module=_clip(module, 300),
            function_name=_clip(function_name, 200),
            line_number=line_number,
            request_method=request_method,
            request_path=_clip(request_path, 500),
            request_body=_clip(request_body, 5000),
            status_code=status_code,
            response_time_ms=response_time_ms,
            ip_address=_clip(ip_address, 45),
            task_name=_clip(task_name, 200),
            workflow_id=_clip(workflow_id, 100),
        )
        db.add(entry)
        await db.flush()
        return entry
    except SQLAlchemyError as db_err:
        # Never let error-logging itself crash the caller
        logger.warning("Failed to persist error log to DB: %s", db_err)
        return None


async def log_error_standalone(exc: Exception, **context) -> Optional[ErrorLog]:
    """Log an error using its own DB session."""
    from app.database import async_session

    try:
        async with async_session() as db:
            entry = await log_error(exc, db=db, **context)
            await db.commit()
            return entry
    except (SQLAlchemyError, OSError) as db_err:
        logger.warning("Failed standalone error log: %s", db_err)
        return None
