"""Translate BillingError into HTTPException with a structured detail."""
import uuid
import logging
from typing import Optional

from fastapi import HTTPException

from services.billing_errors import BillingError, BillingValidationError, ProcessorError

logger = logging.getLogger(__name__)


def billing_http_error(exc: BillingError, request_id: Optional[str] = None) -> HTTPException:
    request_id = request_id or str(uuid.uuid4())
    detail = {
        "error_code": exc.error_code,
        "message": exc.message,
        "retryable": exc.retryable,
        "request_id": request_id,
    }
    if isinstance(exc, BillingValidationError):
        detail["field_errors"] = exc.field_errors
    if isinstance(exc, ProcessorError) and exc.processor_code:
        detail["processor_code"] = exc.processor_code

    log = logger.warning if exc.http_status < 500 else logger.error
    log(f"{exc.error_code} request_id={request_id}: {exc.message}")
    return HTTPException(status_code=exc.http_status, detail=detail)
