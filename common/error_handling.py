"""
Payment error taxonomy and standardized API error responses
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
import logging
import traceback
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    """Detailed error information"""
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """Standard error response format"""
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None
    request_id: Optional[str] = None

class ErrorCodes:
    """Standard error codes"""
    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_FIELD = "MISSING_FIELD"

    # Callback authenticity
    VERIFICATION_SKIPPED = "VERIFICATION_SKIPPED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"

    # Remote business outcome
    GATEWAY_REJECTED = "GATEWAY_REJECTED"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"

    # Local / system errors
    LOCAL_ERROR = "LOCAL_ERROR"
    SESSION_MISSING = "SESSION_MISSING"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"

    # External service errors
    TRANSIENT_NETWORK_ERROR = "TRANSIENT_NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"

# Strings that may be shown to a user. Raw exception text never is.
GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."
VERIFICATION_FAILED_MESSAGE = "We could not verify this payment. Please contact support."
TRANSIENT_NOTICE_MESSAGE = "Unable to reach the server. We'll retry shortly."
PERSISTENT_NOTICE_MESSAGE = "We are having trouble checking your payment status. Please check your connection."

class BusinessLogicError(Exception):
    """Custom exception for business logic errors"""
    def __init__(self, code: str, message: str, field: str = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ServiceError(Exception):
    """Custom exception for service-level errors"""
    def __init__(self, code: str, message: str, original_error: Exception = None):
        self.code = code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

class PaymentValidationError(BusinessLogicError):
    """Bad amount or missing field, caught before signing"""
    def __init__(self, message: str, field: str = None):
        super().__init__(ErrorCodes.VALIDATION_ERROR, message, field=field)

class VerificationFailed(BusinessLogicError):
    """Callback signature did not match; treated as tampering"""
    def __init__(self, transaction_id: Optional[str]):
        super().__init__(
            ErrorCodes.VERIFICATION_FAILED,
            VERIFICATION_FAILED_MESSAGE,
            field="hash",
            context={"transaction_id": transaction_id},
        )

class GatewayRejected(BusinessLogicError):
    """Remote side affirmatively rejected the transaction"""
    def __init__(self, message: str, transaction_id: Optional[str] = None):
        super().__init__(
            ErrorCodes.GATEWAY_REJECTED,
            message,
            context={"transaction_id": transaction_id},
        )

class TransientNetworkError(ServiceError):
    """Timeout or connectivity failure; safe to retry"""
    def __init__(self, message: str, original_error: Exception = None, code: str = ErrorCodes.TRANSIENT_NETWORK_ERROR):
        super().__init__(code, message, original_error)

class LocalError(ServiceError):
    """Missing session credential or unexpected local failure"""
    def __init__(self, message: str, original_error: Exception = None, code: str = ErrorCodes.LOCAL_ERROR):
        super().__init__(code, message, original_error)

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
    request_id: str = None
) -> JSONResponse:
    """Create standardized error response"""

    error_detail = ErrorDetail(
        code=error_code,
        message=message,
        field=field,
        context=context
    )

    error_response = StandardErrorResponse(
        error=error_detail,
        timestamp=time.time(),
        trace_id=trace_id,
        request_id=request_id
    )

    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump()
    )

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Handle business logic exceptions"""

    status_code_map = {
        ErrorCodes.VALIDATION_ERROR: 400,
        ErrorCodes.MISSING_FIELD: 400,
        ErrorCodes.VERIFICATION_FAILED: 400,
        ErrorCodes.GATEWAY_REJECTED: 402,
        ErrorCodes.TRANSACTION_NOT_FOUND: 404,
    }

    status_code = status_code_map.get(exc.code, 400)

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "field": exc.field,
        "context": exc.context
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        field=exc.field,
        context=exc.context,
        trace_id=trace_id,
        request_id=request_id
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    """Handle service-level exceptions with a vetted message only"""

    status_code_map = {
        ErrorCodes.TRANSIENT_NETWORK_ERROR: 503,
        ErrorCodes.CIRCUIT_BREAKER_OPEN: 503,
        ErrorCodes.TIMEOUT_ERROR: 504,
        ErrorCodes.SESSION_MISSING: 401,
    }

    status_code = status_code_map.get(exc.code, 500)

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    message = TRANSIENT_NOTICE_MESSAGE if isinstance(exc, TransientNetworkError) else GENERIC_ERROR_MESSAGE
    return create_error_response(
        error_code=exc.code,
        message=message,
        status_code=status_code,
        trace_id=trace_id,
        request_id=request_id
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request body validation exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)

    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={
        "trace_id": trace_id,
    })

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
        trace_id=trace_id
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)

    status_to_code = {
        401: ErrorCodes.SESSION_MISSING,
        404: ErrorCodes.TRANSACTION_NOT_FOUND,
        503: ErrorCodes.TRANSIENT_NETWORK_ERROR,
    }

    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
        trace_id=trace_id
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "trace_id": trace_id,
        "traceback": traceback.format_exc()
    })

    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message=GENERIC_ERROR_MESSAGE,
        status_code=500,
        trace_id=trace_id
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
