"""
Error Handling Module for GroupLedger

This module provides centralized error handling with:
- Custom exception hierarchy
- Consolidation-specific business rule errors
- Standardized error responses
- Database error mapping
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import UUID
import logging

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
    DataError,
)
from starlette.exceptions import HTTPException as StarletteHTTPException

# Configure logging
logger = logging.getLogger("groupledger.errors")


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""

    # Validation Errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_PERIOD = "INVALID_PERIOD"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"

    # Authentication/Authorization Errors (401/403)
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Resource Errors (404/409)
    NOT_FOUND = "NOT_FOUND"
    GROUP_NOT_FOUND = "GROUP_NOT_FOUND"
    RUN_NOT_FOUND = "RUN_NOT_FOUND"
    MEMBER_NOT_FOUND = "MEMBER_NOT_FOUND"
    RULE_NOT_FOUND = "RULE_NOT_FOUND"
    COMPANY_NOT_FOUND = "COMPANY_NOT_FOUND"
    PARENT_COMPANY_NOT_FOUND = "PARENT_COMPANY_NOT_FOUND"
    EXCHANGE_RATE_NOT_FOUND = "EXCHANGE_RATE_NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    DUPLICATE_GROUP_NAME = "DUPLICATE_GROUP_NAME"
    ALREADY_MEMBER = "ALREADY_MEMBER"
    RUN_ALREADY_EXISTS = "RUN_ALREADY_EXISTS"
    VERSION_CONFLICT = "VERSION_CONFLICT"

    # Business Logic Errors (422)
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    CANNOT_MODIFY = "CANNOT_MODIFY"
    CANNOT_DELETE = "CANNOT_DELETE"
    CANNOT_CANCEL = "CANNOT_CANCEL"
    PARENT_CANNOT_BE_MEMBER = "PARENT_CANNOT_BE_MEMBER"
    GROUP_INACTIVE = "GROUP_INACTIVE"
    HAS_COMPLETED_RUNS = "HAS_COMPLETED_RUNS"
    RULE_IN_USE = "RULE_IN_USE"
    INVALID_RUN_TRANSITION = "INVALID_RUN_TRANSITION"
    RUN_NOT_COMPLETED = "RUN_NOT_COMPLETED"
    NO_TRIAL_BALANCE = "NO_TRIAL_BALANCE"
    TRIAL_BALANCE_NOT_BALANCED = "TRIAL_BALANCE_NOT_BALANCED"
    BALANCE_SHEET_NOT_BALANCED = "BALANCE_SHEET_NOT_BALANCED"

    # Database Errors (500)
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"
    AUDIT_LOG_FAILURE = "AUDIT_LOG_FAILURE"

    # Internal Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


class AppException(Exception):
    """Base exception for all application exceptions"""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Validation Exceptions
# ============================================================================

class ValidationException(AppException):
    """Base validation exception"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            field=field,
        )


class CurrencyMismatchException(ValidationException):
    """Arithmetic attempted between two different currencies"""

    def __init__(self, left: str, right: str):
        super().__init__(
            message=f"Cannot combine amounts in {left} and {right}",
            code=ErrorCode.CURRENCY_MISMATCH,
            details={"left_currency": left, "right_currency": right},
        )


# ============================================================================
# Resource Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found exception"""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Union[str, UUID]] = None,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        if message is None:
            if resource_id:
                message = f"{resource_type} with ID '{resource_id}' not found"
            else:
                message = f"{resource_type} not found"
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": str(resource_id) if resource_id else None},
        )


class GroupNotFoundException(NotFoundException):
    """Consolidation group not found"""

    def __init__(self, group_id: Union[str, UUID]):
        super().__init__(
            resource_type="ConsolidationGroup",
            resource_id=group_id,
            code=ErrorCode.GROUP_NOT_FOUND,
        )


class RunNotFoundException(NotFoundException):
    """Consolidation run not found"""

    def __init__(self, run_id: Union[str, UUID]):
        super().__init__(
            resource_type="ConsolidationRun",
            resource_id=run_id,
            code=ErrorCode.RUN_NOT_FOUND,
        )


class MemberNotFoundException(NotFoundException):
    """Company is not a member of the group"""

    def __init__(self, group_id: Union[str, UUID], company_id: Union[str, UUID]):
        super().__init__(
            resource_type="ConsolidationMember",
            resource_id=company_id,
            message=f"Company '{company_id}' is not a member of group '{group_id}'",
            code=ErrorCode.MEMBER_NOT_FOUND,
        )


class RuleNotFoundException(NotFoundException):
    """Elimination rule not found"""

    def __init__(self, rule_id: Union[str, UUID]):
        super().__init__(
            resource_type="EliminationRule",
            resource_id=rule_id,
            code=ErrorCode.RULE_NOT_FOUND,
        )


class CompanyNotFoundException(NotFoundException):
    """Company not found in the organization"""

    def __init__(self, company_id: Union[str, UUID], parent: bool = False):
        super().__init__(
            resource_type="ParentCompany" if parent else "Company",
            resource_id=company_id,
            code=ErrorCode.PARENT_COMPANY_NOT_FOUND if parent else ErrorCode.COMPANY_NOT_FOUND,
        )


class ExchangeRateNotFoundException(NotFoundException):
    """No usable exchange rate for a currency pair"""

    def __init__(self, from_currency: str, to_currency: str, on_date: Any):
        super().__init__(
            resource_type="ExchangeRate",
            message=f"No exchange rate found for {from_currency}/{to_currency} on or before {on_date}",
            code=ErrorCode.EXCHANGE_RATE_NOT_FOUND,
        )


class ConflictException(AppException):
    """Resource conflict exception"""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if resource_type:
            _details["resource_type"] = resource_type
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=_details,
        )


class DuplicateEntryException(ConflictException):
    """Duplicate entry exception"""

    def __init__(
        self,
        resource_type: str,
        field: str,
        value: str,
        code: ErrorCode = ErrorCode.DUPLICATE_ENTRY,
    ):
        super().__init__(
            message=f"{resource_type} with {field} '{value}' already exists",
            resource_type=resource_type,
            code=code,
            details={"field": field, "value": value},
        )


class VersionConflictException(ConflictException):
    """Optimistic concurrency check failed"""

    def __init__(self, resource_type: str, resource_id: Union[str, UUID], expected: int, actual: Optional[int]):
        super().__init__(
            message=f"{resource_type} '{resource_id}' was modified concurrently (expected version {expected}, found {actual})",
            resource_type=resource_type,
            code=ErrorCode.VERSION_CONFLICT,
            details={"expected_version": expected, "actual_version": actual},
        )


class AlreadyMemberException(ConflictException):
    """Company already belongs to the group"""

    def __init__(self, group_id: Union[str, UUID], company_id: Union[str, UUID]):
        super().__init__(
            message=f"Company '{company_id}' is already a member of group '{group_id}'",
            resource_type="ConsolidationMember",
            code=ErrorCode.ALREADY_MEMBER,
            details={"company_id": str(company_id)},
        )


class RunAlreadyExistsException(ConflictException):
    """An active run already exists for the group and period"""

    def __init__(self, group_id: Union[str, UUID], period: str, existing_run_id: Optional[Union[str, UUID]] = None):
        super().__init__(
            message=f"A consolidation run already exists for group '{group_id}' and period {period}",
            resource_type="ConsolidationRun",
            code=ErrorCode.RUN_ALREADY_EXISTS,
            details={
                "period": period,
                "existing_run_id": str(existing_run_id) if existing_run_id else None,
            },
        )


# ============================================================================
# Business Logic Exceptions
# ============================================================================

class BusinessRuleException(AppException):
    """Business rule violation exception"""

    def __init__(
        self,
        message: str,
        rule: Optional[str] = None,
        code: ErrorCode = ErrorCode.BUSINESS_RULE_VIOLATION,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if rule:
            _details["violated_rule"] = rule
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=_details,
        )


class GroupInactiveException(BusinessRuleException):
    """Runs cannot be initiated for a deactivated group"""

    def __init__(self, group_id: Union[str, UUID]):
        super().__init__(
            message=f"Consolidation group '{group_id}' is inactive",
            rule="GROUP_MUST_BE_ACTIVE",
            code=ErrorCode.GROUP_INACTIVE,
        )


class HasCompletedRunsException(BusinessRuleException):
    """Group has completed runs and cannot be deleted"""

    def __init__(self, group_id: Union[str, UUID], completed_runs: int):
        super().__init__(
            message=f"Consolidation group '{group_id}' has {completed_runs} completed run(s) and cannot be deleted",
            rule="NO_COMPLETED_RUNS",
            code=ErrorCode.HAS_COMPLETED_RUNS,
            details={"completed_runs": completed_runs},
        )


class InvalidRunTransitionException(BusinessRuleException):
    """Run status transition not allowed by the state machine"""

    def __init__(
        self,
        run_id: Union[str, UUID],
        current_status: str,
        action: str,
        code: ErrorCode = ErrorCode.INVALID_RUN_TRANSITION,
    ):
        super().__init__(
            message=f"Cannot {action} consolidation run '{run_id}' in status '{current_status}'",
            rule=f"RUN_{action.upper()}_ALLOWED_STATUS",
            code=code,
            details={"current_status": current_status},
        )


class RunNotCompletedException(BusinessRuleException):
    """Reports require a completed run"""

    def __init__(self, run_id: Union[str, UUID], current_status: str):
        super().__init__(
            message=f"Consolidation run '{run_id}' is '{current_status}', reports require a completed run",
            rule="RUN_MUST_BE_COMPLETED",
            code=ErrorCode.RUN_NOT_COMPLETED,
            details={"current_status": current_status},
        )


class NoTrialBalanceException(BusinessRuleException):
    """Completed run without a consolidated trial balance"""

    def __init__(self, run_id: Union[str, UUID]):
        super().__init__(
            message=f"Consolidation run '{run_id}' has no consolidated trial balance",
            rule="TRIAL_BALANCE_REQUIRED",
            code=ErrorCode.NO_TRIAL_BALANCE,
        )


class BalanceNotBalancedException(BusinessRuleException):
    """Double-entry balancing law violated"""

    def __init__(self, message: str, difference: Any, code: ErrorCode = ErrorCode.TRIAL_BALANCE_NOT_BALANCED):
        super().__init__(
            message=message,
            rule="DOUBLE_ENTRY_BALANCE",
            code=code,
            details={"difference": str(difference)},
        )


# ============================================================================
# Database Exceptions
# ============================================================================

class DatabaseException(AppException):
    """Database error exception"""

    def __init__(
        self,
        message: str = "A database error occurred",
        code: ErrorCode = ErrorCode.DATABASE_ERROR,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            original_error=original_error,
        )


class AuditLogException(DatabaseException):
    """Audit trail could not be written"""

    def __init__(self, message: str = "Audit log could not be written", original_error: Optional[Exception] = None):
        super().__init__(
            message=message,
            code=ErrorCode.AUDIT_LOG_FAILURE,
            original_error=original_error,
        )


# ============================================================================
# Exception Handlers
# ============================================================================

def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
) -> JSONResponse:
    """Create a standardized error response"""
    content = {
        "detail": {
            "code": code.value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    }
    if field:
        content["detail"]["field"] = field
    if details:
        content["detail"]["details"] = details

    return JSONResponse(status_code=status_code, content=content)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle AppException"""
    logger.error(
        f"AppException: {exc.code.value} - {exc.message}",
        extra={
            "code": exc.code.value,
            "path": request.url.path,
            "method": request.method,
            "details": exc.details,
        },
        exc_info=exc.original_error,
    )

    # Server-side failures never leak internals
    if exc.status_code >= 500:
        return create_error_response(
            code=exc.code,
            message="An internal error occurred. Please try again later.",
            status_code=exc.status_code,
        )

    return create_error_response(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        field=exc.field,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException"""
    code_map = {
        400: ErrorCode.INVALID_INPUT,
        401: ErrorCode.UNAUTHORIZED,
        403: ErrorCode.FORBIDDEN,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.RESOURCE_CONFLICT,
        422: ErrorCode.VALIDATION_ERROR,
        500: ErrorCode.INTERNAL_ERROR,
    }

    error_code = code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    logger.warning(
        f"HTTPException: {exc.status_code} - {message}",
        extra={"path": request.url.path, "method": request.method},
    )

    return create_error_response(
        code=error_code,
        message=message,
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors"""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    logger.warning(
        f"ValidationError: {len(errors)} validation errors",
        extra={"path": request.url.path, "method": request.method, "errors": errors},
    )

    return create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"errors": errors},
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy errors"""
    error_message = "A database error occurred"
    error_code = ErrorCode.DATABASE_ERROR
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if isinstance(exc, IntegrityError):
        error_message = "Data integrity constraint violated"
        error_code = ErrorCode.DATA_INTEGRITY_ERROR
        error_str = str(exc.orig).lower() if exc.orig else ""
        if "unique" in error_str or "duplicate" in error_str:
            error_message = "A record with this value already exists"
            error_code = ErrorCode.DUPLICATE_ENTRY
            status_code = status.HTTP_409_CONFLICT
        elif "foreign key" in error_str:
            error_message = "Referenced record does not exist"
            status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, OperationalError):
        error_message = "Database operation failed"
        error_code = ErrorCode.CONNECTION_ERROR
    elif isinstance(exc, DataError):
        error_message = "Invalid data format for database"
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    logger.error(
        f"SQLAlchemyError: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )

    return create_error_response(
        code=error_code,
        message=error_message,
        status_code=status_code,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions"""
    logger.critical(
        f"UnhandledException: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )

    return create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


__all__ = [
    # Base
    "AppException",
    "ErrorCode",

    # Validation
    "ValidationException",
    "CurrencyMismatchException",

    # Resource
    "NotFoundException",
    "GroupNotFoundException",
    "RunNotFoundException",
    "MemberNotFoundException",
    "RuleNotFoundException",
    "CompanyNotFoundException",
    "ExchangeRateNotFoundException",
    "ConflictException",
    "DuplicateEntryException",
    "VersionConflictException",
    "AlreadyMemberException",
    "RunAlreadyExistsException",

    # Business Logic
    "BusinessRuleException",
    "GroupInactiveException",
    "HasCompletedRunsException",
    "InvalidRunTransitionException",
    "RunNotCompletedException",
    "NoTrialBalanceException",
    "BalanceNotBalancedException",

    # Database
    "DatabaseException",
    "AuditLogException",

    # Handlers
    "setup_exception_handlers",
    "create_error_response",
]
