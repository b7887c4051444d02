"""
Base service layer patterns for business logic encapsulation.

This module provides foundational patterns for the service layer:
- ServiceResult: Standard result wrapper for consistent success/failure handling
- BaseService: Base class with common service utilities

Pattern Comparison:
    - ServiceResult: Use for expected outcomes that are not errors of the
      caller (a declined fee charge, a failed transfer)
    - Exceptions: Use for rejected calls and unexpected failures

Usage:
    from core.services import BaseService, ServiceResult

    class PayoutProcessor(BaseService):
        @classmethod
        def process_cycle(cls, professional_id, cycle_id) -> ServiceResult[Payout]:
            with transaction.atomic():
                payout = Payout.objects.create(...)

            if not transferred:
                return ServiceResult.failure("Transfer failed", "PAYOUT_FAILED")

            cls.get_logger().info("Payout completed", extra={"payout_id": str(payout.id)})
            return ServiceResult.success(payout)

Related:
    - core.exceptions: For rejected calls and unexpected errors
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Generic, TypeVar

# Generic type for ServiceResult data
T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Standard result wrapper for service operations.

    Attributes:
        success: Whether the operation succeeded
        data: Result data (set on success, optionally on failure)
        error: Error message if failed (None if successful)
        error_code: Machine-readable error code

    Usage:
        result = FeeChargeProcessor.charge_cycle(professional_id, cycle_id)
        if result.success:
            fee_charge = result.data
        else:
            print(f"Error: {result.error} ({result.error_code})")
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        """
        Create a successful result.

        Args:
            data: The result data

        Returns:
            ServiceResult with success=True and data set
        """
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        data: T | None = None,
    ) -> ServiceResult[T]:
        """
        Create a failed result.

        Args:
            error: Human-readable error message
            error_code: Machine-readable error code
            data: Record left behind by the failed operation, if any

        Returns:
            ServiceResult with success=False and error details

        Example:
            return ServiceResult.failure(
                "Card declined",
                error_code="FEE_CHARGE_RETRY_SCHEDULED",
                data=fee_charge,
            )
        """
        return cls(
            success=False,
            data=data,
            error=error,
            error_code=error_code,
        )

    def __bool__(self) -> bool:
        """Allow using result in boolean context."""
        return self.success


class BaseService:
    """
    Base class for service layer classes.

    Provides common utilities for services:
    - Logging setup per service

    Design Notes:
        - Use @classmethod (no instance state)
        - Services are stateless; collaborators are injected as class attributes
        - Use ServiceResult for expected failures
        - Raise exceptions for rejected calls
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """
        Get logger for this service.

        Returns:
            Logger named "<module>.<ClassName>"
        """
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

