"""Custom exception types for the API.

This module defines the error classes raised by the services and endpoints,
together with the response model they are rendered as.
"""

from typing import Any, Dict, List, Optional, Union

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field


class ErrorResponseModel(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error message")
    details: Optional[Union[str, List[Dict[str, Any]]]] = Field(
        None, description="Additional error details"
    )


class APIError(Exception):
    """Base class for all API errors."""

    status_code = 500
    default_message = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Union[str, List[Dict[str, Any]]]] = None,
    ):
        """Initialize the API error.

        Args:
            message: Custom error message (uses default_message if None)
            details: Additional error details
        """
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_response(self) -> JSONResponse:
        """Convert to a JSON response."""
        error_model = ErrorResponseModel(error=self.message, details=self.details)
        return JSONResponse(
            status_code=self.status_code,
            content=error_model.model_dump(exclude_none=True),
        )


class ValidationError(APIError):
    """Error for invalid request data."""

    status_code = 400
    default_message = "Invalid request data"


class ConfigurationError(APIError):
    """Error for missing server configuration."""

    status_code = 500
    default_message = "Configuration error"


class ServiceError(APIError):
    """Error from underlying services."""

    status_code = 500
    default_message = "Service error"


class LLMServiceError(ServiceError):
    """Error returned by the LLM provider during answer generation."""

    default_message = "LLM API error"
