# schemas/common.py
"""
Tagged success/error envelope shared by every API response.
"""
from typing import Any, Generic, Optional, TypeVar
from pydantic import BaseModel, Field

T = TypeVar("T")


class ErrorDetail(BaseModel):
     """Machine-readable error returned when an operation is rejected."""
     code: str = Field(..., description="Error class, e.g. ValidationError")
     message: str
     details: dict[str, Any] = Field(default_factory=dict)


class ApiResponse(BaseModel, Generic[T]):
     """Result envelope: success flag plus entity snapshot or error."""
     success: bool = True
     data: Optional[T] = None
     error: Optional[ErrorDetail] = None

     @classmethod
     def ok(cls, data: T) -> "ApiResponse[T]":
          return cls(success=True, data=data)
