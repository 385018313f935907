# schemas/webhook_models.py
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from typing import Any, Dict, List, Optional


class UserPayload(BaseModel):
    """
    Externally submitted webhook payload.
    Strict mode: no coercion, so "30" or 30.0 are not accepted as an age.
    Fields are checked in declaration order.
    """
    model_config = ConfigDict(strict=True, extra="ignore")

    name: str = Field(..., min_length=1, description="Display name, non-empty")
    age: int = Field(..., ge=18, description="Age in whole years, 18 or older")
    email: EmailStr = Field(..., description="Contact email address")


class FieldError(BaseModel):
    """One schema violation. `path` is dotted; the document root is ''."""
    path: str
    message: str


class ValidationResult(BaseModel):
    payload: Optional[UserPayload] = None
    errors: List[FieldError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.payload is not None and not self.errors


class AcceptedResponse(BaseModel):
    message: str = "hellou, hellou"


class RejectedResponse(BaseModel):
    message: str = "Validation failed"
    errors: List[FieldError]

    class Config:
        json_schema_extra = {
            "example": {
                "message": "Validation failed",
                "errors": [
                    {"path": "name", "message": "Field required"},
                    {"path": "age", "message": "Input should be greater than or equal to 18"},
                ]
            }
        }


class HealthResponse(BaseModel):
    status: str = "healthy"
    queue_depth: Optional[int] = None
    dead_letter_depth: Optional[int] = None
    dispatcher: Dict[str, Any] = Field(default_factory=dict)
