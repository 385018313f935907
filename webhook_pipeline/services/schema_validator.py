# services/schema_validator.py
from typing import Any, List

from pydantic import ValidationError

from webhook_pipeline.schemas.webhook_models import FieldError, UserPayload, ValidationResult


def _to_field_errors(exc: ValidationError) -> List[FieldError]:
    errors: List[FieldError] = []
    for err in exc.errors(include_url=False):
        path = ".".join(str(part) for part in err.get("loc", ()))
        errors.append(FieldError(path=path, message=err.get("msg", "Invalid value")))
    return errors


def validate_payload(payload: Any) -> ValidationResult:
    """
    Validate an already-deserialized payload against UserPayload.

    Every failing field is reported, in field-declaration order. Never raises
    for bad input: any shape (None, list, string, nested junk) comes back as
    a ValidationResult with errors.
    """
    if not isinstance(payload, dict):
        return ValidationResult(errors=[
            FieldError(path="", message="Payload must be a JSON object")
        ])

    try:
        valid = UserPayload.model_validate(payload)
    except ValidationError as exc:
        return ValidationResult(errors=_to_field_errors(exc))

    return ValidationResult(payload=valid)
