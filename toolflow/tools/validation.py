"""
Parameter validation against a tool's declared schema.

Parameters are checked with a Draft 2020-12 ``jsonschema`` validator. Every
violation is collected and rendered as a short field-level message so the
model sees all of its mistakes in one tool result.
"""

import re
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, ValidationError
from pydantic import BaseModel, Field


class ValidationResult(BaseModel):
    """Outcome of validating one set of tool parameters."""

    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def summary(self) -> str:
        return "; ".join(self.errors)


def _field_name(error: ValidationError) -> str:
    return ".".join(str(part) for part in error.absolute_path) or "parameters"


def _describe(error: ValidationError) -> str:
    name = _field_name(error)
    keyword = error.validator
    value = error.validator_value

    if keyword == "type":
        expected = " or ".join(value) if isinstance(value, list) else value
        return f"Invalid type for {name}: expected {expected}"
    if keyword == "pattern":
        return f"Invalid format for {name}"
    if keyword == "enum":
        allowed = ", ".join(str(option) for option in value)
        return f"Invalid value for {name}. Must be one of: {allowed}"
    if keyword == "minimum":
        return f"{name} must be at least {value}"
    if keyword == "maximum":
        return f"{name} must be at most {value}"
    if keyword == "minLength":
        return f"{name} must be at least {value} characters"
    if keyword == "maxLength":
        return f"{name} must be at most {value} characters"
    if keyword == "minItems":
        return f"{name} must have at least {value} items"
    return f"Invalid value for {name}: {error.message}"


def _collect_errors(validator: Draft202012Validator, parameters: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    for error in sorted(validator.iter_errors(parameters), key=lambda e: [str(p) for p in e.path]):
        if error.validator == "required":
            missing = [field for field in error.validator_value if field not in error.instance]
            for field in missing:
                message = f"Missing required field: {field}"
                if message not in errors:
                    errors.append(message)
            continue
        errors.append(_describe(error))
    return errors


def validate_parameters(parameters: dict[str, Any], schema: dict[str, Any] | None) -> ValidationResult:
    """
    Validate tool parameters against the tool's JSON schema.

    Args:
        parameters: Arguments the model supplied
        schema: The tool's ``input_schema``

    Returns:
        ValidationResult; an invalid schema is reported as a failure and
        unknown fields produce warnings, not errors
    """
    schema = schema or {}

    if not isinstance(parameters, dict):
        return ValidationResult(is_valid=False, errors=["Parameters must be an object"])

    try:
        Draft202012Validator.check_schema(schema)
        errors = _collect_errors(Draft202012Validator(schema), parameters)
    except SchemaError as e:
        return ValidationResult(is_valid=False, errors=[f"Invalid parameter schema: {e.message}"])
    except re.error as e:
        return ValidationResult(is_valid=False, errors=[f"Invalid pattern in parameter schema: {e}"])

    properties: dict[str, Any] = schema.get("properties") or {}
    warnings = [f"Unexpected field: {name}" for name in parameters if name not in properties]

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
