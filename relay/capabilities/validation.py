"""
Argument validation against a tool's declared JSON schema.

Every violation is collected into a single ToolArgumentError so the model
can fix all of them in one retry.
"""

from typing import Any, Dict, List

from jsonschema import Draft7Validator, ValidationError

from relay.core.exceptions import ToolArgumentError


def _location(error: ValidationError) -> str:
    location = ""
    for part in error.absolute_path:
        location += f"[{part}]" if isinstance(part, int) else (f".{part}" if location else str(part))
    return location or "arguments"


def validate_arguments(schema: Dict[str, Any], arguments: Dict[str, Any]) -> None:
    """Raise ToolArgumentError listing every violation found."""
    if not isinstance(arguments, dict):
        raise ToolArgumentError("arguments must be an object")
    if "_raw" in arguments:
        raise ToolArgumentError("arguments were not a valid JSON object")

    validator = Draft7Validator(schema or {"type": "object"})
    errors: List[str] = [
        f"{_location(error)}: {error.message}" for error in validator.iter_errors(arguments)
    ]
    if errors:
        raise ToolArgumentError("; ".join(errors))
