"""Validation utilities for Convoy configuration."""

from pydantic import ValidationError as PydanticValidationError


def flatten_pydantic_errors(exc: PydanticValidationError) -> list[str]:
    """Flatten Pydantic ValidationError into human-readable messages.

    Args:
        exc: Pydantic ValidationError exception

    Returns:
        List of messages, one per field error
    """
    errors: list[str] = []

    for error in exc.errors():
        loc = error.get("loc", ())
        field_path = ".".join(str(item) for item in loc) if loc else "config"

        msg = error.get("msg", "Unknown error")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, ") :]

        if error.get("type") == "value_error":
            formatted = f"Field '{field_path}': {msg}"
        elif error.get("type") == "extra_forbidden":
            formatted = f"Field '{field_path}': unknown field"
        else:
            received = error.get("input")
            formatted = f"Field '{field_path}': {msg} (received: {received!r})"

        errors.append(formatted)

    return errors if errors else ["Validation failed with unknown error"]
