"""Input coercion shared by services that take values straight from JSON.

parse_int_field:   integers and integer strings; raises ValidationError
parse_bool_field:  real booleans only; "false" is not False
"""

from docguard.core.exceptions import ValidationError


def parse_int_field(value, field: str, minimum: int | None = None) -> int:
    """Return *value* as an int or raise ``ValidationError`` (422).

    ``True``/``False`` and fractional floats are rejected even though
    ``int()`` would accept them.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", details={field: "integer"})
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: "integer"})
    if isinstance(value, float) and value != number:
        raise ValidationError(f"{field} must be an integer", details={field: "integer"})
    if minimum is not None and number < minimum:
        raise ValidationError(f"{field} must be >= {minimum}", details={field: f">={minimum}"})
    return number


def parse_bool_field(value, field: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{field} must be a boolean", details={field: "boolean"})
    return value
