"""
SCIM filter parsing.

Only the ``attribute eq value`` form is supported. The value may be
wrapped in double or single quotes, which are trimmed before comparison.
"""

import re
from dataclasses import dataclass
from typing import Optional, Sequence

from ..errors import BadRequest

_FILTER_RE = re.compile(r"^\s*(\S+)\s+eq\s+(.+?)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class FilterExpression:
    """Parsed ``attribute eq value`` expression"""
    attribute: str
    value: str

    def __str__(self) -> str:
        return f'{self.attribute} eq "{self.value}"'


def strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        return value[1:-1]
    return value


def parse_filter(expression: Optional[str]) -> Optional[FilterExpression]:
    """
    Parse a SCIM filter query parameter.

    Returns:
        None when no filter was supplied, otherwise the parsed expression

    Raises:
        BadRequest: If the filter is not of the form ``attribute eq value``
    """
    if expression is None or not expression.strip():
        return None

    match = _FILTER_RE.match(expression)
    if not match:
        raise BadRequest(f"Unsupported filter expression: {expression}")

    return FilterExpression(attribute=match.group(1), value=strip_quotes(match.group(2)))


def check_attribute(attribute: str, allowed: Sequence[str], resource_type: str) -> None:
    """Reject filter attributes outside the resource's allow-list."""
    if attribute not in allowed:
        raise BadRequest(f"Unsupported filter attribute for {resource_type}: {attribute}")
