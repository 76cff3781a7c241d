"""Recognition and generation of placeholder references.

A payment intent is created before any real identifier exists. Its
receipt number holds a placeholder until settlement allocates an RCT
number, and its reference/transaction values hold internally generated
PAY-/TXN- numbers until a provider reports its own reference.
"""

import re
import uuid
from typing import Optional


PLACEHOLDER_LITERAL = "PENDING"
PLACEHOLDER_PREFIX = "PENDING-"

# System-generated in-flight codes: 10 upper-case alphanumerics
INTERNAL_CODE_PATTERN = re.compile(r"^[A-Z0-9]{10}$")


def new_placeholder() -> str:
    """A unique placeholder (unique constraints apply to placeholders too)."""
    return f"{PLACEHOLDER_PREFIX}{uuid.uuid4().hex[:12].upper()}"


def is_placeholder(value: Optional[str]) -> bool:
    """Whether a receipt number still needs a real RCT number."""
    if not value or not value.strip():
        return True
    value = value.strip()
    return (
        value == PLACEHOLDER_LITERAL
        or value.startswith(PLACEHOLDER_PREFIX)
        or bool(INTERNAL_CODE_PATTERN.match(value))
    )

