"""
Order number normalization for booking correlation lookups.

Order numbers cross the payment redirect boundary and come back URL-encoded,
re-cased or with a different prefix (``ORDER-``, ``REF-``). Bookings are
stored under the canonical ``ORD-<n>`` form and looked up through the
variations below.
"""

import re
from typing import Any, List
from urllib.parse import unquote

ORDER_PREFIX_PATTERN = re.compile(r"^(ORD-|ORDER-|REF-)", re.IGNORECASE)
TIMESTAMP_PATTERN = re.compile(r"(\d{13})")
MAX_ORDER_KEY_LENGTH = 256


def is_valid_order_key(order_key: Any) -> bool:
    """Return True for non-blank strings of reasonable length."""
    return (
        isinstance(order_key, str)
        and bool(order_key.strip())
        and len(order_key) <= MAX_ORDER_KEY_LENGTH
    )


def normalize_order_number(order_number: str) -> str:
    """Strip a known prefix (any case) and return the ``ORD-`` form."""
    cleaned = ORDER_PREFIX_PATTERN.sub("", order_number.strip())
    return f"ORD-{cleaned}"


def order_number_variations(order_number: str) -> List[str]:
    """Ordered, de-duplicated lookup candidates for an order number."""
    if not is_valid_order_key(order_number):
        return []

    variations: List[str] = []

    def add(candidate: str) -> None:
        if candidate and candidate not in variations:
            variations.append(candidate)

    decoded = unquote(order_number).strip()
    add(decoded)

    normalized = normalize_order_number(decoded)
    bare = normalized[len("ORD-"):]

    add(normalized)
    add(order_number)
    add(bare)
    add(f"ORDER-{bare}")
    add(f"REF-{bare}")
    add(order_number.upper())
    add(normalize_order_number(decoded.upper()))

    timestamp_match = TIMESTAMP_PATTERN.search(bare)
    if timestamp_match:
        timestamp = timestamp_match.group(1)
        add(timestamp)
        add(f"ORD-{timestamp}")
        add(f"ORDER-{timestamp}")

    return variations
