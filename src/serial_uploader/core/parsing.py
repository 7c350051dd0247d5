"""
Centralized parsing helpers for numeric command line values.
"""

from typing import Optional


def parse_int(value: Optional[str], label: str = "value") -> Optional[int]:
    """
    Parse an unsigned integer the way strtoul(value, NULL, 0) does.

    Accepts:
        - Decimal: "512"
        - Hex with 0x prefix: "0x200" or "0X200"
        - Octal with leading zero: "01000"
        - None or empty for "not given"

    Returns:
        Parsed integer, or None if value is None or empty.

    Raises:
        ValueError: If value cannot be parsed or is negative.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        lowered = value.lower()
        if lowered.startswith("0x"):
            result = int(value, 16)
        elif len(value) > 1 and value.startswith("0"):
            result = int(value, 8)
        else:
            result = int(value, 10)
    except ValueError:
        raise ValueError(f"Invalid {label} '{value}'. Use decimal (512), hex (0x200) or octal (01000).")

    if result < 0:
        raise ValueError(f"Invalid {label} '{value}': must not be negative")
    return result
