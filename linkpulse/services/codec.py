"""
Base62 encoding of URL ids into short codes.
"""

BASE62_CHARS = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"


def encode(number: int) -> str:
    """
    Convert a non-negative integer to its Base62 string.

    Base62 uses: 0-9 (10) + a-z (26) + A-Z (26) = 62 characters.
    The mapping is a bijection, so distinct ids never share a code and the
    store can look codes up directly without decoding.
    """
    if number < 0:
        raise ValueError(f"Cannot encode negative number: {number}")

    if number == 0:
        return BASE62_CHARS[0]

    digits = []
    while number > 0:
        number, remainder = divmod(number, 62)
        digits.append(BASE62_CHARS[remainder])

    return "".join(reversed(digits))
