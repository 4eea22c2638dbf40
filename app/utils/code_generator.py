"""
Cryptographically secure short codes for file shares and user lookup.
"""
import secrets
import string
from typing import Awaitable, Callable

from errors import CodeSpaceExhausted

# Exclude ambiguous characters: 0, 1, O, I, L
ALPHABET = "".join(c for c in string.ascii_uppercase + string.digits
                   if c not in "01OIL")

USER_CODE_PREFIX = "CHL"


def generate_code(length: int = 6, alphabet: str = ALPHABET, prefix: str = "") -> str:
    """
    Generate a random code such as "9QKX7M".

    Uses the `secrets` module for cryptographic security.
    Excludes ambiguous characters (0, 1, O, I, L) for readability.
    """
    return prefix + "".join(secrets.choice(alphabet) for _ in range(length))


def generate_user_code() -> str:
    """Public lookup code in the form CHL042."""
    return generate_code(length=3, alphabet=string.digits, prefix=USER_CODE_PREFIX)


async def ensure_unique_code(
    is_taken: Callable[[str], Awaitable[bool]],
    generate: Callable[[], str] = generate_code,
    max_attempts: int = 10,
) -> str:
    """
    Draw codes until one is not taken.

    Args:
        is_taken: Async predicate reporting whether a code is in use
        generate: Code factory
        max_attempts: Upper bound on draws

    Returns:
        str: A code not currently in use

    Raises:
        CodeSpaceExhausted: If every attempt collided
    """
    for _ in range(max_attempts):
        code = generate()
        if not await is_taken(code):
            return code
    raise CodeSpaceExhausted(f"Failed to generate unique code after {max_attempts} attempts")
