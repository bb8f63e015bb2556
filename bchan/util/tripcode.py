import base64
import hashlib
import hmac
from typing import Optional

# Characters from the base64 alphabet that are unsafe in URLs and identifiers.
# Kept byte-for-byte so tripcodes already stored in the database still verify.
_SAFE_CHARS = str.maketrans({"+": ".", "/": ",", "=": "-"})

TRIPCODE_LENGTH = 10


def generate_tripcode(password: Optional[str], salt: str) -> Optional[str]:
    """
    Derive the public tripcode for a password.

    Args:
        password: User-supplied password, may be empty
        salt: Process-wide secret salt

    Returns:
        str: Ten character token, or None for anonymous posts
    """
    if not password:
        return None

    digest = hashlib.sha256((password + salt).encode("utf-8")).digest()
    encoded = base64.b64encode(digest).decode("ascii")
    return encoded[:TRIPCODE_LENGTH].translate(_SAFE_CHARS)


def verify_tripcode(password: Optional[str], tripcode: Optional[str], salt: str) -> bool:
    """Check a password against a stored tripcode"""
    if not tripcode:
        return False
    generated = generate_tripcode(password, salt)
    if generated is None:
        return False
    return hmac.compare_digest(generated, tripcode)


class Tripcodes:
    """Tripcode generator bound to a salt, so callers never pass the secret around"""

    def __init__(self, salt: str):
        self._salt = salt

    def generate(self, password: Optional[str]) -> Optional[str]:
        return generate_tripcode(password, self._salt)

    def verify(self, password: Optional[str], tripcode: Optional[str]) -> bool:
        return verify_tripcode(password, tripcode, self._salt)
