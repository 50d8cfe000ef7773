import base64
import binascii
import hmac
from typing import Optional

from authproxy.model.Core.header import AuthRejected

BASIC_PREFIX = "Basic "


def check_credentials(header: Optional[str], username: str, password: str) -> bool:
    """
    Check a ``Proxy-Authorization`` value against the configured identity.

    Args:
        header (str): The raw header value, or None when absent
        username (str): Configured username
        password (str): Configured password

    Returns:
        bool: True only for ``Basic base64(username:password)`` with an exact match
    """
    if not header or not header.startswith(BASIC_PREFIX):
        return False

    try:
        decoded = base64.b64decode(header[len(BASIC_PREFIX):], validate=True)
    except (binascii.Error, ValueError):
        return False

    user, sep, pwd = decoded.partition(b":")
    if not sep:
        return False

    # both halves are always compared
    user_ok = hmac.compare_digest(user, username.encode("utf-8"))
    pwd_ok = hmac.compare_digest(pwd, password.encode("utf-8"))
    return user_ok and pwd_ok


class AuthManager:
    """Proxy credential check for the single configured client identity."""

    def __init__(self, username: str, password: str):
        self.username = username
        self.password = password

    def check_access(self, header: Optional[str]) -> bool:
        """Check if the presented credential is allowed."""
        return check_credentials(header, self.username, self.password)

    def authorize(self, header: Optional[str], remote: str = "-"):
        """Raise AuthRejected unless the presented credential is allowed."""
        if not self.check_access(header):
            raise AuthRejected(f"Authentication failed: {remote}")
