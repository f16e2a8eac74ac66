"""Client-side authentication against the server of record."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from .config import settings
from .errors import RemoteFailure
from .remote import RemoteInventoryClient

logger = logging.getLogger(__name__)


class LoginResponse(BaseModel):
    """Login response; older servers put the username at the top level."""

    token: str
    username: Optional[str] = None
    user: Optional[dict[str, Any]] = None

    @property
    def display_name(self) -> Optional[str]:
        if self.user and self.user.get("username"):
            return str(self.user["username"])
        return self.username


def token_expired(token: Optional[str], leeway: float = 0) -> bool:
    """Check a JWT's ``exp`` claim locally, without verifying its signature.

    Tokens that cannot be decoded count as expired. Tokens without an
    ``exp`` claim never expire.
    """
    if not token:
        return True
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        logger.warning("Stored token could not be decoded")
        return True
    exp = claims.get("exp")
    if exp is None:
        return False
    return datetime.now(timezone.utc).timestamp() >= float(exp) - leeway


class AuthClient:
    """Logs in and verifies the bearer token used by the remote client.

    Both calls have fixed timeouts and are never retried; any failure is
    logged and reported as False.
    """

    def __init__(
        self,
        remote: RemoteInventoryClient,
        login_timeout: Optional[float] = None,
        verify_timeout: Optional[float] = None,
    ) -> None:
        self._remote = remote
        self.login_timeout = login_timeout or settings.login_timeout
        self.verify_timeout = verify_timeout or settings.verify_timeout
        self.username: Optional[str] = None
        self.last_error: Optional[str] = None

    @property
    def token(self) -> Optional[str]:
        return self._remote.token

    @property
    def is_authenticated(self) -> bool:
        return bool(self._remote.token)

    async def login(self, username: str, password: str) -> bool:
        """Exchange credentials for a token and attach it to the remote client."""
        self.last_error = None
        try:
            data = await self._remote.request(
                "POST",
                "/api/auth/login",
                json={"username": username, "password": password},
                timeout=self.login_timeout,
            )
            response = LoginResponse.model_validate(data)
        except RemoteFailure as e:
            logger.warning(f"Login failed for {username}: {e}")
            self.last_error = str(e)
            return False
        except ValueError as e:
            logger.warning(f"Login for {username} returned no usable token: {e}")
            self.last_error = "Authentication failed"
            return False

        self._remote.token = response.token
        self.username = response.display_name or username
        logger.info(f"Logged in as {self.username}")
        return True

    async def verify_token(self) -> bool:
        """Ask the server whether the current token is still valid.

        A token the server rejects is dropped, as on logout.
        """
        if not self._remote.token:
            return False
        try:
            data = await self._remote.request("GET", "/api/auth/verify", timeout=self.verify_timeout)
        except RemoteFailure as e:
            logger.warning(f"Token verification failed: {e}")
            return False

        valid = bool(isinstance(data, dict) and data.get("valid"))
        if not valid:
            self.logout()
        return valid

    def token_expired(self, leeway: float = 0) -> bool:
        return token_expired(self._remote.token, leeway)

    def logout(self) -> None:
        if self.username:
            logger.info(f"Logged out {self.username}")
        self._remote.token = None
        self.username = None
