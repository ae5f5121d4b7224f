"""Signed, expiring links that let a customer reach their own booking."""

from __future__ import annotations

import datetime as dt
import secrets

from jose import JWTError, jwt

from .clock import Clock, SystemClock, parse_timestamp
from .exceptions import AuthorizationError

ALGORITHM = "HS256"


class PublicAccessGate:
    def __init__(
        self,
        secret: str,
        *,
        clock: Clock | None = None,
        base_url: str = "http://localhost:5000",
    ) -> None:
        self.secret = secret
        self.clock = clock or SystemClock()
        self.base_url = base_url.rstrip("/")

    def issue_token(self, booking_id: int, expires_at: dt.datetime | str) -> str:
        expires = parse_timestamp(expires_at, field="expires_at")
        claims = {
            "bookingId": str(booking_id),
            "iat": int(self.clock.now().timestamp()),
            "exp": int(expires.timestamp()),
            "jti": secrets.token_urlsafe(8),
        }
        return jwt.encode(claims, self.secret, algorithm=ALGORITHM)

    def public_url(self, booking_id: int, token: str) -> str:
        return f"{self.base_url}/p/{booking_id}?t={token}"

    def validate(self, booking_id: int, token: str | None) -> dict:
        """Return the token claims or raise :class:`AuthorizationError`.

        Expiry is checked against the gate's own clock rather than the
        wall clock jose would use.
        """

        if not token:
            raise AuthorizationError("Access token required")
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise AuthorizationError("Invalid booking token") from exc
        if str(claims.get("bookingId")) != str(booking_id):
            raise AuthorizationError("Invalid booking token")
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or exp <= self.clock.now().timestamp():
            raise AuthorizationError("Booking session has expired")
        return claims
