"""Bearer session tokens carrying the renter id and role."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "rental_session"
ALLOWED_ROLES = ("user", "admin")


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    role: str
    expires_at: int

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def create_session_token(
    user_id: str,
    role: str = "user",
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    if role not in ALLOWED_ROLES:
        raise ValueError(f"Unknown role: {role}")
    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    expires_at = int((issued_at + lifetime).timestamp())
    token = jwt.encode(
        {
            "sub": user_id,
            "role": role,
            "type": SESSION_TOKEN_TYPE,
            "iat": int(issued_at.timestamp()),
            "exp": expires_at,
        },
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    return {"token": token, "role": role, "expires_at": expires_at}


def decode_session_token(token: str) -> SessionClaims:
    """Verify signature, expiry, token type and role. Raises ValueError on any mismatch."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        raise ValueError("Session token missing subject.")
    role = str(payload.get("role") or "user")
    if role not in ALLOWED_ROLES:
        raise ValueError("Session token has an unknown role.")

    return SessionClaims(user_id=user_id, role=role, expires_at=int(payload.get("exp") or 0))
