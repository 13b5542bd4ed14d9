import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import Settings
from .errors import Unauthenticated

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------------
# Passwords
# ----------------------------------------------------------------------------
class PasswordHasher:
    def __init__(self, rounds: int = 12):
        self._context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)

    def hash(self, password: str) -> str:
        return self._context.hash(password)

    def verify(self, plain_password: str, password_hash: str) -> bool:
        return self._context.verify(plain_password, password_hash)


# ----------------------------------------------------------------------------
# Tokens
# ----------------------------------------------------------------------------
@dataclass(frozen=True)
class TokenValid:
    user_id: int


@dataclass(frozen=True)
class TokenExpired:
    pass


@dataclass(frozen=True)
class TokenMalformed:
    reason: str = "malformed"


TokenCheck = Union[TokenValid, TokenExpired, TokenMalformed]


class TokenService:
    """Issues and verifies signed bearer tokens.

    A token carries ``sub`` (the user id), ``iat`` and ``exp`` as epoch
    seconds. Nothing is stored server-side, so verification only needs the
    secret and the clock and can be called from any number of requests at
    once.
    """

    def __init__(self, secret_key: str, algorithm: str, ttl: timedelta, clock: Clock = utcnow):
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._ttl = ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = utcnow) -> "TokenService":
        return cls(
            secret_key=settings.secret_key,
            algorithm=settings.algorithm,
            ttl=timedelta(minutes=settings.access_token_expire_minutes),
            clock=clock,
        )

    def issue(self, user_id: int) -> str:
        issued_at = self._clock()
        claims = {
            "sub": str(user_id),
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self._ttl).timestamp()),
        }
        return jwt.encode(claims, self._secret_key, algorithm=self._algorithm)

    def verify(self, token: Optional[str]) -> TokenCheck:
        if not token:
            return TokenMalformed("missing token")
        try:
            # Expiry is checked below against the injected clock.
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            return TokenMalformed(str(exc))

        subject = payload.get("sub")
        expires_at = payload.get("exp")
        if not isinstance(expires_at, int) or isinstance(expires_at, bool):
            return TokenMalformed("missing exp claim")
        try:
            user_id = int(subject)
        except (TypeError, ValueError):
            return TokenMalformed("missing or non-numeric sub claim")

        if self._clock().timestamp() >= expires_at:
            return TokenExpired()
        return TokenValid(user_id)


def authenticate(tokens: TokenService, token: Optional[str]) -> int:
    """Resolve the caller's user id or raise :class:`Unauthenticated`.

    Missing, malformed, forged and expired tokens all get the same response.
    """
    check = tokens.verify(token)
    if isinstance(check, TokenValid):
        return check.user_id
    if isinstance(check, TokenExpired):
        logger.debug("Rejected expired token")
    else:
        logger.debug("Rejected token: %s", check.reason)
    raise Unauthenticated()
