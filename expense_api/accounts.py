import logging
from typing import Tuple

from .database import UserModel
from .errors import Conflict, InvalidArgument, Unauthenticated
from .security import PasswordHasher, TokenService
from .store import UserStore

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AccountService:
    """Registration and login. Both hand back a freshly issued bearer token."""

    def __init__(self, store: UserStore, hasher: PasswordHasher, tokens: TokenService):
        self.store = store
        self.hasher = hasher
        self.tokens = tokens

    async def register(self, name: str, email: str, password: str) -> Tuple[UserModel, str]:
        name = (name or "").strip()
        email = normalize_email(email or "")
        if not name or not email or not password:
            raise InvalidArgument("name, email and password are required")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidArgument(f"password must be at least {MIN_PASSWORD_LENGTH} characters")

        if await self.store.get_by_email(email) is not None:
            raise Conflict("Email already registered")

        user = await self.store.add(
            UserModel(name=name, email=email, password_hash=self.hasher.hash(password))
        )
        logger.info("Registered user %s", user.id)
        return user, self.tokens.issue(user.id)

    async def login(self, email: str, password: str) -> str:
        user = await self.store.get_by_email(normalize_email(email or ""))
        if user is None or not self.hasher.verify(password or "", user.password_hash):
            logger.warning("Failed login attempt")
            raise Unauthenticated("Incorrect email or password")
        return self.tokens.issue(user.id)

    async def me(self, user_id: int) -> UserModel:
        user = await self.store.get(user_id)
        if user is None:
            raise Unauthenticated()
        return user
