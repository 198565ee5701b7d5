from __future__ import annotations

from typing import Optional, Tuple, Union

from jwtpizza.config import Settings
from jwtpizza.logging import get_logger
from jwtpizza.service.credentials import CredentialService
from jwtpizza.service.errors import NotFoundError
from jwtpizza.service.tokens import TokenService
from jwtpizza.storage.models import Role, User

logger = get_logger(__name__)


def authorize(user: Optional[User], required_role: Role | str, scope_id: Optional[int] = None) -> bool:
    """Decide whether ``user`` may act as ``required_role`` on ``scope_id``.

    Admin is granted everything. Any other role needs a binding with the
    same role, and when a scope is asked for, the same scope. Unknown roles
    grant nothing.
    """
    if user is None:
        return False
    if user.has_role(Role.ADMIN):
        return True
    try:
        role = Role(required_role)
    except ValueError:
        return False
    for binding in user.roles:
        if binding.role is not role:
            continue
        if scope_id is None or binding.object_id == scope_id:
            return True
    return False


class AuthService:
    """Login, logout and registration on top of credentials and tokens."""

    def __init__(
        self,
        credentials: CredentialService,
        tokens: TokenService,
        settings: Settings,
    ) -> None:
        self.credentials = credentials
        self.tokens = tokens
        self.settings = settings
        self.logger = logger

    async def authenticate(
        self, email_or_id: Union[str, int], password: Optional[str] = None
    ) -> User:
        """Look up a user by email or id, checking ``password`` when one is given.

        Unknown user and wrong password fail identically with
        ``NotFoundError("unknown user")``.
        """
        try:
            if isinstance(email_or_id, int):
                user: Optional[User] = self.credentials.get_user(email_or_id)
            else:
                user = self.credentials.find_by_email(email_or_id)
        except NotFoundError:
            user = None
        if password is None:
            if user is None:
                raise NotFoundError("unknown user")
            return user
        if not await self.credentials.verify_password(user, password):
            self.logger.warning("login_rejected")
            raise NotFoundError("unknown user")
        return user

    def authorize(
        self, user: Optional[User], required_role: Role | str, scope_id: Optional[int] = None
    ) -> bool:
        return authorize(user, required_role, scope_id)

    async def register(self, name: str, email: str, password: str) -> Tuple[User, str]:
        user = await self.credentials.create_user(name, email, password)
        token = await self.tokens.issue(user)
        return user, token

    async def login(self, email: str, password: str) -> Tuple[User, str]:
        user = await self.authenticate(email, password)
        token = await self.tokens.issue(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, token

    async def logout(self, token: Optional[str]) -> None:
        await self.tokens.revoke(token)

    async def delete_user(self, user_id: int) -> None:
        self.credentials.delete_user(user_id)
        await self.tokens.forget_user(user_id)
