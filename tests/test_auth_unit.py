"""Unit tests for authentication and authorization.

Covers:
- identical failures for unknown email and wrong password
- registration defaults
- role and scope checks
"""

import pytest

from jwtpizza.config import Settings
from jwtpizza.service.auth import AuthService, authorize
from jwtpizza.service.credentials import CredentialService
from jwtpizza.service.errors import ConflictError, NotFoundError
from jwtpizza.service.passwords import PasswordHasher
from jwtpizza.service.tokens import TokenService
from jwtpizza.storage.memory import MemoryStore
from jwtpizza.storage.models import Role, RoleBinding, User


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings):
    credentials = CredentialService(memory_store, PasswordHasher(time_cost=1))
    tokens = TokenService(memory_store, None, settings)
    return AuthService(credentials, tokens, settings)


class TestAuthenticate:
    async def test_register_defaults_to_diner(self, auth_service):
        user, token = await auth_service.register("pizza diner", "d@jwt.com", "a")

        assert user.roles == [RoleBinding(Role.DINER)]
        assert await auth_service.tokens.is_active(token)

    async def test_register_duplicate_email_conflicts(self, auth_service):
        await auth_service.register("pizza diner", "d@jwt.com", "a")

        with pytest.raises(ConflictError):
            await auth_service.register("other diner", "d@jwt.com", "b")

    async def test_authenticate_with_correct_password(self, auth_service):
        created, _ = await auth_service.register("pizza diner", "d@jwt.com", "a")

        user = await auth_service.authenticate("d@jwt.com", "a")

        assert user.id == created.id

    async def test_unknown_email_and_wrong_password_fail_identically(self, auth_service):
        await auth_service.register("pizza diner", "d@jwt.com", "a")

        with pytest.raises(NotFoundError) as unknown:
            await auth_service.authenticate("nobody@jwt.com", "a")
        with pytest.raises(NotFoundError) as wrong:
            await auth_service.authenticate("d@jwt.com", "wrong")

        assert unknown.value.message == wrong.value.message == "unknown user"
        assert unknown.value.status_code == wrong.value.status_code == 404
        assert unknown.value.detail == wrong.value.detail

    async def test_authenticate_without_password_skips_check(self, auth_service):
        await auth_service.register("pizza diner", "d@jwt.com", "a")

        user = await auth_service.authenticate("d@jwt.com")

        assert user.email == "d@jwt.com"

    async def test_authenticate_by_id(self, auth_service):
        registered, _ = await auth_service.register("pizza diner", "d@jwt.com", "a")

        user = await auth_service.authenticate(registered.id, "a")

        assert user.id == registered.id
        with pytest.raises(NotFoundError):
            await auth_service.authenticate(registered.id + 100, "a")

    async def test_email_comparison_is_exact(self, auth_service):
        await auth_service.register("pizza diner", "d@jwt.com", "a")

        with pytest.raises(NotFoundError):
            await auth_service.authenticate("D@JWT.COM", "a")

    async def test_login_then_logout(self, auth_service):
        await auth_service.register("pizza diner", "d@jwt.com", "a")

        user, token = await auth_service.login("d@jwt.com", "a")
        assert await auth_service.tokens.resolve(token) == user

        await auth_service.logout(token)
        assert await auth_service.tokens.resolve(token) is None

    async def test_login_does_not_revoke_earlier_sessions(self, auth_service):
        _, first = await auth_service.register("pizza diner", "d@jwt.com", "a")
        _, second = await auth_service.login("d@jwt.com", "a")

        assert await auth_service.tokens.is_active(first)
        assert await auth_service.tokens.is_active(second)

    async def test_delete_user_kills_all_sessions(self, auth_service):
        user, first = await auth_service.register("pizza diner", "d@jwt.com", "a")
        _, second = await auth_service.login("d@jwt.com", "a")

        await auth_service.delete_user(user.id)

        assert not await auth_service.tokens.is_active(first)
        assert not await auth_service.tokens.is_active(second)
        with pytest.raises(NotFoundError):
            await auth_service.authenticate("d@jwt.com", "a")


def _user(*roles):
    return User(id=1, name="u", email="u@jwt.com", roles=list(roles))


class TestAuthorize:
    def test_admin_bypasses_role_and_scope(self):
        admin = _user(RoleBinding(Role.ADMIN))

        assert authorize(admin, Role.FRANCHISEE, 42)
        assert authorize(admin, Role.DINER)
        assert authorize(admin, "anything-at-all")

    def test_franchisee_allowed_in_own_franchise(self):
        franchisee = _user(RoleBinding(Role.DINER), RoleBinding(Role.FRANCHISEE, 7))

        assert authorize(franchisee, Role.FRANCHISEE, 7)
        assert authorize(franchisee, Role.FRANCHISEE)

    def test_franchisee_of_other_franchise_denied(self):
        franchisee = _user(RoleBinding(Role.FRANCHISEE, 7))

        assert not authorize(franchisee, Role.FRANCHISEE, 8)

    def test_diner_cannot_act_as_admin_or_franchisee(self):
        diner = _user(RoleBinding(Role.DINER))

        assert authorize(diner, Role.DINER)
        assert not authorize(diner, Role.ADMIN)
        assert not authorize(diner, Role.FRANCHISEE, 7)

    def test_unknown_role_and_missing_bindings_authorize_nothing(self):
        assert not authorize(_user(RoleBinding(Role.DINER)), "owner")
        assert not authorize(_user(), Role.DINER)
        assert not authorize(None, Role.DINER)

    def test_service_delegates(self, auth_service):
        assert auth_service.authorize(_user(RoleBinding(Role.ADMIN)), Role.FRANCHISEE, 3)
