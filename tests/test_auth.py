import jwt
import pytest

from hotel_tv_core.auth import AdminAuthenticator, AdminIdentity, issue_token

SECRET = "test-secret-that-is-long-enough-for-hs256"


@pytest.mark.asyncio
async def test_valid_token_resolves_admin(store) -> None:
    auth = AdminAuthenticator(store, SECRET)
    identity = await auth.authenticate(issue_token(SECRET, 1))
    assert identity == AdminIdentity(id=1, username="admin")


@pytest.mark.asyncio
async def test_invalid_tokens_are_rejected(store) -> None:
    auth = AdminAuthenticator(store, SECRET)
    assert await auth.authenticate(None) is None
    assert await auth.authenticate("not-a-jwt") is None
    assert await auth.authenticate(issue_token("another-secret-that-is-also-long-enough", 1)) is None
    assert await auth.authenticate(issue_token(SECRET, 99)) is None
    assert await auth.authenticate(issue_token(SECRET, 1, expires_in=-60)) is None
    no_claim = jwt.encode({"sub": "1"}, SECRET, algorithm="HS256")
    assert await auth.authenticate(no_claim) is None


@pytest.mark.asyncio
async def test_missing_secret_disables_authentication(store) -> None:
    auth = AdminAuthenticator(store, None)
    assert auth.enabled is False
    assert await auth.authenticate(issue_token(SECRET, 1)) is None
