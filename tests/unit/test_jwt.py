"""Unit tests for HS256 access token issuance and verification."""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
from jose import jwt

from iam.core.jwt import (
    AccessTokenIssuer,
    TokenIssuerConfigurationError,
    TokenIssuerSettings,
    TokenValidationError,
)
from iam.models.user import User
from tests.unit.fakes import SIGNING_KEY, FrozenClock


def _user(username: str | None = "alice", email: str | None = "alice@example.com") -> User:
    return User(id=uuid4(), username=username, email=email)


def _issuer(clock: FrozenClock, **overrides: object) -> AccessTokenIssuer:
    values: dict[str, object] = {
        "issuer": "iam-tests",
        "audience": "iam-clients",
        "signing_key": SIGNING_KEY,
        "expiry_minutes": 15,
    }
    values.update(overrides)
    return AccessTokenIssuer(TokenIssuerSettings(**values), clock)  # type: ignore[arg-type]


@pytest.mark.parametrize("field", ["issuer", "audience", "signing_key"])
@pytest.mark.parametrize("value", ["", "   "])
def test_construction_fails_without_signing_configuration(
    clock: FrozenClock, field: str, value: str
) -> None:
    """Blank issuer, audience or key is a startup failure."""
    with pytest.raises(TokenIssuerConfigurationError):
        _issuer(clock, **{field: value})


@pytest.mark.parametrize(
    ("configured", "expected_minutes"),
    [(None, 60), (0, 60), (-5, 60), ("abc", 60), ("30", 30), (45, 45)],
)
def test_expiry_falls_back_to_default_unless_positive(
    clock: FrozenClock, configured: object, expected_minutes: int
) -> None:
    """Only positive integer expiries are honoured."""
    issuer = _issuer(clock, expiry_minutes=configured)

    issued = issuer.issue(_user(), [])

    assert issued.expires_at == clock.now() + timedelta(minutes=expected_minutes)


def test_claims_are_ordered_with_distinct_sorted_roles(clock: FrozenClock) -> None:
    """Roles de-duplicate case-insensitively, keep first spelling, and sort."""
    user = _user()

    claims = _issuer(clock).build_claims(user, ["writer", "Admin", "admin", "Editor", " "])

    assert claims == [
        ("sub", str(user.id)),
        ("preferred_username", "alice"),
        ("email", "alice@example.com"),
        ("role", "Admin"),
        ("role", "Editor"),
        ("role", "writer"),
    ]


def test_claims_default_role_and_email_as_username(clock: FrozenClock) -> None:
    """Users without a username present their email; no roles yields User."""
    user = _user(username=None)

    claims = _issuer(clock).build_claims(user, [])

    assert claims == [
        ("sub", str(user.id)),
        ("preferred_username", "alice@example.com"),
        ("email", "alice@example.com"),
        ("role", "User"),
    ]


def test_claims_omit_email_when_absent(clock: FrozenClock) -> None:
    user = _user(email=None)

    claim_types = [claim for claim, _ in _issuer(clock).build_claims(user, ["Admin"])]

    assert claim_types == ["sub", "preferred_username", "role"]


def test_issued_token_is_hs256_and_verifies(clock: FrozenClock) -> None:
    """Issued tokens verify with the same issuer and expose their claims."""
    issuer = _issuer(clock)
    user = _user()

    issued = issuer.issue(user, ["Planner", "Admin"])
    claims = issuer.verify(issued.access_token)

    assert jwt.get_unverified_header(issued.access_token)["alg"] == "HS256"
    assert claims.user_id == user.id
    assert claims.username == "alice"
    assert claims.email == "alice@example.com"
    assert claims.roles == ("Admin", "Planner")
    assert claims.has_role("planner")
    assert claims.expires_at == issued.expires_at


def test_issue_is_deterministic_apart_from_token_id(clock: FrozenClock) -> None:
    issuer = _issuer(clock)
    user = _user()

    first = jwt.get_unverified_claims(issuer.issue(user, ["b", "A"]).access_token)
    second = jwt.get_unverified_claims(issuer.issue(user, ["A", "b"]).access_token)

    first.pop("jti")
    second.pop("jti")
    assert list(first) == list(second)
    assert first == second


@pytest.mark.parametrize(
    "overrides",
    [
        {"signing_key": "a-different-signing-key"},
        {"audience": "someone-else"},
        {"issuer": "another-issuer"},
    ],
)
def test_verify_rejects_tokens_from_other_configuration(
    clock: FrozenClock, overrides: dict[str, str]
) -> None:
    token = _issuer(clock, **overrides).issue(_user(), []).access_token

    with pytest.raises(TokenValidationError) as exc_info:
        _issuer(clock).verify(token)

    assert exc_info.value.code == "invalid_token"


def test_verify_rejects_expired_token(clock: FrozenClock) -> None:
    clock.advance(hours=-2)
    token = _issuer(clock).issue(_user(), []).access_token

    with pytest.raises(TokenValidationError) as exc_info:
        _issuer(clock).verify(token)

    assert exc_info.value.code == "token_expired"
