from __future__ import annotations

import time

import jwt

from backend.app.auth.linking_token import generate_linking_token, verify_linking_token

SECRET = "linking-secret-for-tests-0123456789"


def test_token_round_trip_carries_email_and_provider() -> None:
    token = generate_linking_token("a@example.com", "google", secret=SECRET)

    data = verify_linking_token(token, secret=SECRET)

    assert data is not None
    assert (data.email, data.provider) == ("a@example.com", "google")
    assert abs(data.issued_at - time.time()) < 5


def test_token_expires_after_ttl() -> None:
    token = generate_linking_token(
        "a@example.com", "google", secret=SECRET, ttl_seconds=600, now=time.time() - 601
    )

    assert verify_linking_token(token, secret=SECRET) is None


def test_token_signed_with_other_secret_is_rejected() -> None:
    token = generate_linking_token("a@example.com", "google", secret="another-secret-for-tests-0123456789")

    assert verify_linking_token(token, secret=SECRET) is None


def test_token_for_other_purpose_is_rejected() -> None:
    now = int(time.time())
    token = jwt.encode(
        {"email": "a@example.com", "provider": "google", "iat": now, "exp": now + 60},
        SECRET,
        algorithm="HS256",
    )

    assert verify_linking_token(token, secret=SECRET) is None


def test_garbage_is_rejected() -> None:
    assert verify_linking_token("not-a-token", secret=SECRET) is None
