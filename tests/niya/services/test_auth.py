from datetime import timedelta

import jwt
import pytest

from niya.core.exceptions import AuthenticationError
from niya.services.auth import SessionAuthenticator, bearer_token


def test_issued_token_resolves_to_user(authenticator, store, make_user):
    user = make_user()
    token = authenticator.issue_token(user.id)

    resolved = authenticator.authenticate(token, store)

    assert resolved.id == user.id


@pytest.mark.parametrize("token", [None, "", "   "])
def test_missing_token_is_rejected(authenticator, store, token):
    with pytest.raises(AuthenticationError) as exc:
        authenticator.authenticate(token, store)
    assert exc.value.status_code == 401
    assert exc.value.message == "Authentication token required"


def test_wrong_signature_is_rejected(store, make_user):
    user = make_user()
    forged = SessionAuthenticator(secret="someone-else").issue_token(user.id)

    with pytest.raises(AuthenticationError) as exc:
        SessionAuthenticator(secret="test-secret").authenticate(forged, store)
    assert exc.value.message == "Invalid authentication token"


def test_expired_token_is_rejected(authenticator, store, make_user):
    user = make_user()
    token = authenticator.issue_token(user.id, expires_in=timedelta(seconds=-5))

    with pytest.raises(AuthenticationError) as exc:
        authenticator.authenticate(token, store)
    assert exc.value.code == "token_expired"


@pytest.mark.parametrize("claims", [{}, {"sub": "not-a-number"}])
def test_token_without_integer_subject_is_rejected(authenticator, claims):
    token = jwt.encode(claims, "test-secret", algorithm="HS256")
    with pytest.raises(AuthenticationError):
        authenticator.user_id_from_token(token)


def test_unknown_user_reports_404_by_default(authenticator, store):
    token = authenticator.issue_token(9999)

    with pytest.raises(AuthenticationError) as exc:
        authenticator.authenticate(token, store)
    assert exc.value.status_code == 404

    with pytest.raises(AuthenticationError) as exc:
        authenticator.authenticate(token, store, missing_user_status=401)
    assert exc.value.status_code == 401


def test_bearer_token_parsing():
    assert bearer_token("Bearer abc") == "abc"
    assert bearer_token("bearer  abc ") == "abc"
    assert bearer_token("Basic abc") is None
    assert bearer_token(None) is None
    assert bearer_token("Bearer ") is None
