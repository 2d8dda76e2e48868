import time

import jwt
import pytest

from custody.errors import ConfigError, PersistenceError
from custody.tokens import RevokedTokenStore, SessionTokenIssuer, TokenStatus

SECRET = "unit-test-secret-unit-test-secret-0123"
AUTH_WALLET = {"ETH": "0x" + "a" * 40}


@pytest.fixture()
def revoked(tmp_path):
    return RevokedTokenStore(tmp_path / "revoked.json")


@pytest.fixture()
def issuer(revoked):
    return SessionTokenIssuer(SECRET, revoked_store=revoked)


def test_issue_and_verify(issuer):
    token = issuer.issue("player", AUTH_WALLET, "game-one")
    result = issuer.verify(token)

    assert result.status is TokenStatus.VALID
    assert result.claims["handle"] == "player"
    assert result.claims["sub"] == "player"
    assert result.claims["scope"] == "game-one"
    assert result.claims["auth_wallet"] == AUTH_WALLET
    assert result.claims["exp"] - result.claims["iat"] == 3600
    assert result.as_dict()["status"] == "valid"


def test_each_token_has_unique_id(issuer):
    first = issuer.verify(issuer.issue("player", AUTH_WALLET, "game")).claims["jti"]
    second = issuer.verify(issuer.issue("player", AUTH_WALLET, "game")).claims["jti"]
    assert first != second


def test_expiry_is_checked_at_verification(revoked):
    past = SessionTokenIssuer(SECRET, revoked_store=revoked, clock=lambda: time.time() - 7200)
    token = past.issue("player", AUTH_WALLET, "game")

    result = SessionTokenIssuer(SECRET, revoked_store=revoked).verify(token)
    assert result.status is TokenStatus.EXPIRED
    assert result.claims == {}
    assert result.as_dict() == {"status": "expired"}


def test_foreign_secret_is_invalid(issuer):
    other = SessionTokenIssuer("another-secret-another-secret-012345")
    token = other.issue("player", AUTH_WALLET, "game")
    assert issuer.verify(token).status is TokenStatus.INVALID


@pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
def test_garbage_is_invalid(issuer, token):
    assert issuer.verify(token).status is TokenStatus.INVALID


def test_tampered_payload_is_invalid(issuer):
    header, payload, signature = issuer.issue("player", AUTH_WALLET, "game").split(".")
    forged = jwt.encode({"handle": "admin"}, "x" * 40, algorithm="HS256").split(".")[1]
    assert issuer.verify(".".join([header, forged, signature])).status is TokenStatus.INVALID


def test_token_missing_claims_is_invalid(issuer):
    token = jwt.encode({"handle": "player", "exp": int(time.time()) + 60}, SECRET, algorithm="HS256")
    assert issuer.verify(token).status is TokenStatus.INVALID


def test_revoked_token(issuer, revoked, tmp_path):
    token = issuer.issue("player", AUTH_WALLET, "game")
    assert issuer.revoke(token) is True
    assert issuer.verify(token).status is TokenStatus.REVOKED

    reopened = SessionTokenIssuer(SECRET, revoked_store=RevokedTokenStore(tmp_path / "revoked.json"))
    assert reopened.verify(token).status is TokenStatus.REVOKED


def test_revoke_write_failure_is_reported(issuer, tmp_path):
    token = issuer.issue("player", AUTH_WALLET, "game")
    (tmp_path / "revoked.tmp").mkdir()

    with pytest.raises(PersistenceError):
        issuer.revoke(token)
    assert issuer.verify(token).status is TokenStatus.VALID


def test_revoke_rejects_foreign_tokens(issuer):
    other = SessionTokenIssuer("another-secret-another-secret-012345")
    assert issuer.revoke(other.issue("player", AUTH_WALLET, "game")) is False


def test_revoke_requires_store():
    issuer = SessionTokenIssuer(SECRET)
    with pytest.raises(ConfigError):
        issuer.revoke(issuer.issue("player", AUTH_WALLET, "game"))


@pytest.mark.parametrize("secret", [None, "", "short-secret"])
def test_weak_secret_is_a_config_error(secret):
    with pytest.raises(ConfigError):
        SessionTokenIssuer(secret)


def test_repr_hides_secret(issuer):
    assert SECRET not in repr(issuer)


def test_from_settings(settings):
    issuer = SessionTokenIssuer.from_settings(settings)
    token = issuer.issue("player", AUTH_WALLET, "game")
    assert issuer.verify(token).valid
