"""
Tests for ComplianceBackend/auth.py
Caller identity from the x-user-id header, or from a verified bearer JWT when configured.
"""

import pytest
from starlette.requests import Request

from ComplianceBackend import auth
from ComplianceBackend.errors import AuthenticationError


def _request(headers):
    raw = [(k.lower().encode(), v.encode()) for k, v in headers.items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw})


class TestHeaderIdentity:
    def test_header_user(self):
        assert auth.require_user_id(_request({"x-user-id": " user-1 "})) == "user-1"

    def test_missing_header(self):
        with pytest.raises(AuthenticationError) as exc:
            auth.require_user_id(_request({}))
        assert exc.value.status_code == 401

    def test_overlong_header_rejected(self):
        with pytest.raises(AuthenticationError):
            auth.require_user_id(_request({"x-user-id": "u" * 129}))


class TestJwtIdentity:
    def test_bearer_required_when_configured(self, monkeypatch):
        monkeypatch.setenv("AUTH_JWKS_URL", "https://issuer.test/.well-known/jwks.json")
        with pytest.raises(AuthenticationError):
            auth.require_user_id(_request({"x-user-id": "spoofed"}))

    def test_malformed_token(self, monkeypatch):
        monkeypatch.setenv("AUTH_JWKS_URL", "https://issuer.test/.well-known/jwks.json")
        with pytest.raises(AuthenticationError):
            auth.require_user_id(_request({"Authorization": "Bearer not-a-jwt"}))

    def test_subject_from_verified_claims(self, monkeypatch):
        monkeypatch.setenv("AUTH_JWKS_URL", "https://issuer.test/.well-known/jwks.json")
        monkeypatch.setattr(auth, "verify_bearer_jwt", lambda request, config: {"sub": "user_abc"})
        assert auth.require_user_id(_request({"Authorization": "Bearer a.b.c"})) == "user_abc"

    def test_issuer_derived_from_jwks_url(self, monkeypatch):
        monkeypatch.setenv("AUTH_JWKS_URL", "https://issuer.test/.well-known/jwks.json")
        monkeypatch.setenv("AUTH_AUDIENCE", "compliance")
        assert auth._get_auth_config() == (
            "https://issuer.test/.well-known/jwks.json",
            "compliance",
            "https://issuer.test",
        )
