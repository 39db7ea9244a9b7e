import os
import time
from unittest.mock import patch

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import HTTPException
from jose import jwt
from jose.utils import long_to_base64

from grid_api import security

KID = "test-key"


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def jwks(signing_key):
    numbers = signing_key.public_key().public_numbers()
    return {"keys": [{
        "kty": "RSA",
        "kid": KID,
        "use": "sig",
        "alg": "RS256",
        "n": long_to_base64(numbers.n).decode(),
        "e": long_to_base64(numbers.e).decode(),
    }]}


def make_token(signing_key, kid=KID, **overrides):
    claims = {
        "sub": "user-42",
        "iss": os.environ["JWT_ISSUER"],
        "aud": os.environ["JWT_AUDIENCE"],
        "exp": int(time.time()) + 300,
        "roles": ["Engineer"],
    }
    claims.update(overrides)
    pem = signing_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return jwt.encode(claims, pem, algorithm="RS256", headers={"kid": kid})


@pytest.mark.parametrize("payload,roles", [
    ({"roles": ["Admin", "Engineer"]}, ["Admin", "Engineer"]),
    ({"roles": "Admin, Engineer"}, ["Admin", "Engineer"]),
    ({"role": "Viewer"}, ["Viewer"]),
    ({"http://schemas.microsoft.com/ws/2008/06/identity/claims/role": ["Admin"]}, ["Admin"]),
    ({"roles": [None, "", "Ops"]}, ["Ops"]),
    ({}, []),
])
def test_extract_roles(payload, roles):
    assert security.extract_roles(payload) == roles


def test_jwk_to_pem_matches_public_key(signing_key, jwks):
    expected = signing_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    assert security.jwk_to_pem(jwks["keys"][0]) == expected


def test_jwk_to_pem_rejects_non_rsa():
    with pytest.raises(ValueError):
        security.jwk_to_pem({"kty": "EC"})


class TestVerifyJwt:
    def test_valid_token(self, signing_key, jwks):
        with patch("grid_api.security.get_jwks", return_value=jwks):
            payload = security.verify_jwt(make_token(signing_key))
        assert payload["sub"] == "user-42"
        assert security.extract_roles(payload) == ["Engineer"]

    def test_expired_token(self, signing_key, jwks):
        token = make_token(signing_key, exp=int(time.time()) - 60)
        with patch("grid_api.security.get_jwks", return_value=jwks):
            with pytest.raises(HTTPException) as raised:
                security.verify_jwt(token)
        assert raised.value.status_code == 401
        assert raised.value.detail == "Token has expired"

    def test_wrong_audience(self, signing_key, jwks):
        token = make_token(signing_key, aud="api://someone-else")
        with patch("grid_api.security.get_jwks", return_value=jwks):
            with pytest.raises(HTTPException) as raised:
                security.verify_jwt(token)
        assert raised.value.status_code == 401

    def test_unknown_kid_refreshes_then_fails(self, signing_key, jwks):
        token = make_token(signing_key, kid="rotated-away")
        with patch("grid_api.security.get_jwks", return_value=jwks) as fetch:
            with pytest.raises(HTTPException) as raised:
                security.verify_jwt(token)
        assert raised.value.status_code == 401
        assert fetch.call_count == 2


def test_user_id_for_rate_limiting(signing_key, jwks):
    with patch("grid_api.security.get_jwks", return_value=jwks):
        assert security.get_user_id_from_token(make_token(signing_key)) == "user-42"
        assert security.get_user_id_from_token("not-a-jwt") == "invalid_user"
