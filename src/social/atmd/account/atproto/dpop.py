"""
Proof helpers for the AT Protocol OAuth profile.

Every token-endpoint request made by the client carries two signed JWTs:

- a DPoP proof, signed with a per-login key pair, that binds the request to its HTTP
  method and URI
- a ``private_key_jwt`` client assertion, signed with one of the service's configured
  keys, that authenticates the confidential client

Authorization servers may answer the first attempt with ``use_dpop_nonce`` and a
``DPoP-Nonce`` header; the request is then re-signed with that nonce and sent again.
"""

import base64
from datetime import datetime, timezone
import hashlib
import secrets
from typing import Any, Dict, Optional, Tuple

from aiohttp import ClientSession
from jwcrypto import jwk, jwt
from ulid import ULID

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"

DPOP_NONCE_ERRORS = ("use_dpop_nonce", "invalid_dpop_proof")


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate a PKCE verifier and its S256 challenge.

    Returns:
        Tuple[str, str]: (pkce_verifier, pkce_challenge)
    """
    pkce_token = secrets.token_urlsafe(80)

    hashed = hashlib.sha256(pkce_token.encode("ascii")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    pkce_challenge = encoded.decode("ascii").rstrip("=")
    return (pkce_token, pkce_challenge)


def generate_dpop_key() -> jwk.JWK:
    """Generate a P-256 key pair for binding one login's tokens."""
    return jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")


def create_dpop_proof(
    dpop_key: jwk.JWK,
    http_method: str,
    http_uri: str,
    nonce: Optional[str] = None,
) -> str:
    """Create a signed DPoP proof for a single HTTP request."""
    now = int(datetime.now(timezone.utc).timestamp())
    claims: Dict[str, Any] = {
        "jti": secrets.token_urlsafe(32),
        "htm": http_method.upper(),
        "htu": http_uri,
        "iat": now,
        "exp": now + 30,
    }
    if nonce:
        claims["nonce"] = nonce

    proof = jwt.JWT(
        header={
            "alg": "ES256",
            "jwk": dpop_key.export_public(as_dict=True),
            "typ": "dpop+jwt",
        },
        claims=claims,
    )
    proof.make_signed_token(dpop_key)
    return proof.serialize()


def create_client_assertion(
    signing_key: jwk.JWK, signing_key_id: str, client_id: str, audience: str
) -> str:
    """Create a ``private_key_jwt`` assertion authenticating this client to ``audience``."""
    now = int(datetime.now(timezone.utc).timestamp())
    assertion = jwt.JWT(
        header={"alg": "ES256", "kid": signing_key_id},
        claims={
            "iss": client_id,
            "sub": client_id,
            "aud": audience,
            "jti": str(ULID()),
            "iat": now,
        },
    )
    assertion.make_signed_token(signing_key)
    return assertion.serialize()


async def dpop_request(
    session: ClientSession,
    url: str,
    dpop_key: jwk.JWK,
    signing_key: jwk.JWK,
    signing_key_id: str,
    client_id: str,
    audience: str,
    form: Dict[str, str],
    attempts: int = 3,
) -> Tuple[int, Dict[str, Any]]:
    """
    POST a form to an authorization server endpoint with fresh DPoP and client proofs.

    The request is re-signed and retried when the server asks for a DPoP nonce. Returns
    the final status code and decoded JSON body.
    """
    nonce: Optional[str] = None
    status, body = 0, {}

    while attempts > 0:
        attempts -= 1

        data = dict(form)
        data["client_assertion_type"] = CLIENT_ASSERTION_TYPE
        data["client_assertion"] = create_client_assertion(
            signing_key, signing_key_id, client_id, audience
        )
        headers = {"DPoP": create_dpop_proof(dpop_key, "POST", url, nonce)}

        async with session.post(url, headers=headers, data=data) as resp:
            status = resp.status
            body = await resp.json(content_type=None)
            if not isinstance(body, dict):
                body = {}

            if (
                status in (400, 401)
                and body.get("error", None) in DPOP_NONCE_ERRORS
                and resp.headers.get("DPoP-Nonce")
            ):
                nonce = resp.headers["DPoP-Nonce"]
                continue

            return status, body

    return status, body
