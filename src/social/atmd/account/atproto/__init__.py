"""
AT Protocol Integration

Identity provider adapter for AT Protocol (Bluesky) OAuth. The login flow only sees the
``IdentityProvider`` protocol; everything protocol specific lives here:

- ``pds``: authorization server discovery from a PDS
- ``dpop``: PKCE, DPoP proofs and client assertions, and the nonce-retrying request helper
- ``oauth``: ``ATProtoIdentityProvider``
"""
