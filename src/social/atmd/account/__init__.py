"""
Account - federated identity and session lifecycle

This package signs users in with their AT Protocol (Bluesky) identity, links a GitHub App
installation to their account for delegated API access, and issues the local session
credential that every other authenticated request relies on.

Key Components:
- app: aiohttp web layer, configuration and the composition root
- atproto: AT Protocol OAuth adapter (PAR, PKCE, DPoP, token exchange, re-validation)
- github: GitHub App adapter (code exchange, token refresh, installations)
- model: SQLAlchemy models for users, GitHub connections and provider sessions
- repository: persistence adapters (PostgreSQL and Redis)
- resolve: handle and DID resolution
- services: the use cases (authorization, callback, session validation, connections, accounts)
- session: signed session credential issue/read/remove

Login Flow:
1. AuthorizationInitiator resolves the handle, prepares a pushed authorization request
   and records a single-use authorization state
2. The user approves the request at their PDS authorization server
3. CallbackReconciler consumes the state, exchanges the code for a DID, finds or creates
   the local user and issues the session credential
4. SessionValidator re-checks the credential locally and against the provider on every
   protected request

Every use case returns an Ok or Err value; expected failures never escape as exceptions.
"""
