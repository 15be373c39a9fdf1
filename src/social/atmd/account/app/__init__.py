"""
Account Service Application Layer

The aiohttp web application in front of the use cases. Handlers translate HTTP requests
into use case calls and use case results into responses; no authentication decision is
made here.

Key Components:
- cli.py: Entry point for running the application
- server.py: Composition root, middleware and routes
- config.py: Settings and the AppKeys that share resources with handlers
- context.py: Cookie transport used by the session and anti-forgery state
- handlers/: Request handlers for each group of endpoints
- util/: Key generation and identity resolution commands

Endpoints:
- AT Protocol login (/auth/atproto/*) and logout (/auth/logout)
- Account (/api/me/*)
- GitHub App connection (/auth/github/*, /api/github/*)
- Health (/internal/alive, /internal/ready)
"""
