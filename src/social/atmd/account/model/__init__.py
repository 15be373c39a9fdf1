"""
Database Models

SQLAlchemy ORM models for the account service.

Key Models:
- base.py: Declarative base and shared annotated column types
- users.py: Local user records, keyed by ULID and unique by DID
- connections.py: GitHub delegated-access tokens, at most one per user
- provider_sessions.py: AT Protocol tokens obtained at login, used to re-validate sessions

Relationships:
- User 1 -- 0..1 GitHubConnection (deleted with the user)
- User.did 1 -- 0..1 ProviderSession.did

Uniqueness that the login and linking flows depend on (users.did, github_connections.user_id)
is enforced by unique indexes, never by application-level checks.
"""
