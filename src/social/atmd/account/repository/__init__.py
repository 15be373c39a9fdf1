"""
Persistence adapters.

- users.py: SQLAlchemy implementation of UserRepository
- connections.py: SQLAlchemy implementation of ConnectionRepository (tokens encrypted at rest)
- states.py: Redis implementation of AuthorizationStateStore

Each adapter returns Ok/Err values and translates SQLAlchemy and redis-py exceptions with
the helpers in ``social.atmd.account.errors``. Deleting a missing row is reported as
NOT_FOUND; whether that counts as failure is decided by the use case.
"""
