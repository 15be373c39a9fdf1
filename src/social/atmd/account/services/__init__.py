"""
Use Cases

Each use case is a class that receives its collaborators in the constructor and exposes
coroutines returning ``Ok``/``Err``. Expected failures are never raised; they come back
as an ``AccountError`` subclass wrapping the lower-level error.

- ``AuthorizationInitiator``: start an AT Protocol login
- ``CallbackReconciler``: finish a login, find or create the user, issue the session
- ``SessionValidator``: local then authoritative check of a session
- ``ConnectionManager``: GitHub App connection lifecycle
- ``AccountManager``: profile queries and mutations, account deletion, logout
"""
