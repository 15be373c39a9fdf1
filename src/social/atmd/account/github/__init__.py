"""GitHub App integration: delegated access tokens and installation metadata."""
