"""
connectors — OAuth credential lifecycle for external services.

Provides a generic connector framework that handles:
  • OAuth2 auth-URL generation with single-use CSRF state
  • Callback handling (code → token exchange)
  • Per-user credential storage (one row per user + provider)
  • Transparent refresh of expiring access tokens
  • Fernet encryption of tokens at rest
  • Revocation / disconnect

Each provider (Gmail, Google Workspace, LinkedIn) is a subclass of BaseConnector.
"""
