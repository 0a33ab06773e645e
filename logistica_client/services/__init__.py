"""
Session services used by the authenticated client.

This package contains:
- Credential persistence
- Auth-flow calls (login, refresh, register)
- Single-flight token refresh
- Session termination
"""
