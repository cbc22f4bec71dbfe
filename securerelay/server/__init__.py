"""
Server-side modules for SecureRelay.

This package contains server-side functionality including:
- Session registry and broadcast fan-out
- Transport gateway (encryption dispatch, per-sender ordering)
- Relay and encryption RPC servers
"""
