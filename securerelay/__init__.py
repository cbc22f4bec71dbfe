"""
SecureRelay: encrypted group chat relay.

Packages:
- common: protocol messages, framing, configuration, error taxonomy
- crypto: versioned key store and AES-256-GCM encryption service
- server: relay server (gateway + fan-out) and encryption RPC server
- client: resilient encryption client and console chat client
"""

__version__ = "0.1.0"
