"""
Cryptographic modules for SecureRelay.

- Versioned key storage with rotation and purge
- AES-256-GCM authenticated encryption of chat payloads
"""
