"""Shared protocol, framing, configuration and error definitions."""
