"""Encryption service client (retries, circuit breaker) and console chat client."""
