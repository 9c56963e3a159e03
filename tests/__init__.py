"""
SafeBack Test Suite.

This package contains:
- unit/: Unit tests (stores, providers, registry, tokens, config, CLI)
- integration/: Integration tests (engine end to end, HTTP API, SDK)
- fixtures.py: Row builders and in-memory providers shared by both
"""
