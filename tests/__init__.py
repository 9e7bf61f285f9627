"""
Test Suite

Contains unit tests for the runtime core.

Structure:
- tests/unit/: Tests for individual components (dispatcher, registries, subsystems, adapters, app)
- tests/fake_exchange.py: In-memory venue adapter used instead of real network calls

Uses pytest with pytest-asyncio for testing async functionality.
"""
