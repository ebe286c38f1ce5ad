"""
Tests Package

Unit and integration tests for Tender Harvester.

Structure:
    - Unit tests: Test individual components in isolation
    - test_pipeline / test_fallback: Component interactions on a simulated clock
    - fixtures/: Release and page payload factories
"""

__all__ = []
