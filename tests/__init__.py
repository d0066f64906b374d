"""
CareCircle Test Suite
=====================

Tests for the missed-dose and patient reminder notification service.

Test Structure:
- test_actions/: Classifier, engines and scheduler
- test_services/: Data access against in-memory SQLite
- test_tools/: Delivery channels with mocked providers
- test_api/: FastAPI routes
- conftest.py: Shared pytest fixtures and fake channels

Running Tests:
    # Run all tests
    pytest

    # Run specific test module
    pytest tests/test_actions/

    # Run with verbose output
    pytest -v
"""
