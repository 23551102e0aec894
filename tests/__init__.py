"""
Calendar Assistant Tests

Unit tests mock every external system: Claude through AsyncMock clients,
Redis by patching get_redis, and the calendar providers through
httpx.MockTransport or adapter mocks with an in-memory credential store.

Running Tests:
    # Unit tests
    pytest tests/unit -v

    # Smoke tests against a running service
    pytest tests/e2e/smoke_test_e2e.py -v
"""
