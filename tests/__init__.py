"""
Tests Package - Unit and Integration Tests

Test structure:
- tests/conftest.py - FakeClock, in-memory stores and pipeline fixtures
- tests/test_executor.py, test_retry.py, test_cooldown.py - rate limiting core
- tests/test_extraction.py, test_chain.py, test_orchestrator.py - ingestion pipeline
- tests/test_service.py, test_scheduler.py, test_api.py - caller surfaces
- tests/test_db.py, test_clients.py, test_config.py, test_documents.py,
  test_logging.py - infrastructure
"""
