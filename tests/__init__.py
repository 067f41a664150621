"""
Test suite for the bulk product ingestion service.

Run all tests: pytest
Run unit tests only: pytest tests/unit/
Run specific file: pytest tests/unit/test_matching_service.py -v
"""
