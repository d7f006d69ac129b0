"""
Test suite for Catalog Import.

Run all tests: pytest
Run unit tests only: pytest tests/unit/
Run API tests: pytest tests/test_import_api.py -v
Run specific file: pytest tests/unit/test_import_pipeline_service.py -v
"""
