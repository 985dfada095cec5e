"""
Tests for storage layer.

Test Structure:

- **backends/**: Tests for backend implementations (SQLite, SQLAlchemy engine)
- **models/**: Tests for the SQLModel link table

Run all storage tests:
    pytest tests/storage/ -v
"""
