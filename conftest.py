"""Pytest configuration for Transactional Soft Deletes."""


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "scenario: end-to-end delete/restore scenario test"
    )
