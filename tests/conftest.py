"""
conftest.py - Pytest Configuration and Fixtures

Provides shared fixtures and configuration for all test modules.
"""

import os
import shutil
import sys
import tempfile

import pytest

# Add src and tests to path for all tests
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))


# ============================================================================
# PYTEST MARKERS
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: full transaction runs against the mock bank")


# ============================================================================
# SHARED FIXTURES
# ============================================================================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    temp = tempfile.mkdtemp()
    yield temp
    if os.path.exists(temp):
        shutil.rmtree(temp)


@pytest.fixture
def ebics_config():
    from test_utils import create_test_config
    return create_test_config()


@pytest.fixture
def keyring():
    from test_utils import create_test_keyring
    return create_test_keyring()


@pytest.fixture
def mock_bank():
    from test_utils import MockBank
    return MockBank()
