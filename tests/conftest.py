#!/usr/bin/env python3
"""
Pytest configuration for truenas-block tests.

This file contains shared fixtures and configurations for unit tests.
"""

import os
import sys
import logging
from unittest.mock import MagicMock

import pytest

# Add project root and the tests directory (for fakes) to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../')))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from fakes import FakeRunner, FakeTrueNAS, TARGET_IQN, make_config  # noqa: E402


@pytest.fixture
def mock_logger():
    """Fixture providing a mock logger that won't output during tests."""
    logger = MagicMock(spec=logging.Logger)
    return logger


@pytest.fixture
def storage_config():
    """Fixture providing a valid, unvalidated storage configuration."""
    return make_config()


@pytest.fixture
def fake_truenas():
    """Fixture providing an in-memory appliance behind the dispatcher interface."""
    return FakeTrueNAS()


@pytest.fixture
def fake_runner():
    """Fixture providing a host command runner with an active session."""
    return FakeRunner({
        'iscsiadm -m session': f"tcp: [1] 10.0.0.5:3260,1 {TARGET_IQN} (non-flash)\n",
    })
