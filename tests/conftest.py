"""Pytest configuration for all tests."""

import logging

import pytest


@pytest.fixture(autouse=True)
def _quiet_event_logging():
    """Keep per-event log lines out of captured output."""
    logger = logging.getLogger("agentflow.events.subscribers")
    previous = logger.level
    logger.setLevel(logging.WARNING)
    yield
    logger.setLevel(previous)
