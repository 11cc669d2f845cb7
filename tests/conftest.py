"""Pytest configuration and fixtures."""

import logging

import pytest

from dir_mirror import (
    AvailabilityMonitor,
    DeletionPolicy,
    EventReconciler,
    SyncConfig,
)


@pytest.fixture
def roots(tmp_path):
    """Create source and destination directories for testing."""
    src = tmp_path / "src"
    dst = tmp_path / "dst"
    src.mkdir()
    dst.mkdir()
    return src, dst


@pytest.fixture
def test_logger():
    """Logger that propagates to the root so caplog sees its records."""
    return logging.getLogger("tests.dir_mirror")


@pytest.fixture
def make_reconciler(roots, test_logger):
    """Build a reconciler over the roots fixture with a monitor that has already checked in."""
    src, dst = roots

    def _make(policy=DeletionPolicy.MIRROR, **kwargs):
        config = SyncConfig(str(src), str(dst), policy)
        monitor = AvailabilityMonitor(config.dest_root, logger=test_logger)
        monitor.check()
        return EventReconciler(config, monitor, logger=test_logger, **kwargs)

    return _make
