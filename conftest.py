"""
Pytest configuration for the VSFS checker test suite.

    python -m pytest                 # everything
    python -m pytest -m "not cli"    # skip command-line tests

The repository root holds the modules under test; this file being here
puts it on sys.path for the tests/ directory as well.
"""

import pytest

from vsfs import VSFSImage, format_image


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "cli: tests that drive the vsfsck / vsfs command-line entry points")


@pytest.fixture
def image_path(tmp_path):
    """Path to a freshly formatted, consistent image."""
    path = tmp_path / "vsfs.img"
    format_image(path)
    return path


@pytest.fixture
def image(image_path):
    """(path, VSFSImage) pair; call ``fs.save(path)`` after editing."""
    return image_path, VSFSImage.load(image_path)
