"""Pytest configuration and shared fixtures."""

import pytest
from hypothesis import Verbosity, settings

from fakes import TALOSCONFIG

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


@pytest.fixture
def talosconfig_file(tmp_path):
    """A talosconfig with two contexts on disk."""
    path = tmp_path / "talosconfig"
    path.write_text(TALOSCONFIG)
    return path
