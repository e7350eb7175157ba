"""
Basic tests for statecheck library.
"""

import statecheck


def test_import():
    """Test that statecheck module can be imported."""
    assert statecheck is not None


def test_version():
    """Test that version is set."""
    assert hasattr(statecheck, "__version__")
    assert statecheck.__version__ == "0.1.0"
