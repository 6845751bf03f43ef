import os

import pytest


def pytest_configure(config):
    config.addinivalue_line("markers", "pyqt_required: needs a Qt platform; set PYQT_TESTS=1 to run")


def pytest_runtest_setup(item):
    if item.get_closest_marker("pyqt_required") and not os.getenv("PYQT_TESTS"):
        pytest.skip("PYQT_TESTS not set; skipping PyQt widget test")
