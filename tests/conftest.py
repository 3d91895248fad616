# tests/conftest.py
import os
import sys

import pytest

# config and core_utils are top-level modules under src/
SRC_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from config import CONFIG


@pytest.fixture(autouse=True)
def vm_conf_dir(tmp_path, monkeypatch):
    """Point generated VM confs and the phase state file at a temp directory."""
    directory = tmp_path / "generated-vm"
    monkeypatch.setitem(CONFIG, "VM_CONF_DIR", str(directory))
    monkeypatch.setitem(CONFIG, "HOST_GPU_CONF", str(tmp_path / "vm.conf"))
    monkeypatch.setitem(CONFIG, "ASSUME_YES", True)
    return directory
