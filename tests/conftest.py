import sys
from pathlib import Path

import pytest

# Ensure the package root is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture
def runs_file(tmp_path):
    """File a counted service appends one line to per run."""
    return tmp_path / "runs"
