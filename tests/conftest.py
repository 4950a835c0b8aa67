import sys
from dataclasses import replace

import pytest

# Ensure project root is importable (so `import devenv` / `import main` work without installing)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from devenv import db  # noqa: E402
from devenv.docker_ops import ResourceClient  # noqa: E402
from devenv.ports import PortResolver  # noqa: E402

from fakes import FakeDockerClient  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test logs into its own sqlite file."""
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(tmp_path / "devenv.db"), log_level="DEBUG"))
    return tmp_path / "devenv.db"


@pytest.fixture
def occupied_ports():
    return set()


@pytest.fixture
def fake_docker():
    return FakeDockerClient()


@pytest.fixture
def resources(fake_docker, occupied_ports):
    return ResourceClient(client=fake_docker, port_resolver=PortResolver(probe=lambda p: p not in occupied_ports))
