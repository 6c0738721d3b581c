import sys
from datetime import date
from pathlib import Path

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from sellerpulse.services.data_source import DataSourceManager, init_tenant_database  # noqa: E402

# Fixed anchor for relative date filters: "previous month" is February 2024.
TODAY = date(2024, 3, 15)


@pytest.fixture
def data_sources(tmp_path: Path) -> DataSourceManager:
    """DataSourceManager over tmp_path with a seeded ``demo`` tenant."""
    manager = DataSourceManager(tmp_path)
    init_tenant_database(manager.path_for("demo"), TODAY)
    return manager
