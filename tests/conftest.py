import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import hamtmap`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from hamtmap.config import ConfigManager  # noqa: E402
from hamtmap.hashing import TrieOptions  # noqa: E402
from hamtmap.store import MemoryStore  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless HAMTMAP_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('HAMTMAP_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set HAMTMAP_RUN_SLOW=1 to enable'))


_CONFIG_ENV_VARS = (
    "HAMTMAP_BIT_WIDTH",
    "HAMTMAP_BUCKET_SIZE",
    "HAMTMAP_CACHE_SIZE",
    "HAMTMAP_STORE_DIR",
    "HAMTMAP_VERIFY_READS",
    "HAMTMAP_LOG_LEVEL",
    "HAMTMAP_LOG_FORMAT",
)


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    """Every test starts from default configuration."""
    for name in _CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    ConfigManager().reset()
    yield
    ConfigManager().reset()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def small_options() -> TrieOptions:
    """Narrow nodes so a few dozen keys already build several levels."""
    return TrieOptions(bit_width=2, bucket_size=2)
