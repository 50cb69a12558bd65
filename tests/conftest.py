import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import sealkit.whitelist`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from sealkit.whitelist.config import ConfigManager  # noqa: E402
from sealkit.whitelist.keys import Ed25519Keypair  # noqa: E402
from sealkit.whitelist.node import LedgerNode  # noqa: E402


PACKAGE_ID = "0x" + "0" * 63 + "a"

WAL_TYPE = "0x" + "7e" * 32 + "::wal::WAL"
USDC_TYPE = "0x" + "5d" * 32 + "::usdc::USDC"
WAL_COIN = f"0x2::coin::Coin<{WAL_TYPE}>"
USDC_COIN = f"0x2::coin::Coin<{USDC_TYPE}>"

_CONFIG_ENV = (
    "WHITELIST_PACKAGE_ID",
    "WHITELIST_STATE_PATH",
    "WHITELIST_GAS_BUDGET",
    "WHITELIST_SETTLE_DELAY_MS",
    "WHITELIST_ERROR_TAXONOMY",
    "WHITELIST_LOG_LEVEL",
    "WHITELIST_LOG_FORMAT",
    "ADMIN_PRIVATE_KEY",
    "OWNER_PRIVATE_KEY",
)


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless WHITELIST_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('WHITELIST_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set WHITELIST_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    """Every test starts from default configuration with no whitelist env vars."""
    for name in _CONFIG_ENV:
        monkeypatch.delenv(name, raising=False)
    ConfigManager.reset()
    yield
    ConfigManager.reset()


@pytest.fixture
def node() -> LedgerNode:
    return LedgerNode(PACKAGE_ID)


@pytest.fixture
def admin() -> Ed25519Keypair:
    return Ed25519Keypair.generate()


@pytest.fixture
def owner() -> Ed25519Keypair:
    return Ed25519Keypair.generate()


@pytest.fixture
def user() -> Ed25519Keypair:
    return Ed25519Keypair.generate()
