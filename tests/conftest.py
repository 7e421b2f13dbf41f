import pytest

from mac_access_guard.config import StoreSettings
from mac_access_guard.storage import MemoryBackend
from mac_access_guard.store import WhitelistStore


@pytest.fixture
def settings(tmp_path):
    return StoreSettings(data_dir=tmp_path / "data", max_backups=3, max_log_entries=50, lock_timeout=5.0)


@pytest.fixture
def file_store(settings):
    return WhitelistStore.from_settings(settings)


@pytest.fixture
def memory_store():
    return WhitelistStore(MemoryBackend(max_backups=3), max_log_entries=50)


@pytest.fixture(params=["file", "memory"])
def store(request, settings):
    if request.param == "file":
        return WhitelistStore.from_settings(settings)
    return WhitelistStore(MemoryBackend(max_backups=3), max_log_entries=50)
