import json
import threading
from datetime import UTC, datetime, timedelta

import pytest

from mac_access_guard.accesslog import AccessLogEntry
from mac_access_guard.allowlist import parse_timestamp
from mac_access_guard.errors import LockTimeout, WriteFailure
from mac_access_guard.storage import MemoryBackend
from mac_access_guard.store import WhitelistStore

MAC = "aa:bb:cc:dd:ee:ff"
DEVICE = {"hostname": "lab-pc", "username": "ana", "platform": "linux", "localIP": "10.0.0.5"}


def _total(store):
    return store.list().data["statistics"]["total"]


def test_lifecycle_scenario(store):
    assert store.add(MAC, "lab machine").success

    granted = store.check_access([MAC], DEVICE)
    assert granted.success
    assert granted.data["accessCount"] == 1
    assert granted.data["accessType"] == "trial"

    updated = store.update_access_type(MAC, "unlimited")
    assert updated.success
    assert updated.data["accessType"] == "unlimited"
    assert updated.data["updatedAt"]

    assert store.remove(MAC).success

    denied = store.check_access([MAC], DEVICE)
    assert not denied.success
    assert "not authorized" in denied.message
    assert denied.data == {"submittedMacs": [MAC]}


def test_add_creates_fresh_record(store):
    result = store.add("AA-BB-CC-DD-EE-FF", "desk", "admin")
    assert result.success
    rec = result.data
    assert rec["macAddress"] == MAC
    assert rec["accessType"] == "admin"
    assert rec["accessCount"] == 0
    assert rec["lastSeen"] is None
    assert rec["id"]


def test_duplicate_add_across_spellings(store):
    assert store.add(MAC).success
    dup = store.add("AA-BB-CC-DD-EE-FF")
    assert not dup.success
    assert dup.error == "duplicate"
    assert _total(store) == 1


def test_add_rejects_malformed_mac_and_type(store):
    bad_mac = store.add("not-a-mac")
    assert not bad_mac.success and bad_mac.error == "validation"
    bad_type = store.add(MAC, "x", "root")
    assert not bad_type.success and bad_type.error == "invalid_access_type"
    assert _total(store) == 0


def test_check_access_updates_usage(store):
    store.add(MAC)
    before = datetime.now(UTC)
    result = store.check_access([MAC], DEVICE)
    assert result.success
    assert result.data["accessCount"] == 1
    assert parse_timestamp(result.data["lastSeen"]) >= before

    entry = store.list().data["macAddresses"][0]
    assert entry["lastDevice"]["hostname"] == "lab-pc"
    assert store.check_access([MAC], {"hostname": "other"}).data["accessCount"] == 2
    assert store.list().data["macAddresses"][0]["lastDevice"]["hostname"] == "other"


def test_first_matching_candidate_wins(store):
    store.add("11:22:33:44:55:66", "wifi")
    store.add("66:55:44:33:22:11", "ethernet")
    result = store.check_access(["00:00:00:00:00:01", "66-55-44-33-22-11", "11:22:33:44:55:66"], DEVICE)
    assert result.success
    assert result.data["macAddress"] == "66:55:44:33:22:11"
    counts = {e["macAddress"]: e["accessCount"] for e in store.list().data["macAddresses"]}
    assert counts == {"11:22:33:44:55:66": 0, "66:55:44:33:22:11": 1}


def test_denied_check_logs_first_candidate(store):
    store.add(MAC)
    result = store.check_access(["01:02:03:04:05:06", "0a:0b:0c:0d:0e:0f"], DEVICE)
    assert not result.success
    assert result.data["submittedMacs"] == ["01:02:03:04:05:06", "0a:0b:0c:0d:0e:0f"]
    assert MAC not in json.dumps(result.to_dict())

    last = store.get_logs(1).data["logs"][0]
    assert last["success"] is False
    assert last["macAddress"] == "01:02:03:04:05:06"


def test_empty_candidate_list_is_logged(store):
    result = store.check_access([], DEVICE)
    assert not result.success
    assert store.get_logs(1).data["logs"][0]["macAddress"] == "unknown"


def test_update_access_type_failures(store):
    missing = store.update_access_type(MAC, "admin")
    assert not missing.success and missing.error == "not_found"
    store.add(MAC)
    bad = store.update_access_type(MAC, "superuser")
    assert not bad.success and bad.error == "invalid_access_type"
    assert store.list().data["macAddresses"][0]["accessType"] == "trial"


def test_remove_missing_leaves_statistics(store):
    store.add(MAC)
    before = store.list().data["statistics"]
    result = store.remove("01:02:03:04:05:06")
    assert not result.success
    assert result.error == "not_found"
    assert store.list().data["statistics"] == before


def test_statistics_total_tracks_entries(store):
    macs = [f"02:00:00:00:00:{i:02x}" for i in range(5)]
    for i, mac in enumerate(macs):
        store.add(mac)
        assert _total(store) == i + 1 == len(store.list().data["macAddresses"])
    for i, mac in enumerate(macs[:3]):
        store.remove(mac)
        assert _total(store) == len(macs) - i - 1 == len(store.list().data["macAddresses"])


def test_statistics_breakdown(store):
    store.add("02:00:00:00:00:01", access_type="trial")
    store.add("02:00:00:00:00:02", access_type="unlimited")
    store.add("02:00:00:00:00:03", access_type="admin")
    store.check_access(["02:00:00:00:00:02"])
    store.check_access(["02:00:00:00:00:02"])
    stats = store.list().data["statistics"]
    assert stats["byAccessType"] == {"trial": 1, "unlimited": 1, "admin": 1}
    assert stats["neverUsed"] == 2
    assert stats["activeLast24h"] == 1
    assert stats["activeLast7d"] == 1
    assert stats["totalAccesses"] == 2


def test_list_active_only(store):
    store.add("02:00:00:00:00:01")
    store.add("02:00:00:00:00:02")
    assert len(store.list(include_inactive=False).data["macAddresses"]) == 2

    store.set_active("02:00:00:00:00:02", False)
    data = store.list(include_inactive=False).data
    assert [e["macAddress"] for e in data["macAddresses"]] == ["02:00:00:00:00:01"]
    assert data["statistics"]["total"] == 2
    assert data["statistics"]["active"] == 1
    assert data["statistics"]["inactive"] == 1
    assert len(store.list().data["macAddresses"]) == 2


def test_set_active_toggles_and_logs(store):
    missing = store.set_active(MAC, False)
    assert not missing.success and missing.error == "not_found"

    store.add(MAC)
    result = store.set_active("AA-BB-CC-DD-EE-FF", False)
    assert result.success
    assert result.message == "MAC address disabled successfully"
    assert result.data["active"] is False
    assert result.data["updatedAt"]

    last = store.get_logs(1).data["logs"][0]
    assert last["event"] == "set-active"
    assert last["macAddress"] == MAC

    assert store.set_active(MAC, True).data["active"] is True
    assert store.check_access([MAC]).success


def test_set_active_rejects_non_bool(store):
    store.add(MAC)
    result = store.set_active(MAC, "no")
    assert not result.success and result.error == "validation"
    assert store.list().data["macAddresses"][0]["active"] is True


def test_disabled_entry_is_denied(store):
    store.add(MAC)
    store.set_active(MAC, False)
    denied = store.check_access([MAC], DEVICE)
    assert not denied.success
    assert store.get_logs(1).data["logs"][0]["message"] == "MAC address is disabled"
    assert store.list().data["macAddresses"][0]["accessCount"] == 0


def test_disabled_candidate_falls_through_to_enabled_one(store):
    store.add("02:00:00:00:00:01")
    store.add("02:00:00:00:00:02")
    store.set_active("02:00:00:00:00:01", False)
    result = store.check_access(["02:00:00:00:00:01", "02:00:00:00:00:02"], DEVICE)
    assert result.success
    assert result.data["macAddress"] == "02:00:00:00:00:02"


def test_bulk_add_reports_each_item(store):
    result = store.bulk_add(
        [
            {"macAddress": "02:00:00:00:00:01", "description": "one"},
            {"macAddress": "zz:00:00:00:00:02"},
            {"macAddress": "02-00-00-00-00-03", "accessType": "admin"},
        ]
    )
    assert result.success
    assert result.data["summary"] == {"total": 3, "added": 2, "skipped": 1}
    statuses = [r["status"] for r in result.data["results"]]
    assert statuses == ["added", "skipped", "added"]
    assert "Invalid MAC" in result.data["results"][1]["reason"]
    assert _total(store) == 2


def test_bulk_add_skips_duplicates_in_store_and_batch(store):
    store.add("02:00:00:00:00:01")
    result = store.bulk_add(["02:00:00:00:00:01", "02:00:00:00:00:02", "02:00:00:00:00:02"])
    reasons = [r.get("reason") for r in result.data["results"]]
    assert reasons == ["Already exists", None, "Already exists"]
    assert result.data["summary"]["added"] == 1


def test_bulk_add_commits_once(memory_store, monkeypatch):
    saves = []
    original = memory_store.backend.save_snapshot
    monkeypatch.setattr(memory_store.backend, "save_snapshot", lambda s: (saves.append(1), original(s)))
    memory_store.bulk_add([f"02:00:00:00:00:{i:02x}" for i in range(10)])
    assert len(saves) == 1


def test_bulk_add_rejects_non_list(store):
    result = store.bulk_add({"macAddress": MAC})
    assert not result.success and result.error == "validation"


def test_write_failure_is_not_committed(memory_store, monkeypatch):
    memory_store.add(MAC)

    def fail(snapshot):
        raise WriteFailure("disk full")

    monkeypatch.setattr(memory_store.backend, "save_snapshot", fail)
    result = memory_store.check_access([MAC], DEVICE)
    assert not result.success
    assert result.error == "write_failure"
    assert not memory_store.add("02:00:00:00:00:09").success

    monkeypatch.undo()
    entries = memory_store.list().data["macAddresses"]
    assert [e["macAddress"] for e in entries] == [MAC]
    assert entries[0]["accessCount"] == 0


def test_lock_timeout_is_reported(memory_store, monkeypatch):
    def locked():
        raise LockTimeout("busy")

    monkeypatch.setattr(memory_store.backend, "locked", locked)
    result = memory_store.add(MAC)
    assert not result.success
    assert result.error == "lock_timeout"


def test_corrupt_snapshot_self_heals(file_store):
    file_store.add(MAC)
    file_store.backend.snapshot_path.write_text("{{{ garbage", encoding="utf-8")

    listing = file_store.list()
    assert listing.success
    assert listing.data["macAddresses"] == []
    assert listing.warnings

    assert file_store.add("02:00:00:00:00:01").success
    # the corrupt document was backed up before being replaced
    newest = file_store.backend.list_backups()[-1]
    assert newest.read_text(encoding="utf-8") == "{{{ garbage"


def test_backup_failure_does_not_block_write(file_store, monkeypatch):
    def broken():
        raise OSError("backup volume gone")

    monkeypatch.setattr(file_store.backend, "backup", broken)
    result = file_store.add(MAC)
    assert result.success
    assert any("Backup failed" in w for w in result.warnings)
    assert _total(file_store) == 1


def test_mutations_write_backups_with_retention(file_store):
    for i in range(6):
        file_store.add(f"02:00:00:00:00:{i:02x}")
    # first add had nothing to back up; retention is 3
    assert len(file_store.backend.list_backups()) == 3


def test_persisted_layout(file_store):
    file_store.add(MAC, "desk")
    file_store.check_access([MAC], DEVICE)
    doc = json.loads(file_store.backend.snapshot_path.read_text())
    assert set(doc) >= {"metadata", "macAddresses"}
    assert doc["metadata"]["totalEntries"] == 1
    assert doc["macAddresses"][MAC]["accessCount"] == 1
    assert doc["statistics"]["totalAccesses"] == 1
    log = json.loads(file_store.backend.log_path.read_text())
    assert [e["event"] for e in log["accessEvents"]] == ["add", "check-access"]


def test_get_logs_most_recent_first(store):
    store.add(MAC)
    store.check_access([MAC])
    store.check_access(["01:02:03:04:05:06"])
    logs = store.get_logs(2).data
    assert logs["totalEvents"] == 3
    assert [e["success"] for e in logs["logs"]] == [False, True]
    assert not store.get_logs(-1).success


def test_access_log_is_bounded():
    store = WhitelistStore(MemoryBackend(), max_log_entries=5)
    for i in range(12):
        store.append_log(AccessLogEntry.for_attempt([f"02:00:00:00:00:{i:02x}"], None, False, f"attempt {i}"))
    data = store.get_logs(100).data
    assert data["totalEvents"] == 5
    assert [e["message"] for e in data["logs"]] == [f"attempt {i}" for i in range(11, 6, -1)]


def test_append_log_accepts_plain_mapping(store):
    result = store.append_log({"timestamp": "2024-05-01T10:00:00+00:00", "success": True, "message": "imported"})
    assert result.success
    last = store.get_logs(1).data["logs"][0]
    assert last["id"] == result.data["id"]
    assert last["timestamp"] == "2024-05-01T10:00:00+00:00"
    assert last["macAddress"] == "unknown"

    stamped = store.append_log({"macAddress": "AA-BB-CC-DD-EE-FF", "success": False, "message": "late"})
    assert stamped.success
    last = store.get_logs(1).data["logs"][0]
    assert last["macAddresses"] == [MAC]
    assert parse_timestamp(last["timestamp"]) is not None


@pytest.mark.parametrize("bad", [{"message": "no outcome"}, {"success": "yes"}, "just text", 42])
def test_append_log_rejects_malformed_events(store, bad):
    result = store.append_log(bad)
    assert not result.success
    assert result.error == "validation"
    assert store.get_logs(10).data["totalEvents"] == 0


def test_maintenance_repairs_and_is_idempotent(file_store):
    file_store.add(MAC)
    path = file_store.backend.snapshot_path
    doc = json.loads(path.read_text())
    doc["macAddresses"]["02:00:00:00:00:01"] = {"description": "legacy"}
    doc["macAddresses"]["02:00:00:00:00:02"] = {"id": "keep-me", "accessType": "Unlimited", "addedAt": "2024-01-01T00:00:00+00:00", "accessCount": 0}
    path.write_text(json.dumps(doc))

    first = file_store.maintenance()
    assert first.success
    assert first.data["backupCreated"] is True
    assert first.data["entriesFixed"] == 2

    repaired = json.loads(path.read_text())["macAddresses"]
    assert repaired["02:00:00:00:00:01"]["id"]
    assert repaired["02:00:00:00:00:01"]["accessType"] == "trial"
    assert repaired["02:00:00:00:00:02"]["id"] == "keep-me"
    assert repaired["02:00:00:00:00:02"]["accessType"] == "unlimited"

    second = file_store.maintenance()
    assert second.data["entriesFixed"] == 0
    assert second.data["backupCreated"] is True


def test_maintenance_rekeys_other_spellings(file_store):
    file_store.add(MAC)
    path = file_store.backend.snapshot_path
    doc = json.loads(path.read_text())
    doc["macAddresses"]["AA-BB-CC-DD-EE-FF"] = dict(doc["macAddresses"][MAC])
    doc["macAddresses"]["02-00-00-00-00-01"] = dict(doc["macAddresses"][MAC], id="other")
    path.write_text(json.dumps(doc))

    assert file_store.maintenance().data["entriesFixed"] == 2
    keys = list(json.loads(path.read_text())["macAddresses"])
    assert keys == [MAC, "02:00:00:00:00:01"]


def test_maintenance_trims_log(file_store):
    path = file_store.backend.log_path
    events = [{"timestamp": "t", "success": True, "message": str(i)} for i in range(80)]
    path.write_text(json.dumps({"accessEvents": events}))
    result = file_store.maintenance()
    assert result.data["logEntriesTrimmed"] == 30
    assert len(json.loads(path.read_text())["accessEvents"]) == 50


def test_cleanup_unused(store):
    store.add("02:00:00:00:00:01")
    store.add("02:00:00:00:00:02")
    store.check_access(["02:00:00:00:00:02"])
    result = store.cleanup_unused()
    assert result.data["removed"] == ["02:00:00:00:00:01"]
    assert _total(store) == 1


def test_cleanup_unused_limited_to_confirmed(store):
    store.add("02:00:00:00:00:01")
    store.add("02:00:00:00:00:02")
    store.add("02:00:00:00:00:03")
    store.check_access(["02:00:00:00:00:03"])
    result = store.cleanup_unused(only=["02-00-00-00-00-01", "02:00:00:00:00:03"])
    assert result.data["removed"] == ["02:00:00:00:00:01"]
    remaining = sorted(e["macAddress"] for e in store.list().data["macAddresses"])
    assert remaining == ["02:00:00:00:00:02", "02:00:00:00:00:03"]


def test_export_is_reimportable(file_store, memory_store, tmp_path):
    file_store.add("02:00:00:00:00:01", "a", "admin")
    file_store.add("02:00:00:00:00:02", "b")
    out = tmp_path / "export.json"
    assert file_store.export(out).data["count"] == 2

    exported = json.loads(out.read_text())
    result = memory_store.bulk_add(exported["macAddresses"])
    assert result.data["summary"]["added"] == 2
    types = {e["macAddress"]: e["accessType"] for e in memory_store.list().data["macAddresses"]}
    assert types == {"02:00:00:00:00:01": "admin", "02:00:00:00:00:02": "trial"}


def test_statistics_window_edges():
    backend = MemoryBackend()
    store = WhitelistStore(backend)
    store.add("02:00:00:00:00:01")
    store.add("02:00:00:00:00:02")
    snap = backend.load_snapshot()
    now = datetime.now(UTC)
    snap["macAddresses"]["02:00:00:00:00:01"]["lastSeen"] = (now - timedelta(days=2)).isoformat()
    snap["macAddresses"]["02:00:00:00:00:02"]["lastSeen"] = (now - timedelta(days=10)).isoformat()
    backend.save_snapshot(snap)
    stats = store.list().data["statistics"]
    assert stats["activeLast24h"] == 0
    assert stats["activeLast7d"] == 1
    assert stats["neverUsed"] == 0


@pytest.mark.parametrize("n", [16])
def test_concurrent_adds_lose_nothing(file_store, n):
    macs = [f"02:00:00:00:01:{i:02x}" for i in range(n)]
    results = []
    barrier = threading.Barrier(n)

    def worker(mac):
        barrier.wait()
        results.append(file_store.add(mac, "concurrent"))

    threads = [threading.Thread(target=worker, args=(m,)) for m in macs]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(r.success for r in results)
    listed = file_store.list().data
    assert sorted(e["macAddress"] for e in listed["macAddresses"]) == macs
    assert listed["statistics"]["total"] == n


def test_separate_store_instances_share_the_file(settings):
    a = WhitelistStore.from_settings(settings)
    b = WhitelistStore.from_settings(settings)
    a.add(MAC)
    assert not b.add(MAC).success
    assert b.check_access([MAC]).data["accessCount"] == 1
    assert a.list().data["macAddresses"][0]["accessCount"] == 1


def test_concurrent_store_instances_share_one_data_dir(settings):
    n = 8
    settings = settings.model_copy(update={"lock_timeout": 30.0})
    stores = [WhitelistStore.from_settings(settings) for _ in range(n)]
    macs = [f"02:00:00:00:02:{i:02x}" for i in range(n)]
    results = []
    barrier = threading.Barrier(n)

    def worker(store, mac):
        barrier.wait()
        results.append(store.add(mac, "instance"))
        results.append(store.check_access([mac]))

    threads = [threading.Thread(target=worker, args=pair) for pair in zip(stores, macs)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(r.success for r in results)
    listed = WhitelistStore.from_settings(settings).list().data
    assert sorted(e["macAddress"] for e in listed["macAddresses"]) == macs
    assert all(e["accessCount"] == 1 for e in listed["macAddresses"])
    assert not (settings.data_dir / settings.lock_filename).exists()
