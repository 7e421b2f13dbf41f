from __future__ import annotations

import copy
import json
import logging
import os
import shutil
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator

from .allowlist import utc_now_iso
from .errors import CorruptSnapshot, WriteFailure
from .locking import FileLock, ThreadLock

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "1.0"
BACKUP_PREFIX = "mac-whitelist-"


def new_snapshot() -> dict[str, Any]:
    now = utc_now_iso()
    return {
        "metadata": {
            "version": SNAPSHOT_VERSION,
            "created": now,
            "lastModified": now,
            "totalEntries": 0,
        },
        "statistics": {},
        "macAddresses": {},
    }


def new_log() -> dict[str, Any]:
    return {"version": SNAPSHOT_VERSION, "created": utc_now_iso(), "accessEvents": []}


def check_snapshot(raw: Any) -> dict[str, Any]:
    """
    Accepts:
    {
      "metadata": {...},
      "macAddresses": {"aa:bb:cc:dd:ee:ff": {...}}
    }
    Older documents with top-level version/created keys are lifted into metadata.
    """
    if not isinstance(raw, dict) or not isinstance(raw.get("macAddresses"), dict):
        raise CorruptSnapshot("Whitelist snapshot is not a {metadata, macAddresses} document")
    for mac, rec in raw["macAddresses"].items():
        if not isinstance(rec, dict):
            raise CorruptSnapshot(f"Whitelist entry for {mac!r} is not an object")

    meta = raw.get("metadata")
    if not isinstance(meta, dict):
        meta = {}
        raw["metadata"] = meta
    meta.setdefault("version", raw.pop("version", SNAPSHOT_VERSION))
    meta.setdefault("created", raw.pop("created", utc_now_iso()))
    if not isinstance(raw.get("statistics"), dict):
        raw["statistics"] = {}
    return raw


def check_log(raw: Any) -> dict[str, Any]:
    if isinstance(raw, list):
        # bare list of events
        raw = {"version": SNAPSHOT_VERSION, "created": utc_now_iso(), "accessEvents": raw}
    if not isinstance(raw, dict) or not isinstance(raw.get("accessEvents"), list):
        raise CorruptSnapshot("Access log is not an {accessEvents: [...]} document")
    return raw


def stamp_metadata(snapshot: dict[str, Any]) -> None:
    meta = snapshot.setdefault("metadata", {})
    meta["lastModified"] = utc_now_iso()
    meta["totalEntries"] = len(snapshot["macAddresses"])


def atomic_write_json(path: str | Path, payload: Any) -> None:
    """Write `payload` to a sibling temp file, fsync it, then rename over `path`."""
    p = Path(path)
    tmp = p.with_name(f".{p.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    try:
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, p)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def read_json(path: str | Path) -> Any:
    """Parse a JSON document; unparsable content raises CorruptSnapshot."""
    p = Path(path)
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise CorruptSnapshot(f"{p} is not valid JSON: {e}") from e


def backup_name(taken: set[str]) -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
    # names sort chronologically: same-stamp copies get an increasing suffix
    same = [int(n[-8:-5]) for n in taken if n.startswith(f"{BACKUP_PREFIX}{stamp}-")]
    seq = max(same) + 1 if same else 0
    return f"{BACKUP_PREFIX}{stamp}-{seq:03d}.json"


class JsonFileBackend:
    """
    File layout:
      <data_dir>/mac-whitelist.json   whitelist snapshot
      <data_dir>/access-log.json      access events
      <data_dir>/backups/             timestamped snapshot copies
      <data_dir>/.lock                cross-process lock file
    """

    def __init__(
        self,
        data_dir: str | Path,
        whitelist_filename: str = "mac-whitelist.json",
        log_filename: str = "access-log.json",
        backup_dirname: str = "backups",
        lock_filename: str = ".lock",
        max_backups: int = 10,
        enable_backups: bool = True,
        lock: FileLock | None = None,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.snapshot_path = self.data_dir / whitelist_filename
        self.log_path = self.data_dir / log_filename
        self.backup_dir = self.data_dir / backup_dirname
        self.max_backups = max(1, int(max_backups))
        self.enable_backups = enable_backups
        self.lock = lock or FileLock(self.data_dir / lock_filename)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def locked(self):
        return self.lock.hold()

    def load_snapshot(self) -> dict[str, Any]:
        if not self.snapshot_path.exists():
            return new_snapshot()
        return check_snapshot(read_json(self.snapshot_path))

    def save_snapshot(self, snapshot: dict[str, Any]) -> None:
        first = not self.snapshot_path.exists()
        stamp_metadata(snapshot)
        try:
            atomic_write_json(self.snapshot_path, snapshot)
        except OSError as e:
            logger.error("Error writing whitelist snapshot %s: %s", self.snapshot_path, e)
            raise WriteFailure(f"Failed to save whitelist: {e}") from e
        if first:
            logger.info("MAC whitelist initialized at %s", self.snapshot_path)

    def load_log(self) -> dict[str, Any]:
        if not self.log_path.exists():
            return new_log()
        return check_log(read_json(self.log_path))

    def save_log(self, log: dict[str, Any]) -> None:
        try:
            atomic_write_json(self.log_path, log)
        except OSError as e:
            raise WriteFailure(f"Failed to save access log: {e}") from e

    def list_backups(self) -> list[Path]:
        if not self.backup_dir.exists():
            return []
        return sorted(
            p for p in self.backup_dir.iterdir()
            if p.name.startswith(BACKUP_PREFIX) and p.suffix == ".json"
        )

    def backup(self) -> Path | None:
        """
        Copy the committed snapshot into the backup directory, then prune to
        the newest `max_backups` copies. Returns None when there is nothing
        to copy or backups are disabled.
        """
        if not self.enable_backups or not self.snapshot_path.exists():
            return None
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        target = self.backup_dir / backup_name({p.name for p in self.list_backups()})
        shutil.copyfile(self.snapshot_path, target)
        logger.debug("Whitelist backed up to %s", target)

        for old in self.list_backups()[: -self.max_backups]:
            old.unlink(missing_ok=True)
            logger.debug("Pruned backup %s", old)
        return target


class MemoryBackend:
    """
    Single-process adapter. Documents are held as JSON text so every load
    hands out an independent copy and only JSON-representable state commits.
    """

    def __init__(self, max_backups: int = 10, enable_backups: bool = True, lock_timeout: float = 5.0) -> None:
        self.max_backups = max(1, int(max_backups))
        self.enable_backups = enable_backups
        self.lock = ThreadLock(timeout=lock_timeout)
        self.snapshot_text: str | None = None
        self.log_text: str | None = None
        self.backups: list[tuple[str, str]] = []

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self.lock.hold():
            yield

    def _parse(self, text: str) -> Any:
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise CorruptSnapshot(f"In-memory document is not valid JSON: {e}") from e

    def load_snapshot(self) -> dict[str, Any]:
        if self.snapshot_text is None:
            return new_snapshot()
        return check_snapshot(self._parse(self.snapshot_text))

    def save_snapshot(self, snapshot: dict[str, Any]) -> None:
        snapshot = copy.deepcopy(snapshot)
        stamp_metadata(snapshot)
        try:
            self.snapshot_text = json.dumps(snapshot)
        except (TypeError, ValueError) as e:
            raise WriteFailure(f"Failed to save whitelist: {e}") from e

    def load_log(self) -> dict[str, Any]:
        if self.log_text is None:
            return new_log()
        return check_log(self._parse(self.log_text))

    def save_log(self, log: dict[str, Any]) -> None:
        try:
            self.log_text = json.dumps(log)
        except (TypeError, ValueError) as e:
            raise WriteFailure(f"Failed to save access log: {e}") from e

    def list_backups(self) -> list[str]:
        return [name for name, _ in self.backups]

    def backup(self) -> str | None:
        if not self.enable_backups or self.snapshot_text is None:
            return None
        name = backup_name(set(self.list_backups()))
        self.backups.append((name, self.snapshot_text))
        self.backups.sort()
        del self.backups[: -self.max_backups]
        return name
