from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any, Iterable, Mapping

from .accesslog import DEFAULT_MAX_ENTRIES, AccessLogEntry, append_event, recent_events, truncate_events
from .allowlist import (
    AccessType,
    DeviceInfo,
    WhitelistEntry,
    entry_from_dict,
    is_valid_mac,
    normalize_mac,
    require_mac,
    stored_form,
    utc_now,
    utc_now_iso,
)
from .config import StoreSettings
from .errors import (
    CorruptSnapshot,
    DuplicateEntry,
    InvalidAccessType,
    NotFound,
    Result,
    StoreError,
    ValidationError,
    WriteFailure,
)
from .locking import FileLock
from .stats import compute_statistics
from .storage import JsonFileBackend, atomic_write_json, new_log, new_snapshot

logger = logging.getLogger(__name__)

NOT_AUTHORIZED = "Device not authorized. MAC address not in whitelist."


def _find_key(macs: Mapping[str, Any], mac: str) -> str | None:
    if mac in macs:
        return mac
    # hand-edited documents may hold another spelling of the same address
    for key in macs:
        if normalize_mac(key) == mac:
            return key
    return None


def _entries(snapshot: Mapping[str, Any]) -> list[WhitelistEntry]:
    return [entry_from_dict(normalize_mac(mac), rec) for mac, rec in snapshot["macAddresses"].items()]


def _bulk_fields(item: Any) -> tuple[Any, Any, Any]:
    if isinstance(item, str):
        return item, None, None
    if isinstance(item, Mapping):
        mac = item.get("macAddress") or item.get("mac") or item.get("address")
        return mac, item.get("description"), item.get("accessType")
    return None, None, None


class WhitelistStore:
    """
    MAC whitelist with usage statistics and a bounded access log.

    Every operation takes the backend's exclusive lock for its whole
    read-modify-write cycle and returns a Result; expected failures never
    raise out of the store.
    """

    def __init__(
        self,
        backend,
        max_log_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        self.backend = backend
        self.max_log_entries = max(1, int(max_log_entries))

    @classmethod
    def from_settings(cls, settings: StoreSettings | None = None) -> "WhitelistStore":
        settings = settings or StoreSettings()
        lock = FileLock(
            Path(settings.data_dir) / settings.lock_filename,
            timeout=settings.lock_timeout,
            poll_interval=settings.lock_poll_interval,
            stale_after=settings.stale_lock_seconds,
        )
        backend = JsonFileBackend(
            settings.data_dir,
            whitelist_filename=settings.whitelist_filename,
            log_filename=settings.log_filename,
            backup_dirname=settings.backup_dirname,
            max_backups=settings.max_backups,
            enable_backups=settings.enable_backups,
            lock=lock,
        )
        return cls(backend, settings.max_log_entries)

    # -------------------------------------------------
    # Internals (caller holds the lock)
    # -------------------------------------------------

    def _read(self, warnings: list[str]) -> dict[str, Any]:
        try:
            return self.backend.load_snapshot()
        except CorruptSnapshot as e:
            logger.warning("%s; continuing with an empty whitelist", e)
            warnings.append(f"Whitelist snapshot was unreadable and has been reset: {e}")
            return new_snapshot()

    def _backup(self, warnings: list[str]) -> Any:
        try:
            return self.backend.backup()
        except OSError as e:
            logger.error("Error backing up whitelist: %s", e)
            warnings.append(f"Backup failed: {e}")
            return None

    def _commit(self, snapshot: dict[str, Any], warnings: list[str], backup: bool = True) -> None:
        if backup:
            self._backup(warnings)
        snapshot["statistics"] = compute_statistics(_entries(snapshot))
        self.backend.save_snapshot(snapshot)

    def _read_log(self, warnings: list[str]) -> dict[str, Any]:
        try:
            return self.backend.load_log()
        except CorruptSnapshot as e:
            logger.warning("%s; starting a new access log", e)
            warnings.append(f"Access log was unreadable and has been reset: {e}")
            return new_log()

    def _log(self, entry: AccessLogEntry, warnings: list[str]) -> None:
        log = self._read_log(warnings)
        append_event(log["accessEvents"], entry, self.max_log_entries)
        try:
            self.backend.save_log(log)
        except WriteFailure as e:
            logger.error("Error logging access event: %s", e)
            warnings.append(str(e))

    # -------------------------------------------------
    # Access check
    # -------------------------------------------------

    def check_access(self, candidate_macs: Any, device_info: Any = None) -> Result:
        """
        First enabled candidate (in caller order) present in the whitelist wins.
        The entry's usage statistics are committed before success is returned.
        """
        device = DeviceInfo.from_mapping(device_info)
        if isinstance(candidate_macs, str):
            candidate_macs = [candidate_macs]
        if not isinstance(candidate_macs, (list, tuple)):
            candidate_macs = []
        submitted = [normalize_mac(m) for m in candidate_macs if isinstance(m, str) and m.strip()]

        warnings: list[str] = []
        try:
            with self.backend.locked():
                if not submitted:
                    self._log(AccessLogEntry.for_attempt(["unknown"], device, False, "No MAC addresses provided"), warnings)
                    return Result(False, "MAC addresses required", {"submittedMacs": []}, ValidationError.code, warnings)

                snapshot = self._read(warnings)
                macs = snapshot["macAddresses"]
                disabled = None
                for candidate in submitted:
                    if not is_valid_mac(candidate):
                        continue
                    key = _find_key(macs, candidate)
                    if key is None:
                        continue

                    rec = macs[key]
                    entry = entry_from_dict(candidate, rec)
                    if not entry.active:
                        disabled = disabled or candidate
                        continue
                    entry.record_access(device)
                    rec["lastSeen"] = entry.last_seen
                    rec["accessCount"] = entry.access_count
                    rec["lastDevice"] = entry.last_device
                    try:
                        self._commit(snapshot, warnings)
                    except WriteFailure as e:
                        self._log(AccessLogEntry.for_attempt([candidate], device, False, f"Database error: {e}"), warnings)
                        return Result.fail(e, "Failed to record access; try again", warnings)

                    self._log(AccessLogEntry.for_attempt([candidate], device, True, "Access granted"), warnings)
                    logger.info("Access granted for %s (%s)", candidate, device.hostname or "unknown host")
                    return Result.ok(
                        "Device authorized",
                        {
                            "macAddress": candidate,
                            "description": entry.description,
                            "accessType": entry.access_type.value,
                            "addedAt": entry.added_at,
                            "lastSeen": entry.last_seen,
                            "accessCount": entry.access_count,
                        },
                        warnings,
                    )

                if disabled is not None:
                    self._log(AccessLogEntry.for_attempt([disabled], device, False, "MAC address is disabled"), warnings)
                else:
                    self._log(AccessLogEntry.for_attempt([submitted[0]], device, False, "MAC address not whitelisted"), warnings)
        except StoreError as e:
            return Result.fail(e, warnings=warnings)

        logger.info("Access denied for %s", ", ".join(submitted))
        return Result(False, NOT_AUTHORIZED, {"submittedMacs": submitted}, "not_authorized", warnings)

    # -------------------------------------------------
    # Administrative mutations
    # -------------------------------------------------

    def add(self, mac: Any, description: Any = None, access_type: Any = None) -> Result:
        warnings: list[str] = []
        try:
            entry = WhitelistEntry.create(mac, description, access_type)
            with self.backend.locked():
                snapshot = self._read(warnings)
                macs = snapshot["macAddresses"]
                if _find_key(macs, entry.mac) is not None:
                    raise DuplicateEntry("MAC address already exists in whitelist")
                macs[entry.mac] = stored_form(entry)
                self._commit(snapshot, warnings)
                self._log(
                    AccessLogEntry.for_attempt([entry.mac], None, True, "MAC address added by admin", event="add"),
                    warnings,
                )
        except StoreError as e:
            return Result.fail(e, warnings=warnings)

        logger.info("Added MAC address %s (%s)", entry.mac, entry.access_type.value)
        return Result.ok("MAC address added successfully", entry.to_dict(), warnings)

    def update_access_type(self, mac: Any, access_type: Any) -> Result:
        warnings: list[str] = []
        try:
            normalized = require_mac(mac)
            if access_type is None or access_type == "":
                raise ValidationError("Access type required")
            new_type = AccessType.parse(access_type)
            with self.backend.locked():
                snapshot = self._read(warnings)
                macs = snapshot["macAddresses"]
                key = _find_key(macs, normalized)
                if key is None:
                    raise NotFound("MAC address not found in whitelist")
                rec = macs[key]
                rec["accessType"] = new_type.value
                rec["updatedAt"] = utc_now_iso()
                self._commit(snapshot, warnings)
                self._log(
                    AccessLogEntry.for_attempt(
                        [normalized], None, True, f"Access type changed to {new_type.value}", event="update-access-type"
                    ),
                    warnings,
                )
        except StoreError as e:
            return Result.fail(e, warnings=warnings)

        logger.info("Updated MAC access: %s -> %s", normalized, new_type.value)
        return Result.ok("Access type updated successfully", entry_from_dict(normalized, rec).to_dict(), warnings)

    def set_active(self, mac: Any, active: bool) -> Result:
        """Enable or disable an entry; a disabled entry never passes an access check."""
        warnings: list[str] = []
        state = "enabled" if active else "disabled"
        try:
            normalized = require_mac(mac)
            if not isinstance(active, bool):
                raise ValidationError(f"Active flag must be true or false, got {active!r}")
            with self.backend.locked():
                snapshot = self._read(warnings)
                macs = snapshot["macAddresses"]
                key = _find_key(macs, normalized)
                if key is None:
                    raise NotFound("MAC address not found in whitelist")
                rec = macs[key]
                rec["active"] = active
                rec["updatedAt"] = utc_now_iso()
                self._commit(snapshot, warnings)
                self._log(
                    AccessLogEntry.for_attempt([normalized], None, True, f"MAC address {state} by admin", event="set-active"),
                    warnings,
                )
        except StoreError as e:
            return Result.fail(e, warnings=warnings)

        logger.info("MAC address %s %s", normalized, state)
        return Result.ok(f"MAC address {state} successfully", entry_from_dict(normalized, rec).to_dict(), warnings)

    def remove(self, mac: Any) -> Result:
        warnings: list[str] = []
        try:
            normalized = require_mac(mac)
            with self.backend.locked():
                snapshot = self._read(warnings)
                macs = snapshot["macAddresses"]
                key = _find_key(macs, normalized)
                if key is None:
                    raise NotFound("MAC address not found in whitelist")
                del macs[key]
                self._commit(snapshot, warnings)
                self._log(
                    AccessLogEntry.for_attempt([normalized], None, True, "MAC address removed by admin", event="remove"),
                    warnings,
                )
        except StoreError as e:
            return Result.fail(e, warnings=warnings)

        logger.info("Removed MAC address %s", normalized)
        return Result.ok("MAC address removed successfully", {"macAddress": normalized}, warnings)

    def bulk_add(self, items: Any) -> Result:
        """
        Add many entries with one persisted write. Invalid and duplicate
        items are skipped and reported per item, in input order.
        """
        if not isinstance(items, (list, tuple)):
            return Result.fail(ValidationError("Expected a list of MAC address entries"))

        warnings: list[str] = []
        results: list[dict[str, Any]] = []
        added: list[str] = []
        try:
            with self.backend.locked():
                snapshot = self._read(warnings)
                macs = snapshot["macAddresses"]
                for raw in items:
                    mac, description, access_type = _bulk_fields(raw)
                    try:
                        entry = WhitelistEntry.create(
                            mac, "Bulk added device" if description is None else description, access_type
                        )
                    except ValidationError as e:
                        results.append({"macAddress": mac, "status": "skipped", "reason": str(e)})
                        continue
                    if _find_key(macs, entry.mac) is not None:
                        results.append({"macAddress": entry.mac, "status": "skipped", "reason": "Already exists"})
                        continue
                    macs[entry.mac] = stored_form(entry)
                    added.append(entry.mac)
                    results.append({"macAddress": entry.mac, "status": "added", "accessType": entry.access_type.value})

                if added:
                    self._commit(snapshot, warnings)
                    self._log(
                        AccessLogEntry.for_attempt(added, None, True, f"Bulk added {len(added)} MAC addresses", event="bulk-add"),
                        warnings,
                    )
        except StoreError as e:
            return Result.fail(e, warnings=warnings)

        summary = {"total": len(items), "added": len(added), "skipped": len(items) - len(added)}
        message = f"Bulk operation completed: {summary['added']} added, {summary['skipped']} skipped"
        logger.info(message)
        return Result.ok(message, {"results": results, "summary": summary}, warnings)

    def cleanup_unused(self, only: Iterable[str] | None = None) -> Result:
        """
        Remove entries that have never passed an access check. With `only`,
        removal is limited to those MACs (e.g. the list an admin confirmed).
        """
        warnings: list[str] = []
        allowed = None if only is None else {normalize_mac(m) for m in only}
        try:
            with self.backend.locked():
                snapshot = self._read(warnings)
                macs = snapshot["macAddresses"]
                unused = [
                    key for key, rec in macs.items()
                    if not rec.get("lastSeen") and (allowed is None or normalize_mac(key) in allowed)
                ]
                for key in unused:
                    del macs[key]
                removed = [normalize_mac(key) for key in unused]
                if removed:
                    self._commit(snapshot, warnings)
                    self._log(
                        AccessLogEntry.for_attempt(removed, None, True, f"Removed {len(removed)} unused entries", event="cleanup"),
                        warnings,
                    )
        except StoreError as e:
            return Result.fail(e, warnings=warnings)

        if removed:
            logger.info("Removed %d unused entries", len(removed))
        return Result.ok(f"Removed {len(removed)} unused entries", {"removed": removed, "count": len(removed)}, warnings)

    # -------------------------------------------------
    # Queries
    # -------------------------------------------------

    def list(self, include_inactive: bool = True) -> Result:
        """
        All entries plus freshly computed statistics. With
        include_inactive=False disabled entries are left out; statistics
        always cover the whole whitelist.
        """
        warnings: list[str] = []
        try:
            with self.backend.locked():
                snapshot = self._read(warnings)
        except StoreError as e:
            return Result.fail(e, warnings=warnings)

        now = utc_now()
        entries = _entries(snapshot)
        listed = entries if include_inactive else [e for e in entries if e.active]
        return Result.ok(
            "MAC addresses retrieved successfully",
            {
                "macAddresses": [e.to_dict() for e in listed],
                "statistics": compute_statistics(entries, now),
                "metadata": dict(snapshot["metadata"]),
            },
            warnings,
        )

    def get_logs(self, limit: Any = 100) -> Result:
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            return Result.fail(ValidationError(f"Invalid log limit: {limit!r}"))
        if limit < 0:
            return Result.fail(ValidationError("Log limit must not be negative"))

        warnings: list[str] = []
        try:
            with self.backend.locked():
                log = self._read_log(warnings)
        except StoreError as e:
            return Result.fail(e, warnings=warnings)

        events = log["accessEvents"]
        return Result.ok(
            "Access logs retrieved successfully",
            {"logs": recent_events(events, limit), "totalEvents": len(events)},
            warnings,
        )

    def append_log(self, entry: AccessLogEntry | Mapping[str, Any]) -> Result:
        """Record an event; untyped mappings get a fresh id and, if missing, a timestamp."""
        warnings: list[str] = []
        try:
            if isinstance(entry, Mapping):
                entry = AccessLogEntry.from_mapping(entry)
            elif not isinstance(entry, AccessLogEntry):
                raise ValidationError(f"Expected an access log entry, got {type(entry).__name__}")
            with self.backend.locked():
                self._log(entry, warnings)
        except StoreError as e:
            return Result.fail(e, warnings=warnings)
        return Result.ok("Access event logged", {"id": entry.id}, warnings)

    # -------------------------------------------------
    # Backup & maintenance
    # -------------------------------------------------

    def backup(self) -> Result:
        warnings: list[str] = []
        try:
            with self.backend.locked():
                target = self._backup(warnings)
        except StoreError as e:
            return Result.fail(e, warnings=warnings)
        if target is None:
            return Result(False, "No backup written", None, "backup_skipped", warnings)
        return Result.ok("Whitelist backed up", {"backupPath": str(target)}, warnings)

    def maintenance(self) -> Result:
        """
        Backup, trim the access log to its bound, repair entries missing an
        id or access type, then persist the repairs in a single write.
        """
        warnings: list[str] = []
        try:
            with self.backend.locked():
                target = self._backup(warnings)

                log = self._read_log(warnings)
                trimmed = truncate_events(log["accessEvents"], self.max_log_entries)
                if trimmed:
                    try:
                        self.backend.save_log(log)
                        logger.info("Cleaned up %d old log entries", trimmed)
                    except WriteFailure as e:
                        logger.error("Error trimming access log: %s", e)
                        warnings.append(str(e))
                        trimmed = 0

                snapshot = self._read(warnings)
                fixed = self._sweep(snapshot)
                if fixed:
                    self._commit(snapshot, warnings, backup=False)
                    logger.info("Fixed %d whitelist entries", fixed)
        except StoreError as e:
            return Result.fail(e, warnings=warnings)

        return Result.ok(
            "Maintenance completed successfully",
            {
                "backupCreated": target is not None,
                "backupPath": str(target) if target is not None else None,
                "entriesFixed": fixed,
                "logEntriesTrimmed": trimmed,
            },
            warnings,
        )

    def _sweep(self, snapshot: dict[str, Any]) -> int:
        fixed = 0
        repaired: dict[str, Any] = {}
        for key, rec in snapshot["macAddresses"].items():
            changed = False
            mac = normalize_mac(key)
            if mac != key:
                changed = True
            if mac in repaired:
                logger.warning("Dropping duplicate spelling %r of %s", key, mac)
                fixed += 1
                continue
            if not rec.get("id"):
                rec["id"] = str(uuid.uuid4())
                changed = True
            try:
                access_type = AccessType.parse(rec.get("accessType"))
            except InvalidAccessType:
                access_type = AccessType.TRIAL
            if rec.get("accessType") != access_type.value:
                rec["accessType"] = access_type.value
                changed = True
            count = rec.get("accessCount")
            if not isinstance(count, int) or isinstance(count, bool) or count < 0:
                rec["accessCount"] = entry_from_dict(mac, rec).access_count
                changed = True
            if not rec.get("addedAt"):
                rec["addedAt"] = rec.get("added") or utc_now_iso()
                changed = True
            repaired[mac] = rec
            fixed += changed
        snapshot["macAddresses"] = repaired
        return fixed

    def export(self, path: str | Path) -> Result:
        listing = self.list()
        if not listing.success:
            return listing
        try:
            atomic_write_json(path, listing.data)
        except OSError as e:
            return Result.fail(WriteFailure(f"Failed to write export {path}: {e}"))
        count = len(listing.data["macAddresses"])
        return Result.ok(f"Exported {count} MAC addresses", {"path": str(path), "count": count}, listing.warnings)
