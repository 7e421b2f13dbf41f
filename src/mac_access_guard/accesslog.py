from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping

from .allowlist import DeviceInfo, normalize_mac, utc_now_iso
from .errors import ValidationError

DEFAULT_MAX_ENTRIES = 1000


@dataclass(frozen=True)
class AccessLogEntry:
    mac_addresses: tuple[str, ...]
    success: bool
    message: str
    event: str = "check-access"
    device_info: dict[str, Any] | None = None
    timestamp: str = field(default_factory=utc_now_iso)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def for_attempt(
        cls,
        macs: list[str] | tuple[str, ...],
        device: DeviceInfo | None,
        success: bool,
        message: str,
        event: str = "check-access",
    ) -> "AccessLogEntry":
        return cls(
            mac_addresses=tuple(macs),
            success=success,
            message=message,
            event=event,
            device_info=device.log_record() if device is not None else None,
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "AccessLogEntry":
        """
        Build an event from untyped JSON. The id is always freshly assigned;
        a missing timestamp is set to now.
        """
        macs = raw.get("macAddresses")
        if macs is None:
            macs = [raw["macAddress"]] if raw.get("macAddress") else []
        if isinstance(macs, str):
            macs = [macs]
        if not isinstance(macs, (list, tuple)) or not all(isinstance(m, str) for m in macs):
            raise ValidationError("macAddresses must be a list of strings")
        success = raw.get("success")
        if not isinstance(success, bool):
            raise ValidationError("success must be true or false")
        timestamp = raw.get("timestamp")
        device = raw.get("deviceInfo")
        return cls(
            mac_addresses=tuple(normalize_mac(m) for m in macs),
            success=success,
            message=str(raw.get("message") or ""),
            event=str(raw.get("event") or "check-access"),
            device_info=DeviceInfo.from_mapping(device).log_record() if device is not None else None,
            timestamp=timestamp if isinstance(timestamp, str) and timestamp else utc_now_iso(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "event": self.event,
            "macAddress": self.mac_addresses[0] if self.mac_addresses else "unknown",
            "macAddresses": list(self.mac_addresses),
            "deviceInfo": self.device_info,
            "success": self.success,
            "message": self.message,
            "id": self.id,
        }


def append_event(events: list[dict[str, Any]], entry: AccessLogEntry, max_entries: int) -> int:
    """
    Append in insertion order and evict the oldest events beyond `max_entries`.
    Returns the number of events evicted.
    """
    events.append(entry.to_dict())
    return truncate_events(events, max_entries)


def truncate_events(events: list[dict[str, Any]], max_entries: int) -> int:
    overflow = len(events) - max(1, int(max_entries))
    if overflow <= 0:
        return 0
    del events[:overflow]
    return overflow


def recent_events(events: list[dict[str, Any]], limit: int) -> list[dict[str, Any]]:
    """Most recent `limit` events, newest first."""
    if limit <= 0:
        return []
    return list(reversed(events[-limit:]))
