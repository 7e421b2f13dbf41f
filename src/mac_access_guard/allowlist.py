from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Mapping

from .errors import InvalidAccessType, ValidationError

_ACCEPTED = re.compile(
    r"^(?:[0-9a-fA-F]{2}([:-])[0-9a-fA-F]{2}(?:\1[0-9a-fA-F]{2}){4}"
    r"|[0-9a-fA-F]{4}\.[0-9a-fA-F]{4}\.[0-9a-fA-F]{4}"
    r"|[0-9a-fA-F]{12})$"
)


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


class AccessType(str, Enum):
    TRIAL = "trial"
    UNLIMITED = "unlimited"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Any) -> "AccessType":
        if isinstance(value, cls):
            return value
        if value is None or value == "":
            return cls.TRIAL
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(t.value for t in cls)
            raise InvalidAccessType(f"Invalid access type {value!r}; expected one of: {allowed}") from None


def normalize_mac(mac: str) -> str:
    """
    Canonical form: lower-case, colon-separated pairs.

    Accepts colon- or hyphen-separated, Cisco dotted (aabb.ccdd.eeff) and bare
    12-digit hex spellings. Strings that are not one of those are returned
    lower-cased and stripped so they can never collide with a valid key.
    """
    m = str(mac).strip().lower()
    if not _ACCEPTED.match(m):
        return m
    digits = re.sub(r"[^0-9a-f]", "", m)
    return ":".join(digits[i : i + 2] for i in range(0, 12, 2))


def is_valid_mac(mac: str) -> bool:
    return bool(_ACCEPTED.match(str(mac).strip()))


def require_mac(mac: Any) -> str:
    """Normalize `mac` or raise ValidationError."""
    if not isinstance(mac, str) or not mac.strip():
        raise ValidationError("MAC address required")
    if not is_valid_mac(mac):
        raise ValidationError(f"Invalid MAC address format: {mac!r}. Use xx:xx:xx:xx:xx:xx")
    return normalize_mac(mac)


@dataclass(frozen=True)
class DeviceInfo:
    """Caller-reported metadata about the requesting machine."""

    hostname: str | None = None
    username: str | None = None
    platform: str | None = None
    local_ip: str | None = None
    public_ip: str | None = None
    fingerprint: str | None = None

    @classmethod
    def from_mapping(cls, raw: Any) -> "DeviceInfo":
        # Untyped JSON from the HTTP layer; anything unexpected becomes empty
        if isinstance(raw, DeviceInfo):
            return raw
        if not isinstance(raw, Mapping):
            return cls()

        def s(*keys: str) -> str | None:
            for k in keys:
                v = raw.get(k)
                if v is not None and v != "":
                    return str(v)
            return None

        return cls(
            hostname=s("hostname"),
            username=s("username"),
            platform=s("platform"),
            local_ip=s("localIP", "local_ip"),
            public_ip=s("publicIP", "public_ip"),
            fingerprint=s("fingerprint"),
        )

    def snapshot(self) -> dict[str, str | None]:
        """Stored as an entry's `lastDevice`; never includes the fingerprint."""
        return {
            "hostname": self.hostname,
            "username": self.username,
            "platform": self.platform,
            "localIP": self.local_ip,
            "publicIP": self.public_ip,
        }

    def log_record(self) -> dict[str, str | None]:
        out = self.snapshot()
        out["fingerprint"] = f"{self.fingerprint[:16]}..." if self.fingerprint else None
        return out


@dataclass
class WhitelistEntry:
    mac: str
    description: str = ""
    access_type: AccessType = AccessType.TRIAL
    active: bool = True
    added_at: str = field(default_factory=utc_now_iso)
    updated_at: str | None = None
    last_seen: str | None = None
    access_count: int = 0
    last_device: dict[str, Any] | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def create(cls, mac: str, description: str | None = None, access_type: Any = None) -> "WhitelistEntry":
        return cls(
            mac=require_mac(mac),
            description="" if description is None else str(description),
            access_type=AccessType.parse(access_type),
        )

    def record_access(self, device: DeviceInfo, when: str | None = None) -> None:
        self.last_seen = when or utc_now_iso()
        self.access_count += 1
        self.last_device = device.snapshot()

    def to_dict(self) -> dict[str, Any]:
        return {
            "macAddress": self.mac,
            "description": self.description,
            "accessType": self.access_type.value,
            "active": self.active,
            "addedAt": self.added_at,
            "updatedAt": self.updated_at,
            "lastSeen": self.last_seen,
            "accessCount": self.access_count,
            "lastDevice": self.last_device,
            "id": self.id,
        }


def entry_from_dict(mac: str, rec: Mapping[str, Any]) -> WhitelistEntry:
    """
    Build an entry from its stored JSON form.

    Missing `id`/`accessType` are filled here only for in-memory use; the
    stored document is repaired by the maintenance sweep.
    """
    try:
        access_type = AccessType.parse(rec.get("accessType"))
    except InvalidAccessType:
        access_type = AccessType.TRIAL
    try:
        count = max(0, int(rec.get("accessCount") or 0))
    except (TypeError, ValueError):
        count = 0
    return WhitelistEntry(
        mac=mac,
        description=str(rec.get("description") or ""),
        access_type=access_type,
        active=rec.get("active") is not False,
        added_at=rec.get("addedAt") or rec.get("added") or utc_now_iso(),
        updated_at=rec.get("updatedAt"),
        last_seen=rec.get("lastSeen"),
        access_count=count,
        last_device=rec.get("lastDevice"),
        id=rec.get("id") or "",
    )


def stored_form(entry: WhitelistEntry) -> dict[str, Any]:
    """Entry as written under `macAddresses[mac]` (the key holds the MAC)."""
    out = entry.to_dict()
    del out["macAddress"]
    return out
