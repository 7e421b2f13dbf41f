from __future__ import annotations

import getpass
import platform
import socket
from dataclasses import dataclass

import psutil

from .allowlist import DeviceInfo, is_valid_mac, normalize_mac

_IGNORED = {"00:00:00:00:00:00", "ff:ff:ff:ff:ff:ff"}


@dataclass(frozen=True)
class Interface:
    name: str
    mac: str
    ipv4: str | None
    is_up: bool


# -------------------------------------------------
# Interface enumeration
# -------------------------------------------------

def _link_family() -> int | None:
    return getattr(psutil, "AF_LINK", None)


def list_interfaces() -> list[Interface]:
    """
    Link-layer interfaces with a usable hardware address.
    Loopback and all-zero / broadcast addresses are skipped.
    """
    link = _link_family()
    stats = psutil.net_if_stats()
    out: list[Interface] = []
    for name, addrs in psutil.net_if_addrs().items():
        mac = None
        ipv4 = None
        for a in addrs:
            if a.family == link and a.address and is_valid_mac(a.address):
                mac = normalize_mac(a.address)
            elif a.family == socket.AF_INET and a.address:
                ipv4 = a.address
        if mac is None or mac in _IGNORED:
            continue
        if ipv4 is not None and ipv4.startswith("127."):
            continue
        st = stats.get(name)
        out.append(Interface(name=name, mac=mac, ipv4=ipv4, is_up=bool(st and st.isup)))
    return out


def local_mac_candidates() -> list[str]:
    """
    Candidate MACs for an access check, most preferred first:
    interfaces that are up with an IPv4 address, then up, then the rest.
    """
    ifaces = list_interfaces()
    ifaces.sort(key=lambda i: (not (i.is_up and i.ipv4), not i.is_up, i.name))

    # De-dup while preserving order
    seen: set[str] = set()
    unique: list[str] = []
    for i in ifaces:
        if i.mac not in seen:
            seen.add(i.mac)
            unique.append(i.mac)
    return unique


# -------------------------------------------------
# Device metadata
# -------------------------------------------------

def _username() -> str | None:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return None


def current_device_info() -> DeviceInfo:
    local_ip = next((i.ipv4 for i in list_interfaces() if i.is_up and i.ipv4), None)
    return DeviceInfo(
        hostname=socket.gethostname(),
        username=_username(),
        platform=f"{platform.system().lower()}-{platform.machine()}",
        local_ip=local_ip,
    )
