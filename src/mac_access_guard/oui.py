from __future__ import annotations

from manuf import manuf

from .allowlist import is_valid_mac, normalize_mac


class OUILookup:
    """
    Thin wrapper around `manuf` OUI database.
    """

    def __init__(self) -> None:
        self._parser = manuf.MacParser()

    def manufacturer(self, mac: str) -> str | None:
        if not is_valid_mac(mac):
            return None
        m = normalize_mac(mac)

        # Locally administered MAC: second least significant bit of first octet is 1
        if int(m[:2], 16) & 0b00000010:
            return "Local / randomized MAC"

        return self._parser.get_manuf(m.upper())
