"""
Name normalisation helpers shared by models and lookups.

Exported symbols
────────────────
• shadow_key(name)   → str   the lower-cased key stored in `*_lower` columns
• recapitalize(name) → str   "bRITONS" → "Britons"
"""

from __future__ import annotations


def shadow_key(name: str | None) -> str:
    """
    The value stored in shadow columns (`civ_lower`, `map_lower`).

    >>> shadow_key("  Britons ")
    'britons'
    """
    if not name:
        return ""
    return name.strip().lower()


def recapitalize(name: str) -> str:
    """
    First letter upper, rest lower.

    >>> recapitalize("bRITONS")
    'Britons'
    """
    name = name.strip()
    return name[:1].upper() + name[1:].lower()
