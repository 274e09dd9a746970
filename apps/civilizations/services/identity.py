# apps/civilizations/services/identity.py
"""
Resolve a loosely-typed civilization or map name to its stored spelling.

Lookup order, first hit wins:

1. shadow key (lower-cased, indexed column),
2. the name exactly as given,
3. the re-capitalised name ("bRITONS" → "Britons"), for legacy rows that
   predate the shadow column and were stored capitalised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from apps.civilizations.errors import StatsNotFound
from common.text_utils import recapitalize, shadow_key

if TYPE_CHECKING:
    from .protocols import NameLookup

log = structlog.get_logger(__name__).bind(component="IdentityResolver")


class IdentityResolver:
    def __init__(self, lookup: NameLookup, *, kind: str = "civilization") -> None:
        self._lookup = lookup
        self.kind = kind

    async def resolve(self, name: str) -> str:
        if not name or not name.strip():
            raise StatsNotFound(self.kind, name or "")

        raw = name.strip()

        found = await self._lookup.by_shadow_key(shadow_key(raw))
        if found is not None:
            return found

        found = await self._lookup.by_exact_name(raw)
        if found is not None:
            log.info("Resolved without shadow key", kind=self.kind, name=raw, via="exact")
            return found

        # Compatibility shim for rows that predate the shadow column.
        capitalised = recapitalize(raw)
        if capitalised != raw:
            found = await self._lookup.by_exact_name(capitalised)
            if found is not None:
                log.info("Resolved without shadow key", kind=self.kind, name=raw, via="recapitalize")
                return found

        log.info("Name not found", kind=self.kind, name=raw)
        raise StatsNotFound(self.kind, raw)
