# apps/civilizations/management/commands/backfill_shadow_keys.py
# ================================================================================
"""
Fills `players.civ_lower` and `matches.map_lower` for rows ingested before
the shadow-key columns existed.

Lookups hit the shadow key first, so a name whose rows all lack it can only
be found through the slower exact-name fallback until this has run.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from django.core.management.base import BaseCommand
from django.db import transaction
from django.db.models import Q
from django.db.models.functions import Lower, Trim

from apps.matches.conf import SHADOW_KEY_BATCH_SIZE
from apps.matches.models import MatchRecord, Participation
from common.iterables_utils import chunked

if TYPE_CHECKING:
    from django.db.models import Model, QuerySet

log = structlog.get_logger(__name__).bind(component="ShadowKeyBackfill")


def backfill(
    queryset: QuerySet,
    *,
    source: str,
    target: str,
    batch_size: int = SHADOW_KEY_BATCH_SIZE,
    dry_run: bool = False,
) -> int:
    """
    Set `target = lower(trim(source))` on every row of `queryset`, one
    transaction per batch of primary keys. Returns the number of rows touched.
    """
    model: type[Model] = queryset.model
    pks = list(queryset.values_list("pk", flat=True).order_by())
    updated = 0
    for batch in chunked(pks, batch_size):
        if dry_run:
            updated += len(batch)
            continue
        with transaction.atomic():
            updated += model.objects.filter(pk__in=batch).update(**{target: Lower(Trim(source))})
        log.info("Backfilled batch", model=model.__name__, rows=len(batch), total=updated)
    return updated


class Command(BaseCommand):
    help = "Backfills lower-cased civilization and map name columns used for lookups."

    def add_arguments(self, parser):
        parser.add_argument("--batch-size", type=int, default=SHADOW_KEY_BATCH_SIZE)
        parser.add_argument("--dry-run", action="store_true", help="Only count the rows that need a key.")

    def handle(self, *args, **options):
        batch_size = options["batch_size"]
        dry_run = options["dry_run"]
        self.stdout.write(self.style.SUCCESS("► Backfilling shadow keys..."))

        civs = backfill(
            Participation.objects.missing_shadow_key(),
            source="civ",
            target="civ_lower",
            batch_size=batch_size,
            dry_run=dry_run,
        )
        maps = backfill(
            MatchRecord.objects.filter(Q(map_lower="") & ~Q(map="")),
            source="map",
            target="map_lower",
            batch_size=batch_size,
            dry_run=dry_run,
        )

        verb = "need" if dry_run else "updated"
        self.stdout.write(f"  players: {civs} {verb}, matches: {maps} {verb}")
        self.stdout.write(self.style.SUCCESS("✓ Shadow-key backfill completed successfully."))
