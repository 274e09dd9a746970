# apps/civilizations/management/commands/diagnose_durations.py
# ================================================================================
"""Prints how a random sample of raw `matches.duration` values convert under each unit."""

from __future__ import annotations

import orjson
from django.core.management.base import BaseCommand, CommandError

from apps.civilizations.services.units import candidate_conversions
from apps.matches.models import MatchRecord, Participation
from common.text_utils import shadow_key


class Command(BaseCommand):
    help = "Samples stored match durations and reports the unit each magnitude is read as."

    def add_arguments(self, parser):
        parser.add_argument("--civ", help="Only games featuring this civilization.")
        parser.add_argument("--map", dest="map_name", help="Only games on this map.")
        parser.add_argument("--sample", type=int, default=5000)

    def handle(self, *args, **options):
        if options["sample"] <= 0:
            msg = "--sample must be a positive integer"
            raise CommandError(msg)

        qs = MatchRecord.objects.exclude(duration__isnull=True)
        if options["civ"]:
            games = Participation.objects.for_civ(shadow_key(options["civ"]), options["civ"]).values("game_id")
            qs = qs.filter(game_id__in=games)
        if options["map_name"]:
            qs = qs.on_map(shadow_key(options["map_name"]), options["map_name"])

        values = list(qs.order_by("?").values_list("duration", flat=True)[: options["sample"]])
        if not values:
            self.stdout.write(self.style.WARNING("No durations matched the given filters."))
            return

        report = candidate_conversions(values)
        self.stdout.write(orjson.dumps(report, option=orjson.OPT_INDENT_2).decode())
