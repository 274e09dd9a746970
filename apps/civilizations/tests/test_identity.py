import pytest

from apps.civilizations.errors import StatsNotFound
from apps.civilizations.services.identity import IdentityResolver


async def test_shadow_key_hit_is_case_insensitive(civ_lookup):
    resolver = IdentityResolver(civ_lookup)

    assert await resolver.resolve("  bRiToNs ") == "Britons"
    assert civ_lookup.calls == [("shadow", "britons")]


async def test_falls_back_to_exact_name(civ_lookup):
    civ_lookup.exact = {"Hindustanis"}

    assert await IdentityResolver(civ_lookup).resolve("Hindustanis") == "Hindustanis"
    assert civ_lookup.calls == [("shadow", "hindustanis"), ("exact", "Hindustanis")]


async def test_recapitalized_name_for_legacy_rows(civ_lookup):
    civ_lookup.exact = {"Vikings"}

    assert await IdentityResolver(civ_lookup).resolve("vIKINGS") == "Vikings"
    assert civ_lookup.calls[-1] == ("exact", "Vikings")


async def test_recapitalized_lookup_is_skipped_when_identical(civ_lookup):
    with pytest.raises(StatsNotFound):
        await IdentityResolver(civ_lookup).resolve("Atlanteans")

    assert civ_lookup.calls == [("shadow", "atlanteans"), ("exact", "Atlanteans")]


@pytest.mark.parametrize("name", ["", "   "])
async def test_blank_names_are_not_found(civ_lookup, name):
    with pytest.raises(StatsNotFound):
        await IdentityResolver(civ_lookup).resolve(name)
    assert civ_lookup.calls == []


async def test_not_found_carries_resource_and_name(map_lookup):
    with pytest.raises(StatsNotFound) as exc_info:
        await IdentityResolver(map_lookup, kind="map").resolve("Atlantis")

    assert exc_info.value.to_json() == {
        "error": "not_found",
        "resource": "map",
        "name": "Atlantis",
        "detail": "Map 'Atlantis' not found.",
    }
