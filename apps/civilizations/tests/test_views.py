import pytest
from django.core.cache import cache
from django.urls import reverse

from apps.civilizations import views
from apps.civilizations.errors import UpstreamUnavailable


@pytest.fixture(autouse=True)
def api(monkeypatch, service, no_redis_lock):
    """Views backed by the in-memory service, with an empty response cache."""
    monkeypatch.setattr(views, "get_stats_service", lambda: service)
    cache.clear()
    yield
    cache.clear()


async def test_civilization_detail_view_async(async_client):
    """Tests the async civilization detail view."""
    url = reverse("civilizations:detail", kwargs={"name": "britons"})

    response = await async_client.get(url)

    assert response.status_code == 200
    assert response["X-Cache-Status"] == "MISS"
    assert response["X-Stats-Degraded"] == "false"
    data = response.json()
    assert data["civilization"] == "Britons"
    assert data["meta"]["source"] == "live"

    again = await async_client.get(url)
    assert again["X-Cache-Status"] == "HIT"
    assert again.json()["stats"] == data["stats"]


async def test_unknown_civilization_returns_structured_404(async_client):
    response = await async_client.get(reverse("civilizations:detail", kwargs={"name": "Atlanteans"}))

    assert response.status_code == 404
    assert response.json() == {
        "error": "not_found",
        "resource": "civilization",
        "name": "Atlanteans",
        "detail": "Civilization 'Atlanteans' not found.",
    }


async def test_degraded_responses_are_flagged_and_not_cached(async_client, repo):
    repo.delay_s = 5
    url = reverse("civilizations:maps", kwargs={"name": "britons"})

    first = await async_client.get(url)
    second = await async_client.get(url)

    assert first.status_code == 200
    assert first["X-Stats-Degraded"] == "true"
    assert first.json()["maps"] == []
    assert second["X-Cache-Status"] == "MISS"


async def test_upstream_outage_is_a_generic_500(async_client, repo):
    repo.error = UpstreamUnavailable("connection refused")

    response = await async_client.get(reverse("civilizations:best-against", kwargs={"name": "britons"}))

    assert response.status_code == 500
    assert response.json() == {"detail": "An internal server error occurred."}


async def test_matchup_limit_param(async_client):
    url = reverse("civilizations:worst-against", kwargs={"name": "britons"})

    response = await async_client.get(url, {"limit": "1", "nocache": "true"})

    assert response["X-Cache-Status"] == "BYPASS"
    assert response.json()["opponents"] == [{"opponent": "Mayans", "games": 5, "winRate": 0.0}]


async def test_civilization_summary_filters(async_client):
    response = await async_client.get(reverse("civilizations:summary"), {"leaderboard": "rm_1v1", "min_matches": "6"})

    data = response.json()
    assert [c["name"] for c in data["civilizations"]] == ["Britons", "Franks"]
    assert data["meta"]["filters"] == {"leaderboard": "rm_1v1"}


async def test_filters_route_is_not_a_civilization_name(async_client):
    response = await async_client.get("/api/v1/civilizations/filters")

    assert response.status_code == 200
    assert response.json()["leaderboards"] == ["rm_1v1"]
    assert "civilization" not in response.json()


async def test_openings_route(async_client):
    response = await async_client.get(reverse("civilizations:openings", kwargs={"name": "britons"}))

    assert response.status_code == 200
    assert response.json()["civilization"] == "Britons"
    assert response.json()["openings"] == []


async def test_map_routes(async_client):
    summary = await async_client.get(reverse("maps:summary"), {"min_matches": "1"})
    detail = await async_client.get(reverse("maps:detail", kwargs={"name": "arabia"}))

    assert summary.status_code == 200
    assert detail.json()["map"] == "Arabia"
    assert detail.json()["stats"]["totalMatches"] == 8


def test_routes_have_no_trailing_slash():
    assert reverse("civilizations:summary") == "/api/v1/civilizations"
    assert reverse("civilizations:filters") == "/api/v1/civilizations/filters"
    assert reverse("civilizations:openings", kwargs={"name": "Britons"}) == "/api/v1/civilizations/Britons/openings"
    best = reverse("civilizations:best-against", kwargs={"name": "Britons"})
    assert best == "/api/v1/civilizations/Britons/best-against"
    assert reverse("maps:detail", kwargs={"name": "Arabia"}) == "/api/v1/maps/Arabia"
