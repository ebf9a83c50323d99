import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from aiohttp import test_utils

from server import (
    CLIENT_KEY,
    DB_KEY,
    OWNS_RESOURCES_KEY,
    TASKS_KEY,
    build_app,
    create_app,
    main,
    status_for,
)
from utils.api_clients import PokeAPIClient
from utils.errors import (
    CircuitBreakerError,
    ConflictError,
    FetchError,
    NotFoundError,
    PokedexError,
    TransientNetworkError,
    ValidationError,
)
from utils.models import PokemonEntity


@pytest_asyncio.fixture
async def app(db, fake_client):
    return create_app(db, fake_client)


@pytest_asyncio.fixture
async def http(app):
    client = test_utils.TestClient(test_utils.TestServer(app))
    await client.start_server()
    yield client
    await client.close()


@pytest.mark.parametrize(
    "error, status",
    [
        (ValidationError("bad"), 400),
        (NotFoundError("gone"), 404),
        (ConflictError("twice"), 409),
        (TransientNetworkError("HTTP 503"), 503),
        (CircuitBreakerError("open"), 503),
        (FetchError("HTTP 404", status=404), 500),
        (PokedexError("boom"), 500),
    ],
)
def test_status_mapping(error, status):
    assert status_for(error) == status


@pytest.mark.asyncio
class TestRegionalEndpoint:
    async def test_region_is_required(self, http):
        resp = await http.get("/api/regional-pokedex")
        assert resp.status == 400
        assert (await resp.json())["error"] == "E_VALIDATION:region is required"

    async def test_first_page_builds_region(self, http, fake_client, payloads):
        fake_client.add("pokedex", "kanto", payloads.pokedex([(1, "bulbasaur"), (4, "charmander")]))
        for pokemon_id, name in [(1, "bulbasaur"), (4, "charmander")]:
            fake_client.add("pokemon", name, payloads.pokemon(pokemon_id, name))
            fake_client.add("pokemon-species", pokemon_id, payloads.species(pokemon_id, name))

        resp = await http.get("/api/regional-pokedex", params={"region": "kanto", "limit": "1"})
        body = await resp.json()

        assert resp.status == 200
        assert [e["dexId"] for e in body["data"]] == [1]
        assert body["totalCount"] == 2
        assert body["hasMore"] is True

        resp = await http.get("/api/regional-pokedex", params={"region": "Kanto", "limit": "1", "offset": "1"})
        body = await resp.json()
        assert [e["name"] for e in body["data"]] == ["charmander"]
        assert body["hasMore"] is False


@pytest.mark.asyncio
class TestPokemonEndpoints:
    async def test_list_rejects_bad_params(self, http):
        resp = await http.get("/api/pokemon", params={"limit": "abc"})
        assert resp.status == 400
        assert (await resp.json())["error"].startswith("E_VALIDATION:")

        resp = await http.get("/api/pokemon", params={"generation": "12"})
        assert resp.status == 400

    async def test_list_with_filters(self, http, db):
        await db.upsert_pokemon(PokemonEntity(id=25, name="pikachu", types=["electric"], generation=1))
        await db.upsert_pokemon(PokemonEntity(id=4, name="charmander", types=["fire"], generation=1))

        resp = await http.get("/api/pokemon", params={"types": "electric,water", "search": "pika"})
        body = await resp.json()

        assert resp.status == 200
        assert body["total"] == 1
        assert body["items"][0]["name"] == "pikachu"

    async def test_unknown_pokemon_is_404(self, http):
        resp = await http.get("/api/pokemon/500")
        assert resp.status == 404
        assert (await resp.json())["error"].startswith("E_NOT_FOUND:")

    async def test_out_of_range_id_is_400(self, http):
        resp = await http.get("/api/pokemon/99999")
        assert resp.status == 400

    async def test_upstream_outage_is_503(self, http, fake_client, payloads):
        fake_client.fail("pokemon", 7, TransientNetworkError("HTTP 503"))
        fake_client.add("pokemon-species", 7, payloads.species(7, "squirtle"))

        resp = await http.get("/api/pokemon/7")

        assert resp.status == 503
        assert (await resp.json())["error"].startswith("E_TRANSIENT:")

    async def test_populate_is_scheduled(self, http, app):
        resp = await http.post("/api/pokemon/populate", json={"limit": 2, "offset": 0})
        assert resp.status == 200
        assert await resp.json() == {"success": True, "scheduled": 2}

        await asyncio.gather(*app[TASKS_KEY], return_exceptions=True)

    async def test_populate_validates_body(self, http):
        resp = await http.post("/api/pokemon/populate", json={"limit": -1})
        assert resp.status == 400

    async def test_clear_cache(self, http, db):
        await db.upsert_pokemon(PokemonEntity(id=1, name="bulbasaur"))

        resp = await http.post("/api/cache/clear", json={"scopes": ["bogus"]})
        assert resp.status == 400

        resp = await http.post("/api/cache/clear", json={"scopes": ["pokemon"]})
        body = await resp.json()
        assert body["success"] is True
        assert body["deleted"]["pokemon"] == 1


@pytest.mark.asyncio
class TestFavoritesEndpoints:
    async def test_header_is_required(self, http):
        resp = await http.get("/api/favorites")
        assert resp.status == 400

    async def test_favorite_lifecycle(self, http, db):
        await db.upsert_pokemon(PokemonEntity(id=25, name="pikachu", types=["electric"]))
        headers = {"X-User-Id": "ash"}

        resp = await http.post("/api/favorites/25", headers=headers)
        assert resp.status == 201

        resp = await http.post("/api/favorites/25", headers=headers)
        assert resp.status == 409
        assert (await resp.json())["error"].startswith("E_CONFLICT:")

        resp = await http.get("/api/favorites", headers=headers)
        assert [p["id"] for p in await resp.json()] == [25]

        resp = await http.delete("/api/favorites/25", headers=headers)
        assert resp.status == 200

        resp = await http.delete("/api/favorites/25", headers=headers)
        assert resp.status == 404

    async def test_unknown_pokemon_cannot_be_favorited(self, http):
        resp = await http.post("/api/favorites/42", headers={"X-User-Id": "ash"})
        assert resp.status == 404


@pytest.mark.asyncio
class TestGenderEndpoint:
    async def test_name_needed_when_not_cached(self, http):
        resp = await http.get("/api/gender-differences/1")
        assert resp.status == 400

    async def test_species_without_differences(self, http, fake_client):
        resp = await http.get("/api/gender-differences/1", params={"name": "bulbasaur"})
        assert resp.status == 200
        assert await resp.json() is None
        assert fake_client.calls == []


@pytest.mark.asyncio
async def test_build_app_uses_shared_store(mocker, db):
    mocker.patch("server.get_database", AsyncMock(return_value=db))

    app = await build_app()

    assert app[DB_KEY] is db
    assert app[OWNS_RESOURCES_KEY] is True
    await app[CLIENT_KEY].close()


def test_main_exits_on_bad_configuration(mocker):
    mocker.patch("server.setup_logging")
    mocker.patch("server.validate_settings", side_effect=ValueError("HTTP_PORT out of range"))
    run_app = mocker.patch("server.web.run_app")

    with pytest.raises(SystemExit):
        main()
    run_app.assert_not_called()


@pytest.mark.asyncio
async def test_health_reports_client_stats(db):
    client = PokeAPIClient()
    app = create_app(db, client)

    async with test_utils.TestClient(test_utils.TestServer(app)) as http:
        resp = await http.get("/api/health")
        body = await resp.json()

    assert resp.status == 200
    assert body["status"] == "ok"
    assert body["circuitBreakers"]["pokeapi"]["state"] == "closed"
    assert body["deduplication"]["pending_requests"] == 0
    await client.close()


@pytest.mark.asyncio
async def test_regional_build_failure_is_500(http, fake_client):
    fake_client.fail("pokedex", "kanto", TransientNetworkError("HTTP 503"))

    resp = await http.get("/api/regional-pokedex", params={"region": "kanto"})

    assert resp.status == 500
    assert (await resp.json())["error"].startswith("E_INTERNAL:regional aggregation failed")
