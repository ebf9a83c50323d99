import pytest
import pytest_asyncio

from services.aggregation import BulkPopulator
from services.query import PokedexQueryService
from utils.errors import ConflictError, NotFoundError, TransientNetworkError, ValidationError
from utils.models import PokemonEntity, PokemonForm

ROSTER = [
    (1, "bulbasaur", ["grass", "poison"], []),
    (4, "charmander", ["fire"], []),
    (6, "charizard", ["fire", "flying"], ["mega", "gigantamax"]),
    (25, "pikachu", ["electric"], ["gigantamax"]),
    (26, "raichu", ["electric"], ["regional"]),
    (152, "chikorita", ["grass"], []),
    (810, "grookey", ["grass"], []),
]


@pytest_asyncio.fixture
async def seeded(db):
    for pokemon_id, name, types, tags in ROSTER:
        generation = 1 if pokemon_id <= 151 else (2 if pokemon_id <= 251 else 8)
        await db.upsert_pokemon(
            PokemonEntity(id=pokemon_id, name=name, types=types, form_tags=tags, generation=generation)
        )
    return db


@pytest.mark.asyncio
class TestListing:
    @pytest.mark.parametrize("limit, offset", [(0, 0), (1, 0), (3, 0), (3, 3), (3, 6), (7, 0), (10, 2), (1025, 5)])
    async def test_pagination_invariant(self, seeded, limit, offset):
        service = PokedexQueryService(seeded)
        result = await service.list(limit=limit, offset=offset)

        total = result["total"]
        assert total == len(ROSTER)
        assert len(result["items"]) == min(limit, max(0, total - offset))
        assert result["hasMore"] == (offset + limit < total)

    async def test_sorted_by_id(self, seeded):
        result = await PokedexQueryService(seeded).list(limit=20)
        assert [item["id"] for item in result["items"]] == [1, 4, 6, 25, 26, 152, 810]

    async def test_offset_past_end_resets(self, seeded):
        result = await PokedexQueryService(seeded).list(limit=2, offset=50)
        assert result["offset"] == 0
        assert [item["id"] for item in result["items"]] == [1, 4]
        assert result["hasMore"] is True

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"limit": -1},
            {"limit": 1026},
            {"offset": -5},
            {"generation": 0},
            {"generation": 10},
            {"limit": "20"},
            {"form_categories": ["sparkly"]},
        ],
    )
    async def test_invalid_input_is_rejected(self, seeded, kwargs):
        with pytest.raises(ValidationError) as exc_info:
            await PokedexQueryService(seeded).list(**kwargs)
        assert str(exc_info.value).startswith("E_VALIDATION:")

    async def test_generation_filter(self, seeded):
        result = await PokedexQueryService(seeded).list(limit=20, generation=2)
        assert [item["id"] for item in result["items"]] == [152]

    async def test_search_by_name_or_id(self, seeded):
        service = PokedexQueryService(seeded)
        by_name = await service.list(limit=20, search="char")
        by_id = await service.list(limit=20, search="25")

        assert [item["id"] for item in by_name["items"]] == [4, 6]
        assert [item["id"] for item in by_id["items"]] == [25]

    async def test_types_are_any_of(self, seeded):
        result = await PokedexQueryService(seeded).list(limit=20, types=["flying", "electric"])
        assert [item["id"] for item in result["items"]] == [6, 25, 26]

    async def test_categories_accept_aliases(self, seeded):
        result = await PokedexQueryService(seeded).list(limit=20, form_categories="gmax,regional")
        assert [item["id"] for item in result["items"]] == [6, 25, 26]

    async def test_filters_combine_in_order(self, seeded):
        result = await PokedexQueryService(seeded).list(
            limit=20, generation=1, types=["fire"], form_categories=["mega"]
        )
        assert [item["id"] for item in result["items"]] == [6]
        assert result["total"] == 1

    async def test_empty_search_suggests_names(self, seeded):
        result = await PokedexQueryService(seeded).list(limit=20, search="pikachoo")
        assert result["items"] == []
        assert "pikachu" in result["suggestions"]


@pytest.mark.asyncio
class TestBackfill:
    async def test_missing_ids_are_backfilled(self, db, fake_client, payloads):
        for pokemon_id, name in [(1, "bulbasaur"), (2, "ivysaur")]:
            fake_client.add("pokemon", pokemon_id, payloads.pokemon(pokemon_id, name))
            fake_client.add("pokemon-species", pokemon_id, payloads.species(pokemon_id, name))
        service = PokedexQueryService(db, populator=BulkPopulator(fake_client, db, batch_delay=0))

        first = await service.list(limit=2)
        assert first["items"] == []

        await service.wait_for_backfills()
        second = await service.list(limit=2)
        assert [item["id"] for item in second["items"]] == [1, 2]

    async def test_filtered_reads_do_not_backfill(self, db, fake_client):
        service = PokedexQueryService(db, populator=BulkPopulator(fake_client, db, batch_delay=0))
        await service.list(limit=2, search="mew")
        await service.list(limit=2, types=["psychic"])
        await service.wait_for_backfills()
        assert fake_client.calls == []

    async def test_get_by_id_fills_miss(self, db, fake_client, payloads):
        fake_client.add("pokemon", 25, payloads.pokemon(25, "pikachu", types=("electric",)))
        fake_client.add("pokemon-species", 25, payloads.species(25, "pikachu"))
        service = PokedexQueryService(db, populator=BulkPopulator(fake_client, db))

        result = await service.get_by_id(25)

        assert result["pokemon"]["types"] == ["electric"]
        assert result["species"]["name"] == "pikachu"

    async def test_get_by_id_unknown_upstream(self, db, fake_client):
        service = PokedexQueryService(db, populator=BulkPopulator(fake_client, db))
        assert await service.get_by_id(999) is None

    async def test_get_by_id_transient_failure_propagates(self, db, fake_client, payloads):
        fake_client.fail("pokemon", 7, TransientNetworkError("HTTP 503"))
        fake_client.add("pokemon-species", 7, payloads.species(7, "squirtle"))
        service = PokedexQueryService(db, populator=BulkPopulator(fake_client, db))
        with pytest.raises(TransientNetworkError):
            await service.get_by_id(7)

    async def test_get_by_id_validates(self, db):
        with pytest.raises(ValidationError):
            await PokedexQueryService(db).get_by_id(0)


@pytest.mark.asyncio
class TestForms:
    async def test_list_forms_by_category(self, db):
        forms = [
            PokemonForm(form_id=10100, pokemon_id=10100, name="raichu-alola", pokemon_name="raichu-alola", categories=["regional"], generation=1, form_order=2),
            PokemonForm(form_id=10091, pokemon_id=10091, name="rattata-alola", pokemon_name="rattata-alola", categories=["regional"], generation=1),
            PokemonForm(form_id=10196, pokemon_id=10196, name="charizard-gmax", categories=["gigantamax"], generation=9),
        ]
        for form in forms:
            await db.upsert_form(form)
        service = PokedexQueryService(db)

        regional = await service.list_forms(category="regional")
        assert [f["formId"] for f in regional["items"]] == [10091, 10100]

        gmax = await service.list_forms(category="gmax")
        assert [f["formId"] for f in gmax["items"]] == [10196]

        searched = await service.list_forms(search="raichu")
        assert [f["formId"] for f in searched["items"]] == [10100]

        by_owner = await service.list_forms(pokemon_id=10091)
        assert by_owner["total"] == 1

    async def test_list_forms_limit_bound(self, db):
        with pytest.raises(ValidationError):
            await PokedexQueryService(db).list_forms(limit=201)


@pytest.mark.asyncio
class TestFavorites:
    async def test_add_conflict_and_remove(self, seeded):
        service = PokedexQueryService(seeded)

        await service.add_favorite("ash", 25)
        with pytest.raises(ConflictError):
            await service.add_favorite("ash", 25)

        favorites = await service.get_favorites("ash")
        assert [f["id"] for f in favorites] == [25]

        await service.remove_favorite("ash", 25)
        with pytest.raises(NotFoundError):
            await service.remove_favorite("ash", 25)

    async def test_add_unknown_entity(self, seeded):
        with pytest.raises(NotFoundError):
            await PokedexQueryService(seeded).add_favorite("ash", 999)

    async def test_clear_cache_scopes(self, seeded):
        service = PokedexQueryService(seeded)
        await service.add_favorite("brock", 1)

        deleted = await service.clear_cache(["pokemon"])

        assert deleted["pokemon"] == len(ROSTER)
        assert await seeded.list_favorite_ids("brock") == [1]
        assert await service.get_favorites("brock") == []

        with pytest.raises(ValidationError):
            await service.clear_cache(["everything"])
