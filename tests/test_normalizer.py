import pytest

from utils.models import PokemonEntity, Sprites
from utils.normalizer import (
    display_sprite,
    generation_for_id,
    id_from_url,
    normalize,
    normalize_form,
    normalize_species,
)


@pytest.mark.parametrize(
    "dex_id, generation",
    [(1, 1), (25, 1), (151, 1), (152, 2), (386, 3), (493, 4), (649, 5), (721, 6), (809, 7), (810, 8), (906, 9), (1025, 9), (10195, 9)],
)
def test_generation_for_id(dex_id, generation):
    assert generation_for_id(dex_id) == generation


@pytest.mark.parametrize("dex_id, generation", [(25, 1), (810, 8), (906, 9)])
def test_normalize_derives_generation_from_id(payloads, dex_id, generation):
    entity = normalize(payloads.pokemon(dex_id, "mon"))
    assert entity.generation == generation


def test_species_generation_wins_over_id_table(payloads):
    entity = normalize(payloads.pokemon(25, "pikachu"), payloads.species(25, "pikachu", generation=3))
    assert entity.generation == 3


def test_normalize_flattens_payload(payloads):
    raw = payloads.pokemon(1, "Bulbasaur", types=("grass", "poison"))
    entity = normalize(raw, payloads.species(1, "bulbasaur"))

    assert entity.id == 1
    assert entity.name == "bulbasaur"
    assert entity.types == ["grass", "poison"]
    assert [a.name for a in entity.abilities] == ["overgrow", "chlorophyll"]
    assert entity.abilities[1].is_hidden
    assert entity.stats[0].name == "hp" and entity.stats[0].base_stat == 45
    assert entity.sprites.official_artwork == "https://art/1.png"
    assert entity.moves == ["tackle"]


def test_missing_arrays_become_empty_lists():
    entity = normalize({"id": 7, "name": "squirtle"})
    assert entity.types == []
    assert entity.abilities == []
    assert entity.stats == []
    assert entity.moves == []


def test_previous_record_fills_gaps_and_keeps_tags():
    previous = PokemonEntity(
        id=6,
        name="charizard",
        types=["fire", "flying"],
        sprites=Sprites(front_default="old.png", official_artwork="old-art.png"),
        form_tags=["mega"],
    )
    entity = normalize({"id": 6, "name": "charizard", "sprites": {"front_default": "new.png"}}, previous=previous)

    assert entity.sprites.front_default == "new.png"
    assert entity.sprites.official_artwork == "old-art.png"
    assert entity.types == ["fire", "flying"]
    assert entity.form_tags == ["mega"]


def test_variety_names_add_tags(payloads):
    species = payloads.species(
        6,
        "charizard",
        varieties=[("charizard", True, 6), ("charizard-mega-x", False, 10034), ("charizard-gmax", False, 10196)],
    )
    entity = normalize(payloads.pokemon(6, "charizard"), species)
    assert entity.form_tags == ["mega", "gigantamax"]


def test_display_sprite_precedence():
    assert display_sprite({"front_default": "a", "other": {"official-artwork": {"front_default": "b"}}}) == "b"
    assert display_sprite({"front_default": "a"}) == "a"
    assert display_sprite({}, previous="cached") == "cached"
    assert display_sprite(None) is None


def test_normalize_species_picks_english_text(payloads):
    species = normalize_species(payloads.species(1, "bulbasaur"))
    assert species.flavor_text == "A strange seed was planted on its back."
    assert species.genus == "Seed Pokémon"
    assert species.evolution_chain_id == 1
    assert species.growth_rate == "medium-slow"
    assert species.generation == 1


def test_normalize_form_reads_owner_from_url(payloads):
    raw = payloads.form(10091, "rattata-alola", 10091, form_name="alola", is_default=True)
    form = normalize_form(raw, species_id=19)

    assert form.form_id == 10091
    assert form.pokemon_id == 10091
    assert form.species_id == 19
    assert form.categories == ["regional"]
    assert form.generation == 1


def test_id_from_url():
    assert id_from_url("https://pokeapi.co/api/v2/pokemon-species/25/") == 25
    assert id_from_url("https://pokeapi.co/api/v2/pokemon-species/pikachu/") is None
    assert id_from_url(None) is None


def test_plain_default_species_is_tagged_alternate(payloads):
    entity = normalize(
        payloads.pokemon(1, "bulbasaur"),
        payloads.species(1, "bulbasaur"),
        payloads.form(1, "bulbasaur", 1),
    )
    assert entity.form_tags == ["alternate"]


def test_empty_abilities_and_stats_keep_previous(payloads):
    previous = normalize(payloads.pokemon(1, "bulbasaur"))
    raw = dict(payloads.pokemon(1, "bulbasaur"), abilities=[], stats=[])

    entity = normalize(raw, previous=previous)

    assert [a.name for a in entity.abilities] == ["overgrow", "chlorophyll"]
    assert entity.stats[0].base_stat == 45
