"""
Entity normalizer.

Turns the nested upstream payloads (pokemon, species, pokemon-form) into the
flat cached records in `utils.models`. Every fallback chain lives here:
missing arrays become empty lists, missing sprites fall back to what was
cached before, missing generations are derived from the id.
"""

import re
from typing import Any, Iterable, List, Mapping, Optional

from utils.api_models import RawForm, RawPokemon, RawSpecies
from utils.classifier import classify
from utils.constants import GENERATION_RANGES, MAX_STORED_MOVES
from utils.models import (
    Ability,
    PokemonEntity,
    PokemonForm,
    PokemonSpecies,
    Sprites,
    Stat,
    sorted_tags,
)

_WHITESPACE = re.compile(r"\s+")


def generation_for_id(dex_id: int) -> int:
    """
    Map a national dex id onto its generation.

    Ids past the last known range (including the 10000+ variety ids) are
    placed in the newest generation.
    """
    for generation, (low, high) in GENERATION_RANGES.items():
        if dex_id <= high:
            return generation if dex_id >= 1 else 1
    return max(GENERATION_RANGES)


def id_from_url(url: Optional[str]) -> Optional[int]:
    """Extract the trailing numeric id from a resource URL like `.../pokemon/25/`."""
    if not url or not isinstance(url, str):
        return None
    tail = url.rstrip("/").rsplit("/", 1)[-1]
    return int(tail) if tail.isdigit() else None


def _name_of(ref: Any) -> Optional[str]:
    if isinstance(ref, Mapping):
        name = ref.get("name")
        return name if isinstance(name, str) else None
    return None


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


def flatten_types(raw: Mapping[str, Any]) -> List[str]:
    slots = sorted(_list(raw.get("types")), key=lambda s: s.get("slot", 0))
    return [name for name in (_name_of(s.get("type")) for s in slots) if name]


def flatten_abilities(raw: Mapping[str, Any]) -> List[Ability]:
    seen = set()
    abilities = []
    for slot in _list(raw.get("abilities")):
        name = _name_of(slot.get("ability"))
        if not name or name in seen:
            continue
        seen.add(name)
        abilities.append(Ability(name=name, is_hidden=bool(slot.get("is_hidden"))))
    return abilities


def flatten_stats(raw: Mapping[str, Any]) -> List[Stat]:
    stats = []
    for entry in _list(raw.get("stats")):
        name = _name_of(entry.get("stat"))
        if name:
            stats.append(
                Stat(
                    name=name,
                    base_stat=entry.get("base_stat") or 0,
                    effort=entry.get("effort") or 0,
                )
            )
    return stats


def flatten_moves(raw: Mapping[str, Any], limit: int = MAX_STORED_MOVES) -> List[str]:
    names = [_name_of(m.get("move")) for m in _list(raw.get("moves"))]
    return [n for n in names if n][:limit]


def official_artwork(raw_sprites: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not isinstance(raw_sprites, Mapping):
        return None
    other = raw_sprites.get("other")
    if not isinstance(other, Mapping):
        return None
    artwork = other.get("official-artwork")
    if not isinstance(artwork, Mapping):
        return None
    return artwork.get("front_default") or None


def resolve_sprites(
    raw_sprites: Optional[Mapping[str, Any]], previous: Optional[Sprites] = None
) -> Sprites:
    """Fresh upstream sprite URLs win; gaps are filled from the previous record."""
    raw_sprites = raw_sprites if isinstance(raw_sprites, Mapping) else {}
    previous = previous or Sprites()
    return Sprites(
        front_default=raw_sprites.get("front_default") or previous.front_default,
        front_shiny=raw_sprites.get("front_shiny") or previous.front_shiny,
        official_artwork=official_artwork(raw_sprites) or previous.official_artwork,
    )


def display_sprite(
    raw_sprites: Optional[Mapping[str, Any]], previous: Optional[str] = None
) -> Optional[str]:
    """Official artwork > front_default > previously cached value > None."""
    if isinstance(raw_sprites, Mapping):
        found = official_artwork(raw_sprites) or raw_sprites.get("front_default")
        if found:
            return found
    return previous


def clean_text(text: str) -> str:
    return _WHITESPACE.sub(" ", text.replace("\f", " ").replace("\n", " ")).strip()


def _first_english(entries: Iterable[Mapping[str, Any]], field: str) -> Optional[str]:
    for entry in entries:
        if _name_of(entry.get("language")) == "en" and entry.get(field):
            return entry[field]
    return None


def pick_flavor_text(raw_species: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not raw_species:
        return None
    text = _first_english(_list(raw_species.get("flavor_text_entries")), "flavor_text")
    return clean_text(text) if text else None


def pick_genus(raw_species: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not raw_species:
        return None
    return _first_english(_list(raw_species.get("genera")), "genus")


def species_generation(raw_species: Optional[Mapping[str, Any]]) -> Optional[int]:
    """Generation stated by the species resource (`generation.url`), if any."""
    if not raw_species:
        return None
    generation = raw_species.get("generation")
    if not isinstance(generation, Mapping):
        return None
    value = id_from_url(generation.get("url"))
    return value if value and value in GENERATION_RANGES else None


def variety_tags(raw_species: Optional[Mapping[str, Any]]) -> List[str]:
    """Categories implied by a species' non-default varieties (e.g. its megas)."""
    tags = set()
    if not raw_species:
        return []
    for variety in _list(raw_species.get("varieties")):
        if variety.get("is_default"):
            continue
        name = _name_of(variety.get("pokemon"))
        if name:
            tags.update(classify({"name": name, "is_default": False}).categories())
    return sorted_tags(tags)


def normalize(
    raw_pokemon: RawPokemon,
    raw_species: Optional[RawSpecies] = None,
    raw_form: Optional[RawForm] = None,
    previous: Optional[PokemonEntity] = None,
) -> PokemonEntity:
    """
    Build the canonical entity for one pokemon.

    Args:
        raw_pokemon: `GET /pokemon/{id}` payload. Must carry an `id`.
        raw_species: Matching species payload; supplies the generation and
            the variety-derived tags.
        raw_form: The pokemon's default form payload, classified into tags.
        previous: Currently cached record for the same id. Its sprites fill
            gaps and its tags are kept, so tags only ever grow. An entity with no
            other tag is tagged "alternate".

    Returns:
        A PokemonEntity whose id equals `raw_pokemon["id"]`.
    """
    dex_id = int(raw_pokemon["id"])
    name = (raw_pokemon.get("name") or (previous.name if previous else "")).lower()

    generation = species_generation(raw_species) or generation_for_id(dex_id)

    tags = set(previous.form_tags) if previous else set()
    if raw_form:
        tags.update(classify(raw_form).categories())
    tags.update(variety_tags(raw_species))
    if not tags:
        tags.add("alternate")

    return PokemonEntity(
        id=dex_id,
        name=name,
        height=raw_pokemon.get("height") or (previous.height if previous else 0),
        weight=raw_pokemon.get("weight") or (previous.weight if previous else 0),
        base_experience=raw_pokemon.get("base_experience")
        if raw_pokemon.get("base_experience") is not None
        else (previous.base_experience if previous else None),
        types=flatten_types(raw_pokemon) or (list(previous.types) if previous else []),
        abilities=flatten_abilities(raw_pokemon) or (list(previous.abilities) if previous else []),
        stats=flatten_stats(raw_pokemon) or (list(previous.stats) if previous else []),
        sprites=resolve_sprites(
            raw_pokemon.get("sprites"), previous.sprites if previous else None
        ),
        generation=generation,
        form_tags=sorted_tags(tags),
        moves=flatten_moves(raw_pokemon),
    )


def normalize_species(raw_species: RawSpecies, pokemon_id: Optional[int] = None) -> PokemonSpecies:
    species_id = pokemon_id or int(raw_species["id"])
    chain = raw_species.get("evolution_chain")
    return PokemonSpecies(
        pokemon_id=species_id,
        name=(raw_species.get("name") or "").lower(),
        flavor_text=pick_flavor_text(raw_species),
        genus=pick_genus(raw_species),
        capture_rate=raw_species.get("capture_rate"),
        base_happiness=raw_species.get("base_happiness"),
        growth_rate=_name_of(raw_species.get("growth_rate")),
        habitat=_name_of(raw_species.get("habitat")),
        evolution_chain_id=id_from_url(chain.get("url")) if isinstance(chain, Mapping) else None,
        generation=species_generation(raw_species) or generation_for_id(species_id),
    )


def normalize_form(
    raw_form: RawForm,
    species_id: Optional[int] = None,
    previous: Optional[PokemonForm] = None,
) -> PokemonForm:
    """
    Build a cached form record from a `pokemon-form` payload.

    The owning pokemon id comes from `pokemon.url`. Categories are computed
    once here by the classifier.
    """
    pokemon_ref = raw_form.get("pokemon") or {}
    pokemon_id = id_from_url(pokemon_ref.get("url")) or (
        previous.pokemon_id if previous else 0
    )
    form_name = raw_form.get("form_name") or None
    form_order = raw_form.get("form_order")

    return PokemonForm(
        form_id=int(raw_form["id"]),
        pokemon_id=pokemon_id,
        name=(raw_form.get("name") or "").lower(),
        pokemon_name=_name_of(pokemon_ref),
        species_id=species_id or (previous.species_id if previous else None),
        form_name=form_name,
        categories=classify(raw_form).categories(),
        is_default=bool(raw_form.get("is_default")),
        is_battle_only=raw_form.get("is_battle_only"),
        form_order=form_order if isinstance(form_order, int) else None,
        version_group=_name_of(raw_form.get("version_group")),
        sprites=resolve_sprites(
            raw_form.get("sprites"), previous.sprites if previous else None
        ),
        generation=generation_for_id(species_id or pokemon_id) if (species_id or pokemon_id) else None,
    )