"""
Type definitions for upstream API payloads and client statistics.

PokeAPI's schema is loosely enforced: nearly every nested field can be absent
or null on some resource. Every payload is therefore declared with
`total=False` and the normalizer reads each field with an explicit fallback.
"""

from typing import Any, Dict, List, Optional, TypedDict, Union


class NamedResource(TypedDict, total=False):
    """A `{name, url}` reference to another upstream resource."""

    name: str
    url: str


class RawTypeSlot(TypedDict, total=False):
    slot: int
    type: NamedResource


class RawAbilitySlot(TypedDict, total=False):
    ability: NamedResource
    is_hidden: bool
    slot: int


class RawStat(TypedDict, total=False):
    stat: NamedResource
    base_stat: int
    effort: int


class RawMove(TypedDict, total=False):
    move: NamedResource


class RawSprites(TypedDict, total=False):
    """
    Sprite block shared by pokemon and pokemon-form resources.

    Attributes:
        front_default: Default front sprite URL.
        front_shiny: Shiny front sprite URL.
        other: Nested artwork sets; `other["official-artwork"]["front_default"]`
            holds the high resolution artwork when present.
    """

    front_default: Optional[str]
    front_shiny: Optional[str]
    other: Dict[str, Dict[str, Optional[str]]]


class RawPokemon(TypedDict, total=False):
    """`GET /pokemon/{name|id}`"""

    id: int
    name: str
    height: int
    weight: int
    base_experience: Optional[int]
    is_default: bool
    types: List[RawTypeSlot]
    abilities: List[RawAbilitySlot]
    stats: List[RawStat]
    sprites: RawSprites
    forms: List[NamedResource]
    moves: List[RawMove]
    species: NamedResource


class RawFlavorText(TypedDict, total=False):
    flavor_text: str
    language: NamedResource
    version: NamedResource


class RawGenus(TypedDict, total=False):
    genus: str
    language: NamedResource


class RawVariety(TypedDict, total=False):
    is_default: bool
    pokemon: NamedResource


class RawSpecies(TypedDict, total=False):
    """`GET /pokemon-species/{name|id}`"""

    id: int
    name: str
    varieties: List[RawVariety]
    flavor_text_entries: List[RawFlavorText]
    genera: List[RawGenus]
    capture_rate: int
    base_happiness: Optional[int]
    growth_rate: Optional[NamedResource]
    habitat: Optional[NamedResource]
    evolution_chain: Optional[Dict[str, str]]
    generation: Optional[NamedResource]


class RawForm(TypedDict, total=False):
    """
    `GET /pokemon-form/{name|id}`

    Only the fields the classifier and normalizer read are listed. The
    classifier also accepts hand-built dicts carrying just `name`.
    """

    id: int
    name: str
    form_name: Optional[str]
    is_default: bool
    is_battle_only: Optional[bool]
    is_mega: Optional[bool]
    is_gigantamax: Optional[bool]
    form_order: Optional[int]
    order: Optional[int]
    version_group: NamedResource
    pokemon: NamedResource
    sprites: RawSprites


class RawPokedexEntry(TypedDict, total=False):
    entry_number: int
    pokemon_species: NamedResource


class RawPokedex(TypedDict, total=False):
    """`GET /pokedex/{slug}`"""

    id: int
    name: str
    pokemon_entries: List[RawPokedexEntry]


class RawPage(TypedDict, total=False):
    """Paged listing such as `GET /type` or `GET /pokemon-form?limit&offset`."""

    count: int
    next: Optional[str]
    previous: Optional[str]
    results: List[NamedResource]


class CacheStats(TypedDict):
    """
    Represents raw response cache statistics.

    Attributes:
        size: Current number of entries in the cache, or 'N/A' when unknown.
        max_size: Maximum allowed entries before eviction triggers.
        hits: Number of successful cache lookups.
        misses: Number of failed lookups that resulted in API calls.
        hit_rate: Percentage string (e.g., '85.5%').
    """

    size: Union[int, str]
    max_size: int
    hits: int
    misses: int
    hit_rate: str


class DeduplicationStats(TypedDict):
    """
    Represents request deduplication statistics.

    Attributes:
        pending_requests: Number of API requests currently in flight (deduplicated).
        active_locks: Number of locks currently held for request coordination.
    """

    pending_requests: int
    active_locks: int


class PopulationStats(TypedDict):
    """Outcome of one bulk population run."""

    requested: int
    skipped: int
    cached: int
    failed: int
    failed_ids: List[int]


JSONDict = Dict[str, Any]
