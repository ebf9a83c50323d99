"""
Canonical cached records.

These are the shapes the Cache Store persists and the query layer serves.
`to_dict()` produces the camelCase JSON exposed over HTTP; `from_dict()`
accepts the same shape back.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from utils.constants import FORM_CATEGORIES


def sorted_tags(tags) -> List[str]:
    """Order a category set by taxonomy position so output is deterministic."""
    order = {name: i for i, name in enumerate(FORM_CATEGORIES)}
    return sorted(set(tags), key=lambda t: (order.get(t, len(order)), t))


@dataclass
class Sprites:
    front_default: Optional[str] = None
    front_shiny: Optional[str] = None
    official_artwork: Optional[str] = None

    @property
    def display(self) -> Optional[str]:
        """Best single image: official artwork, then the default sprite."""
        return self.official_artwork or self.front_default

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "frontDefault": self.front_default,
            "frontShiny": self.front_shiny,
            "officialArtwork": self.official_artwork,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Sprites":
        data = data or {}
        return cls(
            front_default=data.get("frontDefault"),
            front_shiny=data.get("frontShiny"),
            official_artwork=data.get("officialArtwork"),
        )


@dataclass
class Ability:
    name: str
    is_hidden: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "isHidden": self.is_hidden}


@dataclass
class Stat:
    name: str
    base_stat: int = 0
    effort: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "baseStat": self.base_stat, "effort": self.effort}


@dataclass
class PokemonEntity:
    """
    A cached Pokemon.

    Attributes:
        id: National dex style id. Never changes once stored.
        name: Lowercase canonical name.
        types: Battle-ordered type names (1-2 entries).
        abilities: Unique by name.
        stats: The six base stats when complete.
        generation: 1-9.
        form_tags: Union of every form category ever observed for this id.
        moves: First few move names.
    """

    id: int
    name: str
    height: int = 0
    weight: int = 0
    base_experience: Optional[int] = None
    types: List[str] = field(default_factory=list)
    abilities: List[Ability] = field(default_factory=list)
    stats: List[Stat] = field(default_factory=list)
    sprites: Sprites = field(default_factory=Sprites)
    generation: int = 1
    form_tags: List[str] = field(default_factory=list)
    moves: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "height": self.height,
            "weight": self.weight,
            "baseExperience": self.base_experience,
            "types": list(self.types),
            "abilities": [a.to_dict() for a in self.abilities],
            "stats": [s.to_dict() for s in self.stats],
            "sprites": self.sprites.to_dict(),
            "generation": self.generation,
            "formTags": sorted_tags(self.form_tags),
            "moves": list(self.moves),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PokemonEntity":
        return cls(
            id=int(data["id"]),
            name=data.get("name", ""),
            height=data.get("height") or 0,
            weight=data.get("weight") or 0,
            base_experience=data.get("baseExperience"),
            types=list(data.get("types") or []),
            abilities=[
                Ability(name=a["name"], is_hidden=bool(a.get("isHidden")))
                for a in data.get("abilities") or []
            ],
            stats=[
                Stat(
                    name=s["name"],
                    base_stat=s.get("baseStat", 0),
                    effort=s.get("effort", 0),
                )
                for s in data.get("stats") or []
            ],
            sprites=Sprites.from_dict(data.get("sprites")),
            generation=data.get("generation") or 1,
            form_tags=sorted_tags(data.get("formTags") or []),
            moves=list(data.get("moves") or []),
        )


@dataclass
class PokemonSpecies:
    pokemon_id: int
    name: str
    flavor_text: Optional[str] = None
    genus: Optional[str] = None
    capture_rate: Optional[int] = None
    base_happiness: Optional[int] = None
    growth_rate: Optional[str] = None
    habitat: Optional[str] = None
    evolution_chain_id: Optional[int] = None
    generation: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pokemonId": self.pokemon_id,
            "name": self.name,
            "flavorText": self.flavor_text,
            "genus": self.genus,
            "captureRate": self.capture_rate,
            "baseHappiness": self.base_happiness,
            "growthRate": self.growth_rate,
            "habitat": self.habitat,
            "evolutionChainId": self.evolution_chain_id,
            "generation": self.generation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PokemonSpecies":
        return cls(
            pokemon_id=int(data["pokemonId"]),
            name=data.get("name", ""),
            flavor_text=data.get("flavorText"),
            genus=data.get("genus"),
            capture_rate=data.get("captureRate"),
            base_happiness=data.get("baseHappiness"),
            growth_rate=data.get("growthRate"),
            habitat=data.get("habitat"),
            evolution_chain_id=data.get("evolutionChainId"),
            generation=data.get("generation"),
        )


@dataclass
class PokemonForm:
    """A named game variant. `form_id` lives in its own id space."""

    form_id: int
    pokemon_id: int
    name: str
    pokemon_name: Optional[str] = None
    species_id: Optional[int] = None
    form_name: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    is_default: bool = False
    is_battle_only: Optional[bool] = None
    form_order: Optional[int] = None
    version_group: Optional[str] = None
    sprites: Sprites = field(default_factory=Sprites)
    generation: Optional[int] = None

    def has(self, category: str) -> bool:
        return category in self.categories

    def to_dict(self) -> Dict[str, Any]:
        return {
            "formId": self.form_id,
            "pokemonId": self.pokemon_id,
            "name": self.name,
            "pokemonName": self.pokemon_name,
            "speciesId": self.species_id,
            "formName": self.form_name,
            "categories": sorted_tags(self.categories),
            "isDefault": self.is_default,
            "isBattleOnly": self.is_battle_only,
            "formOrder": self.form_order,
            "versionGroup": self.version_group,
            "sprites": self.sprites.to_dict(),
            "generation": self.generation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PokemonForm":
        return cls(
            form_id=int(data["formId"]),
            pokemon_id=int(data.get("pokemonId") or 0),
            name=data.get("name", ""),
            pokemon_name=data.get("pokemonName"),
            species_id=data.get("speciesId"),
            form_name=data.get("formName"),
            categories=sorted_tags(data.get("categories") or []),
            is_default=bool(data.get("isDefault")),
            is_battle_only=data.get("isBattleOnly"),
            form_order=data.get("formOrder"),
            version_group=data.get("versionGroup"),
            sprites=Sprites.from_dict(data.get("sprites")),
            generation=data.get("generation"),
        )


@dataclass
class GenderDifferenceDescription:
    pokemon_id: int
    name: str
    description: str
    fetched_at: float
    source_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pokemonId": self.pokemon_id,
            "name": self.name,
            "description": self.description,
            "fetchedAt": self.fetched_at,
            "sourceUrl": self.source_url,
        }


@dataclass
class RegionalForm:
    """One variety of a regional dex species (the base variety included)."""

    form_name: str
    form_id: Optional[int] = None
    types: List[str] = field(default_factory=list)
    sprite: Optional[str] = None
    categories: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "formName": self.form_name,
            "formId": self.form_id,
            "types": list(self.types),
            "sprite": self.sprite,
            "categories": sorted_tags(self.categories),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegionalForm":
        return cls(
            form_name=data.get("formName", ""),
            form_id=data.get("formId"),
            types=list(data.get("types") or []),
            sprite=data.get("sprite"),
            categories=list(data.get("categories") or []),
        )


@dataclass
class RegionalDexEntry:
    """Denormalised row of a region's dex, rebuilt wholesale per region."""

    region: str
    dex_id: int
    name: str
    types: List[str] = field(default_factory=list)
    sprite: Optional[str] = None
    forms: List[RegionalForm] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "region": self.region,
            "dexId": self.dex_id,
            "name": self.name,
            "types": list(self.types),
            "sprite": self.sprite,
            "forms": [f.to_dict() for f in self.forms],
        }


@dataclass
class SpeciesForms:
    """Alternate-forms aggregation result for one species."""

    species_id: int
    name: str
    base_pokemon_name: Optional[str] = None
    forms: List[PokemonForm] = field(default_factory=list)

    @property
    def is_placeholder(self) -> bool:
        return self.species_id == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "speciesId": self.species_id,
            "name": self.name,
            "basePokemonName": self.base_pokemon_name,
            "forms": [f.to_dict() for f in self.forms],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpeciesForms":
        return cls(
            species_id=int(data.get("speciesId") or 0),
            name=data.get("name", ""),
            base_pokemon_name=data.get("basePokemonName"),
            forms=[PokemonForm.from_dict(f) for f in data.get("forms") or []],
        )
