"""
Centralized static asset registry.
Contains the type colour palette and sprite URL helpers.
"""

from typing import Optional

from config.settings import SPRITES_BASE_URL

DEFAULT_TYPE_COLOR = "#68A090"

# Type colours (hex)
TYPE_COLORS = {
    "normal": "#A8A878",
    "fire": "#F08030",
    "water": "#6890F0",
    "electric": "#F8D030",
    "grass": "#78C850",
    "ice": "#98D8D8",
    "fighting": "#C03028",
    "poison": "#A040A0",
    "ground": "#E0C068",
    "flying": "#A890F0",
    "psychic": "#F85888",
    "bug": "#A8B820",
    "rock": "#B8A038",
    "ghost": "#705898",
    "dragon": "#7038F8",
    "dark": "#705848",
    "steel": "#B8B8D0",
    "fairy": "#EE99AC",
}


def type_color(type_name: str) -> str:
    return TYPE_COLORS.get(type_name.lower(), DEFAULT_TYPE_COLOR)


def sprite_url(pokemon_id: int) -> str:
    return f"{SPRITES_BASE_URL}/{pokemon_id}.png"


def shiny_url(pokemon_id: int) -> str:
    return f"{SPRITES_BASE_URL}/shiny/{pokemon_id}.png"


def artwork_url(pokemon_id: int) -> str:
    """Static official-artwork URL for ids whose payload carries no sprite."""
    return f"{SPRITES_BASE_URL}/other/official-artwork/{pokemon_id}.png"


def sprite_or_artwork(sprite: Optional[str], pokemon_id: int) -> str:
    return sprite or artwork_url(pokemon_id)
