"""
Input validation functions.

This module checks caller input before it reaches the query service or the
upstream client. Validators return `(is_valid, error_message)` tuples; the
query service turns a failed check into a `ValidationError`. Bad input is
rejected, never clamped.
"""

from typing import Any, Optional, Tuple

from config.settings import MAX_GENERATION
from utils.constants import (
    MAX_LIST_LIMIT,
    MAX_SEARCH_LENGTH,
    POKEMON_NAME_PATTERN,
)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_limit(limit: Any, maximum: int = MAX_LIST_LIMIT) -> Tuple[bool, Optional[str]]:
    if not _is_int(limit) or limit < 0 or limit > maximum:
        return False, f"limit must be an integer between 0 and {maximum}, got {limit!r}"
    return True, None


def validate_offset(offset: Any) -> Tuple[bool, Optional[str]]:
    if not _is_int(offset) or offset < 0:
        return False, f"offset must be a non-negative integer, got {offset!r}"
    return True, None


def validate_generation(generation: Any) -> Tuple[bool, Optional[str]]:
    """
    Validate an optional generation number.

    Args:
        generation: None (no filter) or an integer.

    Returns:
        Tuple containing (is_valid, error_message).
    """
    if generation is None:
        return True, None

    if not _is_int(generation) or generation < 1 or generation > MAX_GENERATION:
        return (
            False,
            f"generation must be between 1 and {MAX_GENERATION}, got {generation!r}",
        )

    return True, None


def validate_search(search: Optional[str]) -> Tuple[bool, Optional[str]]:
    if search is not None and len(search) > MAX_SEARCH_LENGTH:
        return False, f"search is too long (max {MAX_SEARCH_LENGTH} characters)"
    return True, None


def validate_pokemon_id(pokemon_id: Any, maximum: int) -> Tuple[bool, Optional[str]]:
    if not _is_int(pokemon_id) or pokemon_id < 1 or pokemon_id > maximum:
        return False, f"pokemon id must be between 1 and {maximum}, got {pokemon_id!r}"
    return True, None


def validate_region(region: Optional[str]) -> Tuple[bool, Optional[str]]:
    """
    Regions outside the known map are allowed (their key is used as the
    upstream slug) but must look like a slug.
    """
    if not region or not region.strip():
        return False, "region is required"

    if not POKEMON_NAME_PATTERN.match(region) or " " in region.strip():
        return False, f"invalid region key {region!r}"

    return True, None


def parse_int_param(raw: Optional[str], name: str) -> Tuple[bool, Optional[str], Optional[int]]:
    """
    Parse an optional integer query parameter.

    Returns:
        Tuple containing (is_valid, error_message, value). An absent or empty
        parameter is valid with value None.
    """
    if raw is None or raw.strip() == "":
        return True, None, None
    try:
        return True, None, int(raw)
    except ValueError:
        return False, f"{name} must be an integer, got {raw!r}", None


def parse_bool_param(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in ("1", "true", "yes")
