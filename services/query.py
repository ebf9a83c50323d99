"""
Cache-aside read service.

Reads are always answered from the cache store. When a page of the plain
listing comes back with ids missing, a background population task is
scheduled for them so a later read finds them cached.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from config.settings import MAX_DEX_ID
from services.aggregation import BulkPopulator
from utils.classifier import normalize_category
from utils.constants import (
    CACHE_SCOPES,
    DEFAULT_FORMS_LIMIT,
    DEFAULT_LIST_LIMIT,
    ERROR_ALREADY_FAVORITE,
    ERROR_NOT_FAVORITE,
    ERROR_POKEMON_NOT_FOUND,
    GENERATION_RANGES,
    MAX_FORMS_LIMIT,
)
from utils.database import Database
from utils.errors import ConflictError, FetchError, NotFoundError, ValidationError
from utils.matching import suggest_names
from utils.models import PokemonEntity, PokemonForm
from utils.validators import (
    validate_generation,
    validate_limit,
    validate_offset,
    validate_pokemon_id,
    validate_search,
)

logger = logging.getLogger("pokedex.query")


def _check(result) -> None:
    is_valid, error_msg = result
    if not is_valid:
        raise ValidationError(error_msg)


def _clean_list(values: Optional[Iterable[str]]) -> List[str]:
    if values is None:
        return []
    if isinstance(values, str):
        values = values.split(",")
    return [v.strip().lower() for v in values if v and v.strip()]


def _categories(values: Optional[Iterable[str]]) -> Set[str]:
    wanted = set()
    for raw in _clean_list(values):
        category = normalize_category(raw)
        if category is None:
            raise ValidationError(f"unknown form category {raw!r}")
        wanted.add(category)
    return wanted


def _page(items: List[Any], limit: int, offset: int) -> Dict[str, Any]:
    total = len(items)
    # Past-the-end offsets restart at the first page
    if offset >= total:
        offset = 0
    return {
        "items": items[offset : offset + limit],
        "total": total,
        "offset": offset,
        "hasMore": offset + limit < total,
    }


class PokedexQueryService:
    """
    Paginated, filtered reads over the cache store.

    Args:
        db: Cache store.
        populator: Used for background backfill and for the single-id read
            path. Without one the service is read-only.
    """

    def __init__(
        self,
        db: Database,
        populator: Optional[BulkPopulator] = None,
        max_id: int = MAX_DEX_ID,
    ):
        self.db = db
        self.populator = populator
        self.max_id = max_id
        self._backfills: Dict[str, asyncio.Task] = {}

    # ==================== LISTING ====================

    async def _candidates(self, search: str, generation: Optional[int]) -> List[PokemonEntity]:
        if generation is not None:
            return await self.db.query_pokemon("by_generation", generation)
        if search:
            return await self.db.search_pokemon(search)
        return await self.db.all_pokemon()

    async def list(
        self,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
        search: Optional[str] = None,
        types: Optional[Iterable[str]] = None,
        generation: Optional[int] = None,
        form_categories: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        """
        List cached entities.

        Filters apply in order: generation, search, types (any-of), form
        categories (any-of, aliases accepted). Results are deduplicated by id
        and sorted by id then name before slicing.

        Returns:
            `{items, total, offset, hasMore}`; `suggestions` is added when a
            search matched nothing.

        Raises:
            ValidationError: On an out-of-range limit, offset, generation, or
                an unknown category.
        """
        _check(validate_limit(limit))
        _check(validate_offset(offset))
        _check(validate_generation(generation))
        _check(validate_search(search))

        term = (search or "").strip().lower()
        wanted_types = set(_clean_list(types))
        wanted_categories = _categories(form_categories)

        rows = await self._candidates(term, generation)

        if generation is not None:
            rows = [e for e in rows if e.generation == generation]
        if term:
            rows = [e for e in rows if term in e.name or term in str(e.id)]
        if wanted_types:
            rows = [e for e in rows if wanted_types.intersection(e.types)]
        if wanted_categories:
            rows = [e for e in rows if wanted_categories.intersection(e.form_tags)]

        unique: Dict[int, PokemonEntity] = {}
        for entity in rows:
            unique.setdefault(entity.id, entity)
        ordered = sorted(unique.values(), key=lambda e: (e.id, e.name))

        result = _page(ordered, limit, offset)
        page_items = result["items"]
        result["items"] = [e.to_dict() for e in page_items]

        if term and not ordered:
            result["suggestions"] = await suggest_names(term, await self.db.pokemon_names())

        if not (term or wanted_types or wanted_categories):
            expected = self._expected_ids(limit, offset, generation)
            present = {e.id for e in page_items}
            missing = [i for i in expected if i not in present]
            if missing:
                self.schedule_backfill(missing)

        return result

    def _expected_ids(self, limit: int, offset: int, generation: Optional[int]) -> List[int]:
        if generation is not None:
            low, high = GENERATION_RANGES[generation]
        else:
            low, high = 1, self.max_id
        start = low + offset
        return list(range(start, min(high, start + limit - 1) + 1))

    def schedule_backfill(self, ids: List[int]) -> Optional[asyncio.Task]:
        """
        Populate ids in the background. A request for the same id set while
        one is running reuses the running task.
        """
        if self.populator is None or not ids:
            return None

        key = f"{ids[0]}-{ids[-1]}:{len(ids)}"
        running = self._backfills.get(key)
        if running is not None and not running.done():
            return running

        async def _run():
            try:
                await self.populator.populate(ids)
            except Exception as e:
                logger.error(f"Backfill {key} failed: {e}", exc_info=True)
            finally:
                self._backfills.pop(key, None)

        task = asyncio.create_task(_run())
        self._backfills[key] = task
        logger.debug(f"Scheduled backfill for {len(ids)} ids", extra={"key": key})
        return task

    async def wait_for_backfills(self) -> None:
        tasks = list(self._backfills.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._backfills.values()):
            task.cancel()
        await self.wait_for_backfills()
        self._backfills.clear()

    # ==================== SINGLE RECORD ====================

    async def get_by_id(self, pokemon_id: int) -> Optional[Dict[str, Any]]:
        """
        One entity with its species record.

        A miss is filled synchronously from upstream when a populator is
        configured. Returns None when the id does not exist upstream either.
        """
        _check(validate_pokemon_id(pokemon_id, self.max_id))

        entity = await self.db.get_pokemon(pokemon_id)
        if entity is None and self.populator is not None:
            try:
                await self.populator.populate_one(pokemon_id)
            except FetchError as e:
                if e.status == 404:
                    return None
                raise
            entity = await self.db.get_pokemon(pokemon_id)

        if entity is None:
            return None

        species = await self.db.get_species(pokemon_id)
        return {
            "pokemon": entity.to_dict(),
            "species": species.to_dict() if species else None,
        }

    # ==================== FORMS ====================

    async def list_forms(
        self,
        limit: int = DEFAULT_FORMS_LIMIT,
        offset: int = 0,
        category: Optional[str] = None,
        pokemon_id: Optional[int] = None,
        generation: Optional[int] = None,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        """List cached forms, sorted by owning pokemon then form order."""
        _check(validate_limit(limit, maximum=MAX_FORMS_LIMIT))
        _check(validate_offset(offset))
        _check(validate_generation(generation))
        _check(validate_search(search))
        if pokemon_id is not None and (not isinstance(pokemon_id, int) or pokemon_id < 1):
            raise ValidationError(f"pokemonId must be a positive integer, got {pokemon_id!r}")

        wanted = None
        if category:
            wanted = normalize_category(category)
            if wanted is None:
                raise ValidationError(f"unknown form category {category!r}")

        if pokemon_id is not None:
            rows = await self.db.query_forms("by_pokemon_id", pokemon_id)
        elif generation is not None:
            rows = await self.db.query_forms("by_generation", generation)
        elif wanted is not None:
            rows = await self.db.query_forms(f"by_is_{wanted}", True)
        else:
            rows = await self.db.all_forms()

        term = (search or "").strip().lower()
        if pokemon_id is not None:
            rows = [f for f in rows if f.pokemon_id == pokemon_id]
        if generation is not None:
            rows = [f for f in rows if f.generation == generation]
        if wanted is not None:
            rows = [f for f in rows if f.has(wanted)]
        if term:
            rows = [
                f
                for f in rows
                if term in (f.pokemon_name or "").lower()
                or term in f.name.lower()
                or term in (f.form_name or "").lower()
            ]

        unique: Dict[int, PokemonForm] = {}
        for form in rows:
            unique.setdefault(form.form_id, form)
        ordered = sorted(
            unique.values(),
            key=lambda f: (f.pokemon_id, f.form_order if f.form_order is not None else 0, f.form_id),
        )

        result = _page(ordered, limit, offset)
        result["items"] = [f.to_dict() for f in result["items"]]
        return result

    async def get_types(self) -> List[Dict[str, str]]:
        return await self.db.get_types()

    # ==================== FAVORITES ====================

    async def add_favorite(self, user_id: str, pokemon_id: int) -> Dict[str, Any]:
        """
        Raises:
            NotFoundError: The entity is not cached.
            ConflictError: Already a favorite.
        """
        if await self.db.get_pokemon(pokemon_id) is None:
            raise NotFoundError(ERROR_POKEMON_NOT_FOUND)
        if not await self.db.add_favorite(user_id, pokemon_id):
            raise ConflictError(ERROR_ALREADY_FAVORITE)
        logger.info(f"User {user_id} favorited {pokemon_id}")
        return {"pokemonId": pokemon_id, "favorite": True}

    async def remove_favorite(self, user_id: str, pokemon_id: int) -> Dict[str, Any]:
        if not await self.db.remove_favorite(user_id, pokemon_id):
            raise NotFoundError(ERROR_NOT_FAVORITE)
        return {"pokemonId": pokemon_id, "favorite": False}

    async def get_favorites(self, user_id: str) -> List[Dict[str, Any]]:
        """Favorited entities, skipping ids whose entity has since been cleared."""
        favorites = []
        for pokemon_id in await self.db.list_favorite_ids(user_id):
            entity = await self.db.get_pokemon(pokemon_id)
            if entity is not None:
                favorites.append(entity.to_dict())
        return favorites

    # ==================== MAINTENANCE ====================

    async def clear_cache(self, scopes: Iterable[str]) -> Dict[str, int]:
        scopes = _clean_list(scopes)
        if not scopes:
            raise ValidationError("scopes must list at least one of " + ", ".join(CACHE_SCOPES))
        unknown = [s for s in scopes if s not in CACHE_SCOPES]
        if unknown:
            raise ValidationError(f"unknown cache scope(s): {', '.join(unknown)}")
        return await self.db.clear_tables(scopes)
