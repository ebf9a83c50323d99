"""
Aggregation pipelines that fill the cache store from the upstream API.

Three pipelines fan out over upstream sub-resources, classify and normalize
what they find, and upsert it:

- `AlternateFormsAggregator`: species -> varieties -> pokemon -> forms ->
  pokemon-form detail, for a curated species list.
- `RegionAggregator`: merges one or more upstream pokedex listings into a
  region and materializes its regional dex rows.
- `BulkPopulator`: pokemon + species (+ form) per id over an id range.

Supporting passes (`FormsCrawler`, `populate_types`, `CachePopulator`) cover
the forms catalog, the type palette and the full population run.

Every pipeline is best-effort: a failing item is logged and skipped, and
re-running a pipeline converges on the same stored state.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from config.settings import BULK_COMPLETENESS_POLICY, MAX_DEX_ID
from utils.api_clients import PokeAPIClient
from utils.api_models import PopulationStats
from utils.assets import TYPE_COLORS, shiny_url, sprite_or_artwork, sprite_url, type_color
from utils.classifier import classify
from utils.constants import (
    BULK_BATCH_DELAY,
    BULK_CHUNK_SIZE,
    BULK_CONCURRENCY,
    BULK_CONCURRENCY_SMALL,
    BULK_SMALL_RANGE,
    FORM_DETAIL_DELAY,
    FORMS_CRAWL_CONCURRENCY,
    FORMS_CRAWL_DELAY,
    FORMS_CRAWL_PAGE_SIZE,
    GIGANTAMAX_BASE_NAMES,
    REGION_BATCH_DELAY,
    REGION_CONCURRENCY,
    REGION_POKEDEX_SLUGS,
    SPECIES_STAGGER_DELAY,
    SPECIES_WITH_FORMS,
    SPECIES_WORKERS,
    VARIETY_DELAY,
)
from utils.database import Database
from utils.errors import PokedexError
from utils.models import PokemonForm, RegionalDexEntry, RegionalForm, SpeciesForms, Sprites
from utils.normalizer import (
    display_sprite,
    flatten_types,
    id_from_url,
    normalize,
    normalize_form,
    normalize_species,
)
from utils.ttl_cache import TTLCache

logger = logging.getLogger("pokedex.aggregation")

# Form names left out of the alternate-forms dataset
EXCLUDED_FORM_MARKERS = ("-mega", "gigantamax", "-gmax")


async def _pause(seconds: float) -> None:
    if seconds > 0:
        await asyncio.sleep(seconds)


def _chunks(items: List[Any], size: int) -> Iterable[List[Any]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


# ==================== ALTERNATE FORMS ====================


class AlternateFormsAggregator:
    """
    Collects the alternate forms of a curated species list.

    A fixed number of workers pull species names from a shared queue, so at
    most `workers` species are being expanded at once. Each level of the
    fan-out is paced with a small delay.

    Attributes:
        species: Species names to aggregate.
        workers: Number of concurrent species workers.
        exclude_battle_gimmicks: Skip mega and Gigantamax forms.
    """

    CACHE_KEY = "alternate-forms:v1"

    def __init__(
        self,
        client: PokeAPIClient,
        db: Optional[Database] = None,
        cache: Optional[TTLCache] = None,
        species: Optional[List[str]] = None,
        workers: int = SPECIES_WORKERS,
        species_delay: float = SPECIES_STAGGER_DELAY,
        variety_delay: float = VARIETY_DELAY,
        form_delay: float = FORM_DETAIL_DELAY,
        exclude_battle_gimmicks: bool = True,
    ):
        self.client = client
        self.db = db
        self.cache = cache
        self.species = list(species if species is not None else SPECIES_WITH_FORMS)
        self.workers = max(1, workers)
        self.species_delay = species_delay
        self.variety_delay = variety_delay
        self.form_delay = form_delay
        self.exclude_battle_gimmicks = exclude_battle_gimmicks

    def _excluded(self, form_name: str) -> bool:
        lowered = form_name.lower()
        return self.exclude_battle_gimmicks and any(
            marker in lowered for marker in EXCLUDED_FORM_MARKERS
        )

    async def aggregate(self, refresh: bool = False) -> List[SpeciesForms]:
        """
        Aggregate every configured species.

        Args:
            refresh: Ignore (and then overwrite) the cached result.

        Returns:
            One SpeciesForms per distinct species, sorted by species id then
            name. Species that failed to load are placeholders with id 0.
        """
        if self.cache is not None and not refresh:
            cached = await self.cache.get(self.CACHE_KEY)
            if cached is not None:
                return [SpeciesForms.from_dict(item) for item in cached]

        queue: asyncio.Queue = asyncio.Queue()
        for name in dict.fromkeys(n.strip().lower() for n in self.species if n.strip()):
            queue.put_nowait(name)

        results: Dict[str, SpeciesForms] = {}

        async def worker():
            while True:
                try:
                    name = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await _pause(self.species_delay)
                results[name] = await self.aggregate_species(name)

        await asyncio.gather(*(worker() for _ in range(self.workers)))

        ordered = sorted(results.values(), key=lambda s: (s.species_id, s.name))

        placeholders = sum(1 for s in ordered if s.is_placeholder)
        logger.info(
            f"Aggregated alternate forms for {len(ordered)} species",
            extra={
                "species": len(ordered),
                "placeholders": placeholders,
                "forms": sum(len(s.forms) for s in ordered),
            },
        )

        if self.cache is not None:
            await self.cache.set(self.CACHE_KEY, [s.to_dict() for s in ordered])

        return ordered

    async def aggregate_species(self, name: str) -> SpeciesForms:
        """
        Expand one species. Never raises: a species-level failure yields a
        placeholder, variety and form failures drop just that item.
        """
        try:
            species = await self.client.get_species(name)
        except Exception as e:
            logger.error(
                f"Alternate forms: species {name} failed, emitting placeholder: {e}",
                exc_info=not isinstance(e, PokedexError),
            )
            return SpeciesForms(species_id=0, name=name)

        species_id = int(species.get("id") or 0)
        varieties = species.get("varieties") or []
        default = next((v for v in varieties if v.get("is_default")), None)
        base_name = ((default or {}).get("pokemon") or {}).get("name")

        forms: Dict[int, PokemonForm] = {}
        for variety in varieties:
            pokemon_name = (variety.get("pokemon") or {}).get("name")
            if not pokemon_name:
                continue

            await _pause(self.variety_delay)
            try:
                pokemon = await self.client.get_pokemon(pokemon_name)
            except Exception as e:
                logger.warning(f"Alternate forms: variety {pokemon_name} skipped: {e}")
                continue

            for ref in pokemon.get("forms") or []:
                form_name = ref.get("name")
                if not form_name or self._excluded(form_name):
                    continue

                await _pause(self.form_delay)
                try:
                    raw_form = await self.client.get_form(form_name)
                except Exception as e:
                    logger.warning(f"Alternate forms: form {form_name} skipped: {e}")
                    continue

                form_id = raw_form.get("id")
                if not isinstance(form_id, int) or form_id <= 0 or form_id in forms:
                    continue

                form = normalize_form(raw_form, species_id=species_id or None)
                forms[form_id] = form
                await self._store(form)

        return SpeciesForms(
            species_id=species_id,
            name=name,
            base_pokemon_name=base_name.lower() if base_name else None,
            forms=[forms[k] for k in sorted(forms)],
        )

    async def _store(self, form: PokemonForm) -> None:
        if self.db is None:
            return
        try:
            await self.db.upsert_form(form)
        except Exception as e:
            logger.error(f"Failed to store form {form.form_id}: {e}", exc_info=True)


# ==================== REGIONS ====================


class RegionAggregator:
    """
    Builds a region's dex from its upstream pokedex listings.

    A region maps to one or more pokedex slugs (Kalos has three). Unknown
    regions are looked up under their own name.
    """

    def __init__(
        self,
        client: PokeAPIClient,
        db: Database,
        cache: Optional[TTLCache] = None,
        region_slugs: Optional[Dict[str, List[str]]] = None,
        concurrency: int = REGION_CONCURRENCY,
        batch_delay: float = REGION_BATCH_DELAY,
    ):
        self.client = client
        self.db = db
        self.cache = cache
        self.region_slugs = region_slugs if region_slugs is not None else REGION_POKEDEX_SLUGS
        self.concurrency = max(1, concurrency)
        self.batch_delay = batch_delay

    def slugs_for(self, region: str) -> List[str]:
        region = region.lower()
        return list(self.region_slugs.get(region, [region]))

    async def merge_species(self, region: str) -> List[Tuple[int, str]]:
        """
        Merge the species of every slug of a region.

        Entries are keyed by the id in the species URL; the first slug to
        list an id wins. A failing slug is skipped.

        Returns:
            `(dex_id, species_name)` pairs sorted by id.

        Raises:
            PokedexError: Only when every slug failed.
        """
        region = region.lower()
        cache_key = f"region-species:{region}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return [(int(i), str(n)) for i, n in cached]

        merged: Dict[int, str] = {}
        last_error: Optional[Exception] = None
        succeeded = 0

        for slug in self.slugs_for(region):
            try:
                pokedex = await self.client.get_pokedex(slug)
            except PokedexError as e:
                last_error = e
                logger.warning(f"Region {region}: pokedex {slug} failed: {e}")
                continue

            succeeded += 1
            for entry in pokedex.get("pokemon_entries") or []:
                ref = entry.get("pokemon_species") or {}
                name = (ref.get("name") or "").lower()
                dex_id = id_from_url(ref.get("url"))
                if dex_id is None or not name:
                    continue
                merged.setdefault(dex_id, name)

        if succeeded == 0 and last_error is not None:
            raise last_error

        result = sorted(merged.items())
        if self.cache is not None and result:
            await self.cache.set(cache_key, [list(pair) for pair in result])
        return result

    async def expected_total(self, region: str) -> Optional[int]:
        """Merged upstream species count, or None if upstream is unavailable."""
        try:
            return len(await self.merge_species(region))
        except PokedexError as e:
            logger.warning(f"Region {region}: total unavailable: {e}")
            return None

    async def build_entry(self, region: str, dex_id: int, name: str) -> RegionalDexEntry:
        """Fetch a species and all its varieties into one regional row."""
        species = await self.client.get_species(dex_id)
        varieties = species.get("varieties") or []

        names = [
            ((v.get("pokemon") or {}).get("name") or "", bool(v.get("is_default")))
            for v in varieties
        ]
        names = [(n, d) for n, d in names if n]

        fetched = await asyncio.gather(
            *(self.client.get_pokemon(n) for n, _ in names), return_exceptions=True
        )

        forms: List[RegionalForm] = []
        default_form: Optional[RegionalForm] = None
        for (variety_name, is_default), payload in zip(names, fetched):
            if isinstance(payload, BaseException):
                logger.warning(f"Region {region}: variety {variety_name} skipped: {payload}")
                continue
            form = RegionalForm(
                form_name=variety_name,
                form_id=payload.get("id"),
                types=flatten_types(payload),
                sprite=display_sprite(payload.get("sprites")),
                categories=classify({"name": variety_name, "is_default": is_default}).categories(),
            )
            forms.append(form)
            if is_default and default_form is None:
                default_form = form

        base = next((f for f in forms if f.form_name == name), None) or default_form
        if base is None and forms:
            base = forms[0]

        return RegionalDexEntry(
            region=region,
            dex_id=dex_id,
            name=name,
            types=list(base.types) if base else [],
            sprite=base.sprite if base else None,
            forms=forms,
        )

    async def ensure_region(self, region: str, only_missing: bool = True) -> int:
        """
        Materialize a region's dex rows.

        Args:
            region: Region key.
            only_missing: Skip dex ids already stored for the region.

        Returns:
            Number of rows written.
        """
        region = region.lower()
        species = await self.merge_species(region)

        if only_missing:
            present = set(await self.db.regional_dex_ids(region))
            species = [(i, n) for i, n in species if i not in present]

        written = 0

        async def _one(dex_id: int, name: str) -> bool:
            try:
                entry = await self.build_entry(region, dex_id, name)
                await self.db.upsert_regional_entry(entry)
                return True
            except Exception as e:
                logger.error(
                    f"Region {region}: entry {dex_id} ({name}) failed: {e}",
                    exc_info=not isinstance(e, PokedexError),
                )
                return False

        for batch in _chunks(species, self.concurrency):
            outcomes = await asyncio.gather(*(_one(i, n) for i, n in batch))
            written += sum(outcomes)
            await _pause(self.batch_delay)

        logger.info(
            f"Region {region}: stored {written}/{len(species)} entries",
            extra={"region": region, "written": written, "pending": len(species)},
        )
        return written


# ==================== BULK POPULATION ====================


class BulkPopulator:
    """
    Caches pokemon and species records for an id range.

    An id counts as already cached according to the completeness policy:
    `tags` requires a stored record with non-empty form tags, `presence`
    accepts any stored record.
    """

    def __init__(
        self,
        client: PokeAPIClient,
        db: Database,
        completeness_policy: str = BULK_COMPLETENESS_POLICY,
        chunk_size: int = BULK_CHUNK_SIZE,
        batch_delay: float = BULK_BATCH_DELAY,
        concurrency: Optional[int] = None,
        max_id: int = MAX_DEX_ID,
    ):
        self.client = client
        self.db = db
        self.completeness_policy = completeness_policy
        self.chunk_size = max(1, chunk_size)
        self.batch_delay = batch_delay
        self.concurrency = concurrency
        self.max_id = max_id

    def concurrency_for(self, count: int) -> int:
        if self.concurrency:
            return self.concurrency
        return BULK_CONCURRENCY_SMALL if count <= BULK_SMALL_RANGE else BULK_CONCURRENCY

    async def is_complete(self, pokemon_id: int) -> bool:
        existing = await self.db.get_pokemon(pokemon_id)
        if existing is None:
            return False
        if self.completeness_policy == "presence":
            return True
        return bool(existing.form_tags)

    async def populate_one(self, pokemon_id: int, force: bool = False) -> bool:
        """
        Fetch and store one id.

        Returns:
            False when the id was skipped as already complete.

        Raises:
            PokedexError: When the pokemon or species fetch fails.
        """
        previous = await self.db.get_pokemon(pokemon_id)
        if not force and await self.is_complete(pokemon_id):
            return False

        raw_pokemon, raw_species = await asyncio.gather(
            self.client.get_pokemon(pokemon_id), self.client.get_species(pokemon_id)
        )

        try:
            raw_form = await self.client.get_form(pokemon_id)
        except PokedexError as e:
            logger.debug(f"Form for {pokemon_id} unavailable: {e}")
            raw_form = None

        entity = normalize(raw_pokemon, raw_species, raw_form, previous=previous)
        await self.db.upsert_pokemon(entity)
        await self.db.upsert_species(normalize_species(raw_species, pokemon_id=entity.id))
        return True

    async def populate(self, ids: Iterable[int]) -> PopulationStats:
        """
        Populate the given ids. Never raises for per-id failures.

        Ids outside `1..max_id` are ignored.
        """
        wanted = [i for i in dict.fromkeys(ids) if 1 <= i <= self.max_id]
        stats: PopulationStats = {
            "requested": len(wanted),
            "skipped": 0,
            "cached": 0,
            "failed": 0,
            "failed_ids": [],
        }
        if not wanted:
            return stats

        semaphore = asyncio.Semaphore(self.concurrency_for(len(wanted)))

        async def _one(pokemon_id: int) -> None:
            async with semaphore:
                try:
                    stored = await self.populate_one(pokemon_id)
                except Exception as e:
                    stats["failed"] += 1
                    stats["failed_ids"].append(pokemon_id)
                    logger.error(
                        f"Bulk population failed for id {pokemon_id}: {e}",
                        exc_info=not isinstance(e, PokedexError),
                    )
                    return
            if stored:
                stats["cached"] += 1
            else:
                stats["skipped"] += 1

        chunks = list(_chunks(wanted, self.chunk_size))
        for index, chunk in enumerate(chunks):
            await asyncio.gather(*(_one(i) for i in chunk))
            if index < len(chunks) - 1:
                await _pause(self.batch_delay)

        stats["failed_ids"].sort()
        logger.info("Bulk population finished", extra=dict(stats))
        return stats

    async def populate_range(self, offset: int, limit: int) -> PopulationStats:
        """Populate ids `offset+1 .. offset+limit`."""
        return await self.populate(range(offset + 1, offset + limit + 1))


# ==================== FORMS CATALOG ====================


class FormsCrawler:
    """Caches the upstream forms catalog and the Gigantamax forms."""

    def __init__(
        self,
        client: PokeAPIClient,
        db: Database,
        page_size: int = FORMS_CRAWL_PAGE_SIZE,
        concurrency: int = FORMS_CRAWL_CONCURRENCY,
        batch_delay: float = FORMS_CRAWL_DELAY,
    ):
        self.client = client
        self.db = db
        self.page_size = max(1, page_size)
        self.concurrency = max(1, concurrency)
        self.batch_delay = batch_delay

    async def _store_raw_form(self, raw: Dict[str, Any], species_id: Optional[int] = None) -> bool:
        previous = await self.db.get_form(int(raw["id"]))
        form = normalize_form(raw, species_id=species_id, previous=previous)
        if form.pokemon_id <= 0:
            return False
        await self.db.upsert_form(form)
        return True

    async def process_page(self, offset: int, limit: int) -> int:
        page = await self.client.get_forms_page(limit, offset)
        refs = [r for r in page.get("results") or [] if r.get("url")]
        stored = 0

        async def _one(url: str) -> bool:
            try:
                return await self._store_raw_form(await self.client.fetch_json(url))
            except Exception as e:
                logger.error(
                    f"Forms crawl item {url} failed: {e}",
                    exc_info=not isinstance(e, PokedexError),
                )
                return False

        for batch in _chunks(refs, self.concurrency):
            stored += sum(await asyncio.gather(*(_one(r["url"]) for r in batch)))
            await _pause(self.batch_delay)
        return stored

    async def crawl(self) -> int:
        """Walk every page of the forms listing. Returns forms stored."""
        head = await self.client.get_forms_page(1, 0)
        total = int(head.get("count") or 0)
        stored = 0
        for offset in range(0, total, self.page_size):
            try:
                stored += await self.process_page(offset, min(self.page_size, total - offset))
            except PokedexError as e:
                logger.error(f"Forms crawl page at offset {offset} failed: {e}")
        logger.info(f"Forms crawl stored {stored}/{total} forms")
        return stored

    async def ensure_gigantamax(self, base_names: Optional[List[str]] = None) -> int:
        """
        Cache the `<base>-gmax` form of each Gigantamax species.

        Missing sprites are filled from the static sprite repository, and the
        form's tags are merged into the base species entity when it is cached.
        """
        names = base_names if base_names is not None else GIGANTAMAX_BASE_NAMES
        stored = 0

        async def _one(base: str) -> bool:
            form_name = f"{base}-gmax"
            try:
                raw = await self.client.get_form(form_name)
                form = normalize_form(raw)
                if form.pokemon_id <= 0:
                    return False
                form.sprites = Sprites(
                    front_default=form.sprites.front_default or sprite_url(form.pokemon_id),
                    front_shiny=form.sprites.front_shiny or shiny_url(form.pokemon_id),
                    official_artwork=sprite_or_artwork(
                        form.sprites.official_artwork, form.pokemon_id
                    ),
                )
                base_entity = await self.db.get_pokemon_by_name(base)
                if base_entity is not None:
                    form.species_id = base_entity.id
                await self.db.upsert_form(form)
                return True
            except Exception as e:
                logger.error(
                    f"Gigantamax form {form_name} failed: {e}",
                    exc_info=not isinstance(e, PokedexError),
                )
                return False

        for batch in _chunks(list(names), self.concurrency):
            stored += sum(await asyncio.gather(*(_one(b) for b in batch)))
            await _pause(self.batch_delay)
        return stored

    async def backfill_form_tags(self) -> int:
        """Merge every cached form's categories into its owning entity."""
        merged = 0
        for form in await self.db.all_forms():
            if form.categories and await self.db.merge_form_tags(
                form.species_id or form.pokemon_id, form.categories
            ):
                merged += 1
        return merged


async def populate_types(client: PokeAPIClient, db: Database) -> int:
    """Cache the type catalog with the fixed colour palette."""
    page = await client.get_type_list()
    names = [r.get("name") for r in page.get("results") or [] if r.get("name")]
    if not names:
        names = list(TYPE_COLORS)
    return await db.upsert_types((name, type_color(name)) for name in names)


# ==================== FULL POPULATION RUN ====================


class CachePopulator:
    """
    One full population pass: types, the requested id range, then the forms
    catalog and tag backfill. Each step is best-effort.
    """

    def __init__(
        self,
        client: PokeAPIClient,
        db: Database,
        bulk: Optional[BulkPopulator] = None,
        forms: Optional[FormsCrawler] = None,
    ):
        self.client = client
        self.db = db
        self.bulk = bulk or BulkPopulator(client, db)
        self.forms = forms or FormsCrawler(client, db)

    async def _step(self, label: str, coro_factory: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await coro_factory()
        except Exception as e:
            logger.error(f"Population step {label} failed: {e}", exc_info=True)
            return None

    async def run(self, offset: int = 0, limit: int = 151) -> Dict[str, Any]:
        has_types = await self.db.count("pokemon_types") > 0
        has_forms = await self.db.count("pokemon_forms") > 0

        summary: Dict[str, Any] = {"offset": offset, "limit": limit}
        if not has_types:
            summary["types"] = await self._step(
                "types", lambda: populate_types(self.client, self.db)
            )

        summary["pokemon"] = await self._step(
            "bulk", lambda: self.bulk.populate_range(offset, limit)
        )

        if not has_forms:
            summary["gigantamax"] = await self._step("gigantamax", self.forms.ensure_gigantamax)
            summary["forms"] = await self._step("forms", self.forms.crawl)

        summary["backfilled"] = await self._step("backfill", self.forms.backfill_form_tags)
        logger.info("Population run finished", extra={"summary": summary})
        return summary


def scheduled_ids(offset: int, limit: int, max_id: int = MAX_DEX_ID) -> List[int]:
    """The ids a population request for `(offset, limit)` will touch."""
    return [i for i in range(offset + 1, offset + limit + 1) if i <= max_id]
