"""
Database module for the Pokedex cache store, using SQLite.

Each logical collection is a table holding the record as a JSON document
plus the columns its secondary indexes need. Keys are indexed but not
declared UNIQUE: upserts patch the first matching row and never assume
the store rejected duplicates.
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

import aiosqlite

from config.settings import DB_CONNECTION_STRING
from utils.constants import CACHE_SCOPES, FORM_CATEGORIES
from utils.models import (
    GenderDifferenceDescription,
    PokemonEntity,
    PokemonForm,
    PokemonSpecies,
    RegionalDexEntry,
    RegionalForm,
    sorted_tags,
)

logger = logging.getLogger("pokedex.database")

# index name -> column, per collection
INDEXES: Dict[str, Dict[str, str]] = {
    "pokemon": {
        "by_id": "pokemon_id",
        "by_name": "name",
        "by_generation": "generation",
    },
    "pokemon_species": {
        "by_pokemon_id": "pokemon_id",
        "by_name": "name",
    },
    "pokemon_forms": {
        "by_form_id": "form_id",
        "by_pokemon_id": "pokemon_id",
        "by_pokemon_name": "pokemon_name",
        "by_generation": "generation",
        **{f"by_is_{c}": f"is_{c}" for c in FORM_CATEGORIES},
    },
    "gender_differences": {
        "by_pokemon_id": "pokemon_id",
        "by_name": "name",
    },
}

IndexValue = Union[Any, Tuple[Any, Any]]


class Database:
    """
    Async cache store. Currently supports SQLite via aiosqlite.

    Schema:
    - **pokemon**: canonical entities (pokemon_id, name, generation, data JSON).
    - **pokemon_species**: species detail records.
    - **pokemon_types**: type catalog (name PK, color).
    - **pokemon_forms**: forms with one boolean column per category.
    - **gender_differences**: scraped descriptions with fetched_at for TTL.
    - **regional_dex**: per-region materialized dex rows (region + dex_id).
    - **favorites**: user_id + pokemon_id join rows.
    - **api_cache**: raw upstream responses with expiry and LRU access tracking.
    """

    def __init__(self, connection_string: str = DB_CONNECTION_STRING):
        """
        Initialize the database instance.

        Args:
            connection_string: The connection URI (e.g., 'sqlite:///data/pokedex.db'
                or 'sqlite:///:memory:').
        """
        self.connection_string = connection_string
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

        self.db_type, self.db_path = self._parse_connection_string(connection_string)

    def _parse_connection_string(self, conn_str: str) -> Tuple[str, str]:
        if conn_str.startswith("sqlite:///"):
            return "sqlite", conn_str[len("sqlite:///") :]

        parsed = urlparse(conn_str)
        return parsed.scheme, parsed.path

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database is not connected")
        return self._conn

    async def connect(self) -> None:
        """
        Open the connection and create tables.

        Raises:
            ValueError: If the database type is not supported (currently only 'sqlite').
        """
        if self.db_type != "sqlite":
            raise ValueError(
                f"Unsupported database type: {self.db_type}. Only 'sqlite' is currently supported."
            )

        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._create_tables()
        logger.info(f"Database connected ({self.db_type}): {self.db_path}")

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("Database connection closed")

    async def _create_tables(self) -> None:
        category_columns = ",\n".join(
            f"is_{c} INTEGER NOT NULL DEFAULT 0" for c in FORM_CATEGORIES
        )
        statements = [
            """
            CREATE TABLE IF NOT EXISTS pokemon (
                row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                pokemon_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                generation INTEGER NOT NULL,
                data TEXT NOT NULL,
                updated_at REAL NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS pokemon_species (
                row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                pokemon_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                data TEXT NOT NULL,
                updated_at REAL NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS pokemon_types (
                name TEXT PRIMARY KEY,
                color TEXT NOT NULL
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS pokemon_forms (
                row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                form_id INTEGER NOT NULL,
                pokemon_id INTEGER NOT NULL,
                pokemon_name TEXT,
                generation INTEGER,
                {category_columns},
                data TEXT NOT NULL,
                updated_at REAL NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS gender_differences (
                row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                pokemon_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                description TEXT NOT NULL,
                fetched_at REAL NOT NULL,
                source_url TEXT
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS regional_dex (
                row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                region TEXT NOT NULL,
                dex_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS favorites (
                row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                pokemon_id INTEGER NOT NULL,
                created_at REAL NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS api_cache (
                cache_key TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at REAL NOT NULL,
                last_accessed REAL NOT NULL,
                access_count INTEGER DEFAULT 1
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_cache_access ON api_cache(last_accessed)",
            "CREATE INDEX IF NOT EXISTS idx_regional_region_dex ON regional_dex(region, dex_id)",
            "CREATE INDEX IF NOT EXISTS idx_favorites_user ON favorites(user_id)",
            "CREATE INDEX IF NOT EXISTS idx_favorites_user_pokemon ON favorites(user_id, pokemon_id)",
        ]
        for table, indexes in INDEXES.items():
            for index_name, column in indexes.items():
                statements.append(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_{index_name} ON {table}({column})"
                )

        async with self._lock:
            for statement in statements:
                await self.conn.execute(statement)
            await self.conn.commit()
            logger.info("Database tables initialized")

    # ==================== GENERIC HELPERS ====================

    def _index_column(self, table: str, index_name: str) -> str:
        try:
            return INDEXES[table][index_name]
        except KeyError:
            raise ValueError(f"Unknown index {index_name!r} on {table}")

    async def _select_first(
        self, table: str, where: str, params: Sequence[Any]
    ) -> Optional[aiosqlite.Row]:
        """First row by insertion order. Caller must hold the lock."""
        cursor = await self.conn.execute(
            f"SELECT * FROM {table} WHERE {where} ORDER BY row_id LIMIT 1", params
        )
        return await cursor.fetchone()

    async def _fetch_rows(self, sql: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        async with self._lock:
            cursor = await self.conn.execute(sql, params)
            return list(await cursor.fetchall())

    async def _query_index_rows(
        self, table: str, index_name: str, value: IndexValue
    ) -> List[aiosqlite.Row]:
        """Point lookup for scalars, inclusive range lookup for `(low, high)` tuples."""
        column = self._index_column(table, index_name)
        if isinstance(value, tuple):
            low, high = value
            return await self._fetch_rows(
                f"SELECT * FROM {table} WHERE {column} BETWEEN ? AND ? ORDER BY row_id",
                (low, high),
            )
        if isinstance(value, bool):
            value = int(value)
        return await self._fetch_rows(
            f"SELECT * FROM {table} WHERE {column} = ? ORDER BY row_id", (value,)
        )

    async def count(self, table: str) -> int:
        rows = await self._fetch_rows(f"SELECT COUNT(*) AS n FROM {table}")
        return rows[0]["n"]

    # ==================== POKEMON ====================

    @staticmethod
    def _entity(row: aiosqlite.Row) -> PokemonEntity:
        return PokemonEntity.from_dict(json.loads(row["data"]))

    async def upsert_pokemon(self, entity: PokemonEntity) -> int:
        """
        Insert or patch the entity keyed by id.

        Stored form tags are unioned with the incoming ones so repeated
        upserts never lose a category.

        Returns:
            The entity id.
        """
        async with self._lock:
            row = await self._select_first("pokemon", "pokemon_id = ?", (entity.id,))
            if row is not None:
                stored = self._entity(row)
                entity.form_tags = sorted_tags(set(stored.form_tags) | set(entity.form_tags))

            payload = json.dumps(entity.to_dict())
            now = time.time()

            if row is None:
                await self.conn.execute(
                    """
                    INSERT INTO pokemon (pokemon_id, name, generation, data, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (entity.id, entity.name, entity.generation, payload, now),
                )
            else:
                await self.conn.execute(
                    """
                    UPDATE pokemon SET name = ?, generation = ?, data = ?, updated_at = ?
                    WHERE row_id = ?
                    """,
                    (entity.name, entity.generation, payload, now, row["row_id"]),
                )
            await self.conn.commit()

        logger.debug(f"Upserted pokemon {entity.id} ({entity.name})")
        return entity.id

    async def get_pokemon(self, pokemon_id: int) -> Optional[PokemonEntity]:
        async with self._lock:
            row = await self._select_first("pokemon", "pokemon_id = ?", (pokemon_id,))
        return self._entity(row) if row else None

    async def get_pokemon_by_name(self, name: str) -> Optional[PokemonEntity]:
        async with self._lock:
            row = await self._select_first("pokemon", "name = ?", (name.lower(),))
        return self._entity(row) if row else None

    async def query_pokemon(self, index_name: str, value: IndexValue) -> List[PokemonEntity]:
        rows = await self._query_index_rows("pokemon", index_name, value)
        return [self._entity(r) for r in rows]

    async def search_pokemon(self, term: str) -> List[PokemonEntity]:
        """Substring match on name or on the id's decimal text."""
        pattern = f"%{term.lower()}%"
        rows = await self._fetch_rows(
            """
            SELECT * FROM pokemon
            WHERE name LIKE ? OR CAST(pokemon_id AS TEXT) LIKE ?
            ORDER BY row_id
            """,
            (pattern, pattern),
        )
        return [self._entity(r) for r in rows]

    async def all_pokemon(self) -> List[PokemonEntity]:
        rows = await self._fetch_rows("SELECT * FROM pokemon ORDER BY row_id")
        return [self._entity(r) for r in rows]

    async def pokemon_names(self) -> List[str]:
        rows = await self._fetch_rows("SELECT DISTINCT name FROM pokemon ORDER BY name")
        return [r["name"] for r in rows]

    async def merge_form_tags(self, pokemon_id: int, categories: Iterable[str]) -> bool:
        """
        Add categories to an entity's form tags.

        Returns:
            True if the entity exists (whether or not tags changed).
        """
        categories = set(categories)
        async with self._lock:
            row = await self._select_first("pokemon", "pokemon_id = ?", (pokemon_id,))
            if row is None:
                return False
            entity = self._entity(row)
            merged = set(entity.form_tags) | categories
            if merged == set(entity.form_tags):
                return True
            entity.form_tags = sorted_tags(merged)
            await self.conn.execute(
                "UPDATE pokemon SET data = ?, updated_at = ? WHERE row_id = ?",
                (json.dumps(entity.to_dict()), time.time(), row["row_id"]),
            )
            await self.conn.commit()
        return True

    # ==================== SPECIES ====================

    async def upsert_species(self, species: PokemonSpecies) -> int:
        payload = json.dumps(species.to_dict())
        now = time.time()
        async with self._lock:
            row = await self._select_first(
                "pokemon_species", "pokemon_id = ?", (species.pokemon_id,)
            )
            if row is None:
                await self.conn.execute(
                    """
                    INSERT INTO pokemon_species (pokemon_id, name, data, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (species.pokemon_id, species.name, payload, now),
                )
            else:
                await self.conn.execute(
                    "UPDATE pokemon_species SET name = ?, data = ?, updated_at = ? WHERE row_id = ?",
                    (species.name, payload, now, row["row_id"]),
                )
            await self.conn.commit()
        return species.pokemon_id

    async def get_species(self, pokemon_id: int) -> Optional[PokemonSpecies]:
        async with self._lock:
            row = await self._select_first(
                "pokemon_species", "pokemon_id = ?", (pokemon_id,)
            )
        return PokemonSpecies.from_dict(json.loads(row["data"])) if row else None

    # ==================== TYPES ====================

    async def upsert_types(self, types: Iterable[Tuple[str, str]]) -> int:
        rows = list(types)
        async with self._lock:
            await self.conn.executemany(
                """
                INSERT INTO pokemon_types (name, color) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET color = excluded.color
                """,
                rows,
            )
            await self.conn.commit()
        return len(rows)

    async def get_types(self) -> List[Dict[str, str]]:
        rows = await self._fetch_rows("SELECT name, color FROM pokemon_types ORDER BY name")
        return [{"name": r["name"], "color": r["color"]} for r in rows]

    # ==================== FORMS ====================

    @staticmethod
    def _form(row: aiosqlite.Row) -> PokemonForm:
        return PokemonForm.from_dict(json.loads(row["data"]))

    async def upsert_form(self, form: PokemonForm, merge_tags: bool = True) -> int:
        """
        Insert or patch a form keyed by form id, then merge its categories
        into the owning entity's tags (species id when known, else pokemon id).
        Stored categories are unioned with the incoming ones.

        The two writes are separate; a form may briefly exist before its
        entity reflects it.
        """
        flag_columns = ", ".join(f"is_{c}" for c in FORM_CATEGORIES)

        async with self._lock:
            row = await self._select_first("pokemon_forms", "form_id = ?", (form.form_id,))
            if row is not None:
                stored = self._form(row)
                form.categories = sorted_tags(set(stored.categories) | set(form.categories))

            flags = [int(form.has(c)) for c in FORM_CATEGORIES]
            payload = json.dumps(form.to_dict())
            now = time.time()

            if row is None:
                placeholders = ", ".join("?" for _ in FORM_CATEGORIES)
                await self.conn.execute(
                    f"""
                    INSERT INTO pokemon_forms
                        (form_id, pokemon_id, pokemon_name, generation, {flag_columns},
                         data, updated_at)
                    VALUES (?, ?, ?, ?, {placeholders}, ?, ?)
                    """,
                    (
                        form.form_id,
                        form.pokemon_id,
                        form.pokemon_name,
                        form.generation,
                        *flags,
                        payload,
                        now,
                    ),
                )
            else:
                assignments = ", ".join(f"is_{c} = ?" for c in FORM_CATEGORIES)
                await self.conn.execute(
                    f"""
                    UPDATE pokemon_forms
                    SET pokemon_id = ?, pokemon_name = ?, generation = ?, {assignments},
                        data = ?, updated_at = ?
                    WHERE row_id = ?
                    """,
                    (
                        form.pokemon_id,
                        form.pokemon_name,
                        form.generation,
                        *flags,
                        payload,
                        now,
                        row["row_id"],
                    ),
                )
            await self.conn.commit()

        if merge_tags and form.categories:
            await self.merge_form_tags(form.species_id or form.pokemon_id, form.categories)

        return form.form_id

    async def get_form(self, form_id: int) -> Optional[PokemonForm]:
        async with self._lock:
            row = await self._select_first("pokemon_forms", "form_id = ?", (form_id,))
        return self._form(row) if row else None

    async def query_forms(self, index_name: str, value: IndexValue) -> List[PokemonForm]:
        rows = await self._query_index_rows("pokemon_forms", index_name, value)
        return [self._form(r) for r in rows]

    async def all_forms(self) -> List[PokemonForm]:
        rows = await self._fetch_rows("SELECT * FROM pokemon_forms ORDER BY row_id")
        return [self._form(r) for r in rows]

    # ==================== GENDER DIFFERENCES ====================

    @staticmethod
    def _gender(row: aiosqlite.Row) -> GenderDifferenceDescription:
        return GenderDifferenceDescription(
            pokemon_id=row["pokemon_id"],
            name=row["name"],
            description=row["description"],
            fetched_at=row["fetched_at"],
            source_url=row["source_url"],
        )

    async def get_gender_difference(
        self, pokemon_id: Optional[int] = None, name: Optional[str] = None
    ) -> Optional[GenderDifferenceDescription]:
        """Lookup by pokemon id, falling back to the name index."""
        async with self._lock:
            row = None
            if pokemon_id is not None:
                row = await self._select_first(
                    "gender_differences", "pokemon_id = ?", (pokemon_id,)
                )
            if row is None and name:
                row = await self._select_first(
                    "gender_differences", "name = ?", (name.lower(),)
                )
        return self._gender(row) if row else None

    async def upsert_gender_difference(self, record: GenderDifferenceDescription) -> None:
        async with self._lock:
            row = await self._select_first(
                "gender_differences", "pokemon_id = ?", (record.pokemon_id,)
            )
            values = (
                record.name.lower(),
                record.description,
                record.fetched_at,
                record.source_url,
            )
            if row is None:
                await self.conn.execute(
                    """
                    INSERT INTO gender_differences
                        (name, description, fetched_at, source_url, pokemon_id)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (*values, record.pokemon_id),
                )
            else:
                await self.conn.execute(
                    """
                    UPDATE gender_differences
                    SET name = ?, description = ?, fetched_at = ?, source_url = ?
                    WHERE row_id = ?
                    """,
                    (*values, row["row_id"]),
                )
            await self.conn.commit()

    # ==================== REGIONAL DEX ====================

    @staticmethod
    def _regional(row: aiosqlite.Row) -> RegionalDexEntry:
        data = json.loads(row["data"])
        return RegionalDexEntry(
            region=row["region"],
            dex_id=row["dex_id"],
            name=row["name"],
            types=list(data.get("types") or []),
            sprite=data.get("sprite"),
            forms=[RegionalForm.from_dict(f) for f in data.get("forms") or []],
        )

    async def upsert_regional_entry(self, entry: RegionalDexEntry) -> None:
        payload = json.dumps(entry.to_dict())
        async with self._lock:
            row = await self._select_first(
                "regional_dex", "region = ? AND dex_id = ?", (entry.region, entry.dex_id)
            )
            if row is None:
                await self.conn.execute(
                    "INSERT INTO regional_dex (region, dex_id, name, data) VALUES (?, ?, ?, ?)",
                    (entry.region, entry.dex_id, entry.name, payload),
                )
            else:
                await self.conn.execute(
                    "UPDATE regional_dex SET name = ?, data = ? WHERE row_id = ?",
                    (entry.name, payload, row["row_id"]),
                )
            await self.conn.commit()

    async def get_regional_page(
        self, region: str, limit: int, offset: int
    ) -> List[RegionalDexEntry]:
        """Distinct dex ids of a region in ascending order, first row per id."""
        rows = await self._fetch_rows(
            """
            SELECT * FROM regional_dex
            WHERE row_id IN (
                SELECT MIN(row_id) FROM regional_dex WHERE region = ? GROUP BY dex_id
            )
            ORDER BY dex_id
            LIMIT ? OFFSET ?
            """,
            (region, limit, offset),
        )
        return [self._regional(r) for r in rows]

    async def count_regional(self, region: str) -> int:
        rows = await self._fetch_rows(
            "SELECT COUNT(DISTINCT dex_id) AS n FROM regional_dex WHERE region = ?",
            (region,),
        )
        return rows[0]["n"]

    async def regional_dex_ids(self, region: str) -> List[int]:
        rows = await self._fetch_rows(
            "SELECT DISTINCT dex_id FROM regional_dex WHERE region = ? ORDER BY dex_id",
            (region,),
        )
        return [r["dex_id"] for r in rows]

    async def delete_region(self, region: str) -> int:
        async with self._lock:
            cursor = await self.conn.execute(
                "DELETE FROM regional_dex WHERE region = ?", (region,)
            )
            await self.conn.commit()
            return cursor.rowcount

    # ==================== FAVORITES ====================

    async def add_favorite(self, user_id: str, pokemon_id: int) -> bool:
        """
        Record a favorite.

        Returns:
            False if the pair was already present (nothing written).
        """
        async with self._lock:
            row = await self._select_first(
                "favorites", "user_id = ? AND pokemon_id = ?", (user_id, pokemon_id)
            )
            if row is not None:
                return False
            await self.conn.execute(
                "INSERT INTO favorites (user_id, pokemon_id, created_at) VALUES (?, ?, ?)",
                (user_id, pokemon_id, time.time()),
            )
            await self.conn.commit()
            return True

    async def remove_favorite(self, user_id: str, pokemon_id: int) -> bool:
        """Delete every row for the pair. Returns False if none existed."""
        async with self._lock:
            cursor = await self.conn.execute(
                "DELETE FROM favorites WHERE user_id = ? AND pokemon_id = ?",
                (user_id, pokemon_id),
            )
            await self.conn.commit()
            return cursor.rowcount > 0

    async def list_favorite_ids(self, user_id: str) -> List[int]:
        rows = await self._fetch_rows(
            "SELECT DISTINCT pokemon_id FROM favorites WHERE user_id = ? ORDER BY pokemon_id",
            (user_id,),
        )
        return [r["pokemon_id"] for r in rows]

    # ==================== SCOPED CLEAR ====================

    async def clear_tables(self, scopes: Iterable[str]) -> Dict[str, int]:
        """
        Wipe the tables behind each scope. Favorites are never touched.

        Raises:
            ValueError: On an unknown scope name.

        Returns:
            Rows deleted per table.
        """
        tables: List[str] = []
        for scope in scopes:
            if scope not in CACHE_SCOPES:
                raise ValueError(f"Unknown cache scope: {scope}")
            tables.extend(t for t in CACHE_SCOPES[scope] if t not in tables)

        deleted = {}
        async with self._lock:
            for table in tables:
                cursor = await self.conn.execute(f"DELETE FROM {table}")
                deleted[table] = cursor.rowcount
            await self.conn.commit()

        logger.info("Cleared cache tables", extra={"deleted": deleted})
        return deleted

    # ==================== API CACHE ====================

    async def get_cache(self, cache_key: str, max_age: float) -> Optional[Any]:
        """
        Retrieve cached data if it hasn't expired.

        Updates the `last_accessed` timestamp and `access_count` on a hit.
        Deletes the entry if found but expired.
        """
        try:
            async with self._lock:
                current_time = time.time()
                cursor = await self.conn.execute(
                    "SELECT data, created_at FROM api_cache WHERE cache_key = ?",
                    (cache_key,),
                )
                row = await cursor.fetchone()

                if row is None:
                    return None

                if current_time - row["created_at"] < max_age:
                    await self.conn.execute(
                        """
                        UPDATE api_cache
                        SET last_accessed = ?, access_count = access_count + 1
                        WHERE cache_key = ?
                        """,
                        (current_time, cache_key),
                    )
                    await self.conn.commit()
                    return json.loads(row["data"])

                await self.conn.execute(
                    "DELETE FROM api_cache WHERE cache_key = ?", (cache_key,)
                )
                await self.conn.commit()
                return None

        except Exception as e:
            logger.error(f"Error getting cache: {e}", exc_info=True)
            return None

    async def set_cache(self, cache_key: str, data: Any, max_size: int) -> bool:
        """
        Store data with LRU size management.

        When the table is full roughly 10% of the least recently accessed
        entries are evicted before insertion.
        """
        try:
            async with self._lock:
                current_time = time.time()

                cursor = await self.conn.execute("SELECT COUNT(*) AS count FROM api_cache")
                row = await cursor.fetchone()

                if row["count"] >= max_size:
                    remove_count = max(1, max_size // 10)
                    await self.conn.execute(
                        """
                        DELETE FROM api_cache WHERE cache_key IN (
                            SELECT cache_key FROM api_cache
                            ORDER BY last_accessed ASC
                            LIMIT ?
                        )
                        """,
                        (remove_count,),
                    )
                    logger.debug(f"Evicted {remove_count} old cache entries")

                await self.conn.execute(
                    """
                    INSERT INTO api_cache (cache_key, data, created_at, last_accessed)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(cache_key) DO UPDATE SET
                        data = excluded.data,
                        created_at = excluded.created_at,
                        last_accessed = excluded.last_accessed
                    """,
                    (cache_key, json.dumps(data), current_time, current_time),
                )
                await self.conn.commit()
                return True

        except Exception as e:
            logger.error(f"Error setting cache: {e}", exc_info=True)
            return False

    async def delete_cache(self, cache_key: str) -> None:
        try:
            async with self._lock:
                await self.conn.execute(
                    "DELETE FROM api_cache WHERE cache_key = ?", (cache_key,)
                )
                await self.conn.commit()
        except Exception as e:
            logger.error(f"Error deleting cache entry: {e}", exc_info=True)

    async def clear_cache(self) -> bool:
        try:
            async with self._lock:
                await self.conn.execute("DELETE FROM api_cache")
                await self.conn.commit()
                logger.info("Raw response cache cleared")
                return True
        except Exception as e:
            logger.error(f"Error clearing cache: {e}", exc_info=True)
            return False

    async def cleanup_expired_cache(self, max_age: float) -> int:
        """Remove cache entries older than `max_age` seconds. Returns the count."""
        try:
            async with self._lock:
                cursor = await self.conn.execute(
                    "DELETE FROM api_cache WHERE created_at < ?",
                    (time.time() - max_age,),
                )
                await self.conn.commit()
                return cursor.rowcount
        except Exception as e:
            logger.error(f"Error cleaning cache: {e}", exc_info=True)
            return 0


# Global database instance
_db_instance: Optional[Database] = None
_db_init_lock = asyncio.Lock()


async def get_database() -> Database:
    """
    Get the global database instance (Singleton pattern).

    Initializes and connects if not already connected, using double-checked
    locking so concurrent first callers share one connection.
    """
    global _db_instance

    if _db_instance is None:
        async with _db_init_lock:
            if _db_instance is None:
                instance = Database()
                await instance.connect()
                _db_instance = instance

    return _db_instance


async def close_database() -> None:
    global _db_instance
    if _db_instance is not None:
        await _db_instance.close()
        _db_instance = None
