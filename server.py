"""
Main entry point for the Pokedex cache service.

This module wires the cache store, the upstream client and the services into
an aiohttp web application. It includes:
- Route handlers for the read, population and maintenance endpoints.
- An error middleware that maps error codes to HTTP statuses.
- Startup/shutdown of shared resources.
"""

import asyncio
import logging
import sys
from typing import Any, Awaitable, Dict, Optional, Set

from aiohttp import web

from config.settings import HTTP_HOST, HTTP_PORT, LOG_LEVEL, MAX_DEX_ID, validate_settings
from services.aggregation import (
    AlternateFormsAggregator,
    BulkPopulator,
    CachePopulator,
    RegionAggregator,
    scheduled_ids,
)
from services.gender_diff import GenderDifferenceService
from services.query import PokedexQueryService
from services.regional import RegionalDexService
from utils.api_clients import PokeAPIClient
from utils.constants import DEFAULT_FORMS_LIMIT, DEFAULT_LIST_LIMIT, ERROR_INTERNAL, ERROR_POKEMON_NOT_FOUND
from utils.database import Database, close_database, get_database
from utils.errors import (
    ConflictError,
    NotFoundError,
    PokedexError,
    TransientNetworkError,
    ValidationError,
)
from utils.ttl_cache import DatabaseTTLCache, MemoryTTLCache, TTLCache
from utils.validators import parse_bool_param, parse_int_param, validate_limit, validate_offset

logger = logging.getLogger("pokedex")

DB_KEY = web.AppKey("db", Database)
CLIENT_KEY = web.AppKey("client", PokeAPIClient)
QUERY_KEY = web.AppKey("query", PokedexQueryService)
REGIONAL_KEY = web.AppKey("regional", RegionalDexService)
GENDER_KEY = web.AppKey("gender", GenderDifferenceService)
POPULATOR_KEY = web.AppKey("populator", CachePopulator)
FORMS_KEY = web.AppKey("alternate_forms", AlternateFormsAggregator)
TASKS_KEY = web.AppKey("background_tasks", set)
OWNS_RESOURCES_KEY = web.AppKey("owns_resources", bool)

STATUS_BY_ERROR = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (TransientNetworkError, 503),
)


def setup_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler("pokedex.log", encoding="utf-8"),
        ],
    )


def status_for(error: PokedexError) -> int:
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


def error_body(error: PokedexError) -> Dict[str, str]:
    return {"error": str(error)}


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Render service errors as `{"error": "<CODE>:<message>"}`."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except PokedexError as e:
        status = status_for(e)
        if status >= 500:
            logger.error(f"{request.method} {request.path} failed: {e}")
        return web.json_response(error_body(e), status=status)
    except Exception as e:
        logger.error(f"Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
        return web.json_response({"error": f"{PokedexError.code}:{ERROR_INTERNAL}"}, status=500)


# ==================== PARAM HELPERS ====================


def _int_param(request: web.Request, name: str) -> Optional[int]:
    is_valid, error_msg, value = parse_int_param(request.query.get(name), name)
    if not is_valid:
        raise ValidationError(error_msg)
    return value


def _path_id(request: web.Request, name: str = "id") -> int:
    is_valid, error_msg, value = parse_int_param(request.match_info.get(name), name)
    if not is_valid or value is None:
        raise ValidationError(error_msg or f"{name} is required")
    return value


def _user_id(request: web.Request) -> str:
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise ValidationError("X-User-Id header is required")
    return user_id


async def _json_body(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("request body must be JSON")
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    return body


def _spawn(app: web.Application, coro: Awaitable[Any], label: str) -> asyncio.Task:
    tasks: Set[asyncio.Task] = app[TASKS_KEY]

    async def _run():
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Background task {label} failed: {e}", exc_info=True)

    task = asyncio.create_task(_run())
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return task


# ==================== HANDLERS ====================


async def regional_pokedex(request: web.Request) -> web.Response:
    """Aggregation failures surface as 500 whatever the upstream cause."""
    limit = _int_param(request, "limit")
    offset = _int_param(request, "offset")
    try:
        result = await request.app[REGIONAL_KEY].page(
            request.query.get("region"),
            limit=limit,
            offset=offset,
            reset=parse_bool_param(request.query.get("reset")),
        )
    except ValidationError:
        raise
    except PokedexError as e:
        raise PokedexError(f"regional aggregation failed: {e.message}") from e
    return web.json_response(result)


async def list_pokemon(request: web.Request) -> web.Response:
    limit = _int_param(request, "limit")
    offset = _int_param(request, "offset")
    result = await request.app[QUERY_KEY].list(
        limit=DEFAULT_LIST_LIMIT if limit is None else limit,
        offset=offset or 0,
        search=request.query.get("search"),
        types=request.query.get("types"),
        generation=_int_param(request, "generation"),
        form_categories=request.query.get("forms"),
    )
    return web.json_response(result)


async def get_pokemon(request: web.Request) -> web.Response:
    result = await request.app[QUERY_KEY].get_by_id(_path_id(request))
    if result is None:
        raise NotFoundError(ERROR_POKEMON_NOT_FOUND)
    return web.json_response(result)


async def list_forms(request: web.Request) -> web.Response:
    limit = _int_param(request, "limit")
    result = await request.app[QUERY_KEY].list_forms(
        limit=DEFAULT_FORMS_LIMIT if limit is None else limit,
        offset=_int_param(request, "offset") or 0,
        category=request.query.get("category"),
        pokemon_id=_int_param(request, "pokemonId"),
        generation=_int_param(request, "generation"),
        search=request.query.get("search"),
    )
    return web.json_response(result)


async def get_types(request: web.Request) -> web.Response:
    return web.json_response(await request.app[QUERY_KEY].get_types())


async def alternate_forms(request: web.Request) -> web.Response:
    refresh = parse_bool_param(request.query.get("refresh"))
    species = await request.app[FORMS_KEY].aggregate(refresh=refresh)
    return web.json_response([s.to_dict() for s in species])


async def populate(request: web.Request) -> web.Response:
    """Schedule a population run and return without waiting for it."""
    body = await _json_body(request)
    limit = body.get("limit", 151)
    offset = body.get("offset", 0)
    for check in (validate_limit(limit, maximum=MAX_DEX_ID), validate_offset(offset)):
        is_valid, error_msg = check
        if not is_valid:
            raise ValidationError(error_msg)

    ids = scheduled_ids(offset, limit)
    _spawn(request.app, request.app[POPULATOR_KEY].run(offset=offset, limit=limit), "populate")
    logger.info(f"Scheduled population of {len(ids)} ids", extra={"offset": offset, "limit": limit})
    return web.json_response({"success": True, "scheduled": len(ids)})


async def clear_cache(request: web.Request) -> web.Response:
    body = await _json_body(request)
    deleted = await request.app[QUERY_KEY].clear_cache(body.get("scopes") or [])
    return web.json_response({"success": True, "deleted": deleted})


async def gender_difference(request: web.Request) -> web.Response:
    dex_id = _path_id(request, "dex_id")
    name = (request.query.get("name") or "").strip()
    if not name:
        entity = await request.app[DB_KEY].get_pokemon(dex_id)
        if entity is None:
            raise ValidationError("name is required")
        name = entity.name
    return web.json_response(await request.app[GENDER_KEY].get(dex_id, name))


async def list_favorites(request: web.Request) -> web.Response:
    return web.json_response(await request.app[QUERY_KEY].get_favorites(_user_id(request)))


async def add_favorite(request: web.Request) -> web.Response:
    result = await request.app[QUERY_KEY].add_favorite(_user_id(request), _path_id(request))
    return web.json_response(result, status=201)


async def remove_favorite(request: web.Request) -> web.Response:
    result = await request.app[QUERY_KEY].remove_favorite(_user_id(request), _path_id(request))
    return web.json_response(result)


async def health(request: web.Request) -> web.Response:
    client = request.app[CLIENT_KEY]
    return web.json_response(
        {
            "status": "ok",
            "cache": client.get_cache_stats(),
            "deduplication": client.get_deduplication_stats(),
            "circuitBreakers": client.get_circuit_breaker_stats(),
            "backgroundTasks": len(request.app[TASKS_KEY]),
        }
    )


# ==================== APP FACTORY ====================


async def _on_cleanup(app: web.Application) -> None:
    logger.info("Shutdown initiated - cleaning up resources")
    tasks = list(app[TASKS_KEY])
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)

    await app[QUERY_KEY].close()
    await app[REGIONAL_KEY].close()

    if app[OWNS_RESOURCES_KEY]:
        await app[CLIENT_KEY].close()
        await close_database()


def create_app(
    db: Database,
    client: PokeAPIClient,
    cache: Optional[TTLCache] = None,
    owns_resources: bool = False,
) -> web.Application:
    """
    Build the web application around an open store and a client.

    Args:
        db: Connected cache store.
        client: Upstream client.
        cache: TTL cache for aggregated results (in-memory by default).
        owns_resources: Close the client and store on shutdown.
    """
    cache = cache if cache is not None else MemoryTTLCache()
    bulk = BulkPopulator(client, db)

    app = web.Application(middlewares=[error_middleware])
    app[DB_KEY] = db
    app[CLIENT_KEY] = client
    app[QUERY_KEY] = PokedexQueryService(db, populator=bulk)
    app[REGIONAL_KEY] = RegionalDexService(db, RegionAggregator(client, db, cache=cache))
    app[GENDER_KEY] = GenderDifferenceService(client, db)
    app[POPULATOR_KEY] = CachePopulator(client, db, bulk=bulk)
    app[FORMS_KEY] = AlternateFormsAggregator(client, db, cache=cache)
    app[TASKS_KEY] = set()
    app[OWNS_RESOURCES_KEY] = owns_resources

    app.router.add_get("/api/health", health)
    app.router.add_get("/api/regional-pokedex", regional_pokedex)
    app.router.add_get("/api/pokemon", list_pokemon)
    app.router.add_get("/api/pokemon/{id}", get_pokemon)
    app.router.add_post("/api/pokemon/populate", populate)
    app.router.add_get("/api/forms", list_forms)
    app.router.add_get("/api/alternate-forms", alternate_forms)
    app.router.add_get("/api/types", get_types)
    app.router.add_post("/api/cache/clear", clear_cache)
    app.router.add_get("/api/gender-differences/{dex_id}", gender_difference)
    app.router.add_get("/api/favorites", list_favorites)
    app.router.add_post("/api/favorites/{id}", add_favorite)
    app.router.add_delete("/api/favorites/{id}", remove_favorite)

    app.on_cleanup.append(_on_cleanup)
    return app


async def build_app() -> web.Application:
    """Open the shared store and client, then build the application."""
    db = await get_database()
    client = PokeAPIClient(cache=DatabaseTTLCache(db))
    logger.info("Cache store connected, building application")
    return create_app(db, client, owns_resources=True)


def main() -> None:
    setup_logging()

    try:
        validate_settings()
        logger.info("Configuration validation passed")
    except ValueError as e:
        logger.critical(f"Configuration validation failed: {e}")
        sys.exit(1)

    web.run_app(build_app(), host=HTTP_HOST, port=HTTP_PORT)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.info("Server stopped by user (Ctrl+C)")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=e)
        sys.exit(1)
