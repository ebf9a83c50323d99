import copy
import os
import sys

import pytest
import pytest_asyncio

# Add project root to python path so we can import modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from utils.database import Database  # noqa: E402
from utils.errors import FetchError  # noqa: E402

API = "https://pokeapi.co/api/v2"


class FakeClient:
    """
    Stand-in for PokeAPIClient serving scripted payloads.

    Unscripted resources raise a 404 FetchError, like the real client. A
    scripted exception instance is raised instead of returned.
    """

    def __init__(self):
        self.responses = {}
        self.calls = []

    @staticmethod
    def _key(kind, key):
        return kind, str(key).strip().lower()

    def add(self, kind, key, payload):
        self.responses[self._key(kind, key)] = payload

    def fail(self, kind, key, error):
        self.responses[self._key(kind, key)] = error

    def call_count(self, kind, key):
        return self.calls.count(self._key(kind, key))

    async def _get(self, kind, key):
        self.calls.append(self._key(kind, key))
        value = self.responses.get(self._key(kind, key))
        if value is None:
            raise FetchError(f"HTTP 404 for {kind}/{key}", status=404)
        if isinstance(value, BaseException):
            raise value
        return copy.deepcopy(value)

    async def get_pokemon(self, name_or_id):
        return await self._get("pokemon", name_or_id)

    async def get_species(self, name_or_id):
        return await self._get("pokemon-species", name_or_id)

    async def get_form(self, name_or_id):
        return await self._get("pokemon-form", name_or_id)

    async def get_pokedex(self, slug):
        return await self._get("pokedex", slug)

    async def get_type_list(self):
        return await self._get("type", "list")

    async def get_forms_page(self, limit, offset):
        return await self._get("pokemon-form-page", f"{limit}:{offset}")

    async def fetch_json(self, url, **kwargs):
        return await self._get("url", url)

    async def fetch_text(self, url, **kwargs):
        return await self._get("text", url)

    async def close(self):
        pass


class Payloads:
    """Builders for upstream-shaped payloads."""

    @staticmethod
    def ref(kind, name, id_):
        return {"name": name, "url": f"{API}/{kind}/{id_}/"}

    @classmethod
    def pokemon(cls, id_, name, types=("normal",), forms=None):
        return {
            "id": id_,
            "name": name,
            "height": 7,
            "weight": 69,
            "base_experience": 64,
            "types": [
                {"slot": i + 1, "type": {"name": t, "url": f"{API}/type/{t}/"}}
                for i, t in enumerate(types)
            ],
            "abilities": [
                {"ability": {"name": "overgrow"}, "is_hidden": False},
                {"ability": {"name": "chlorophyll"}, "is_hidden": True},
            ],
            "stats": [{"stat": {"name": "hp"}, "base_stat": 45, "effort": 0}],
            "sprites": {
                "front_default": f"https://img/{id_}.png",
                "front_shiny": None,
                "other": {"official-artwork": {"front_default": f"https://art/{id_}.png"}},
            },
            "forms": [cls.ref("pokemon-form", n, i) for n, i in (forms or [(name, id_)])],
            "moves": [{"move": {"name": "tackle"}}],
        }

    @classmethod
    def species(cls, id_, name, varieties=None, generation=None):
        varieties = varieties or [(name, True, id_)]
        payload = {
            "id": id_,
            "name": name,
            "varieties": [
                {"is_default": default, "pokemon": cls.ref("pokemon", n, pid)}
                for n, default, pid in varieties
            ],
            "flavor_text_entries": [
                {"flavor_text": "Une graine.", "language": {"name": "fr"}},
                {"flavor_text": "A strange seed\nwas planted\fon its back.", "language": {"name": "en"}},
            ],
            "genera": [{"genus": "Seed Pokémon", "language": {"name": "en"}}],
            "capture_rate": 45,
            "base_happiness": 50,
            "growth_rate": {"name": "medium-slow"},
            "habitat": {"name": "grassland"},
            "evolution_chain": {"url": f"{API}/evolution-chain/1/"},
        }
        if generation is not None:
            payload["generation"] = {"name": f"generation-{generation}", "url": f"{API}/generation/{generation}/"}
        return payload

    @classmethod
    def form(cls, id_, name, pokemon_id, pokemon_name=None, form_name="", is_default=True, is_battle_only=False, form_order=1):
        return {
            "id": id_,
            "name": name,
            "form_name": form_name,
            "is_default": is_default,
            "is_battle_only": is_battle_only,
            "is_mega": False,
            "form_order": form_order,
            "version_group": {"name": "sword-shield"},
            "pokemon": cls.ref("pokemon", pokemon_name or name, pokemon_id),
            "sprites": {"front_default": f"https://img/form/{id_}.png"},
        }

    @classmethod
    def pokedex(cls, entries):
        return {
            "pokemon_entries": [
                {"entry_number": i + 1, "pokemon_species": cls.ref("pokemon-species", n, sid)}
                for i, (sid, n) in enumerate(entries)
            ]
        }


@pytest_asyncio.fixture
async def db():
    """In-memory cache store."""
    database = Database("sqlite:///:memory:")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def payloads():
    return Payloads
