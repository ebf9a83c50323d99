"""
This module contains static constant definitions used throughout the application,
including:
- Generation id ranges and the form category taxonomy
- Region to upstream pokedex slug mappings
- Curated species lists (forms, Gigantamax, gender differences)
- Aggregation pacing and worker counts
- Error code prefixes and user-facing messages
"""

import re

# Generation id ranges (national dex id, inclusive)
GENERATION_RANGES = {
    1: (1, 151),
    2: (152, 251),
    3: (252, 386),
    4: (387, 493),
    5: (494, 649),
    6: (650, 721),
    7: (722, 809),
    8: (810, 905),
    9: (906, 1025),
}

# Form category taxonomy, in classifier priority order
FORM_CATEGORIES = ("mega", "gigantamax", "regional", "gender", "cosmetic", "alternate")

CATEGORY_ALIASES = {
    "gmax": "gigantamax",
    "g-max": "gigantamax",
    "gender-diff": "gender",
    "gender-differences": "gender",
    "regional-forms": "regional",
    "alternate-forms": "alternate",
    "alt": "alternate",
}

REGIONAL_HINTS = (
    "alola",
    "alolan",
    "galar",
    "galarian",
    "hisui",
    "hisuian",
    "paldea",
    "paldean",
)

# Regions whose dex is split across several upstream pokedex listings are merged
REGION_POKEDEX_SLUGS = {
    "kanto": ["kanto"],
    "johto": ["original-johto"],
    "hoenn": ["hoenn"],
    "sinnoh": ["original-sinnoh"],
    "unova": ["original-unova"],
    "kalos": ["kalos-central", "kalos-coastal", "kalos-mountain"],
    "alola": ["original-alola"],
    "galar": ["galar", "isle-of-armor", "crown-tundra"],
    "hisui": ["hisui"],
    "paldea": ["paldea", "kitakami", "blueberry"],
}

SPECIES_WITH_FORMS = [
    "pichu", "unown", "castform", "kyogre", "groudon", "deoxys", "burmy", "wormadam",
    "cherrim", "shellos", "gastrodon", "rotom", "dialga", "palkia", "giratina",
    "shaymin", "arceus", "basculin", "darmanitan", "deerling", "sawsbuck", "tornadus",
    "thundurus", "landorus", "enamorus", "kyurem", "keldeo", "meloetta", "genesect",
    "greninja", "vivillon", "flabebe", "floette", "florges", "furfrou", "meowstic",
    "aegislash", "pumpkaboo", "gourgeist", "xerneas", "zygarde", "hoopa", "oricorio",
    "lycanroc", "wishiwashi", "silvally", "minior", "mimikyu", "necrozma", "magearna",
    "cramorant", "toxtricity", "sinistea", "polteageist", "alcremie", "eiscue",
    "indeedee", "morpeko", "zacian", "zamazenta", "eternatus", "urshifu", "zarude",
    "calyrex", "ursaluna", "oinkologne", "maushold", "squawkabilly", "palafin",
    "tatsugiri", "dudunsparce", "gimmighoul", "poltchageist", "sinistcha", "ogerpon",
    "terapagos",
]

GIGANTAMAX_BASE_NAMES = [
    "venusaur", "charizard", "blastoise", "butterfree", "pikachu", "meowth", "machamp",
    "gengar", "kingler", "lapras", "eevee", "snorlax", "garbodor", "melmetal", "rillaboom",
    "cinderace", "inteleon", "corviknight", "orbeetle", "drednaw", "coalossal", "flapple",
    "appletun", "sandaconda", "toxtricity", "centiskorch", "hatterene", "grimmsnarl",
    "alcremie", "copperajah", "duraludon",
]

# Species with documented visual gender differences
GENDER_DIFF_SPECIES = [
    "venusaur", "butterfree", "rattata", "raticate", "pikachu", "raichu", "zubat",
    "golbat", "gloom", "vileplume", "kadabra", "alakazam", "doduo", "dodrio", "hypno",
    "rhyhorn", "rhydon", "goldeen", "seaking", "scyther", "magikarp", "gyarados",
    "eevee", "meganium", "ledyba", "ledian", "xatu", "sudowoodo", "politoed", "aipom",
    "wooper", "quagsire", "murkrow", "wobbuffet", "girafarig", "gligar", "steelix",
    "scizor", "heracross", "sneasel", "ursaring", "piloswine", "octillery", "houndoom",
    "donphan", "torchic", "combusken", "blaziken", "beautifly", "dustox", "ludicolo",
    "nuzleaf", "shiftry", "meditite", "medicham", "roselia", "gulpin", "swalot",
    "numel", "camerupt", "cacturne", "milotic", "relicanth", "starly", "staravia",
    "staraptor", "bidoof", "bibarel", "kricketot", "kricketune", "shinx", "luxio",
    "luxray", "roserade", "combee", "pachirisu", "buizel", "floatzel", "ambipom",
    "gible", "gabite", "garchomp", "hippopotas", "hippowdon", "croagunk", "toxicroak",
    "finneon", "lumineon", "snover", "abomasnow", "weavile", "rhyperior", "tangrowth",
    "mamoswine", "unfezant", "frillish", "jellicent", "pyroar", "meowstic",
    "indeedee", "basculegion", "oinkologne",
]

# Aggregation pacing (seconds) and worker counts
SPECIES_WORKERS = 3
SPECIES_STAGGER_DELAY = 0.12
VARIETY_DELAY = 0.08
FORM_DETAIL_DELAY = 0.06
REGION_CONCURRENCY = 5
REGION_BATCH_DELAY = 0.08
BULK_CHUNK_SIZE = 50
BULK_CONCURRENCY = 8
BULK_CONCURRENCY_SMALL = 16
BULK_SMALL_RANGE = 50  # Ranges up to this many ids use the higher concurrency
BULK_BATCH_DELAY = 0.05
FORMS_CRAWL_PAGE_SIZE = 200
FORMS_CRAWL_CONCURRENCY = 3
FORMS_CRAWL_DELAY = 0.03
MAX_STORED_MOVES = 20

# Query limits
MAX_LIST_LIMIT = 1025
DEFAULT_LIST_LIMIT = 20
MAX_FORMS_LIMIT = 200
DEFAULT_FORMS_LIMIT = 50
REGION_DEFAULT_LIMIT = 40
REGION_MAX_LIMIT = 200

# Cache Configuration
CACHE_KEY_HASH_ALGORITHM = "md5"  # Algorithm for cache key hashing

# Cache clear scopes mapped to the tables they wipe
CACHE_SCOPES = {
    "pokemon": ("pokemon", "pokemon_types"),
    "species": ("pokemon_species",),
    "forms": ("pokemon_forms",),
    "regional": ("regional_dex",),
    "gender": ("gender_differences",),
}

# Input Validation
POKEMON_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9\-\s]+$")
MAX_SEARCH_LENGTH = 50

# Transport faults worth another attempt, matched against exception text
RETRIABLE_MESSAGE_PATTERN = re.compile(
    r"abort|timed? ?out|timeout|ENOTFOUND|EAI_AGAIN|getaddrinfo|dns|ECONNRESET|"
    r"connection reset|ECONNREFUSED|cannot connect|socket hang up|"
    r"server disconnected|network|fetch failed|ETIMEDOUT",
    re.IGNORECASE,
)

# Error code prefixes
E_EXTERNAL = "E_EXTERNAL"
E_TRANSIENT = "E_TRANSIENT"
E_CIRCUIT_OPEN = "E_CIRCUIT_OPEN"
E_VALIDATION = "E_VALIDATION"
E_NOT_FOUND = "E_NOT_FOUND"
E_CONFLICT = "E_CONFLICT"

# User-facing messages
NO_GENDER_DIFFERENCE_TEXT = "No known visual gender differences."
ERROR_POKEMON_NOT_FOUND = "Pokemon not found"
ERROR_ALREADY_FAVORITE = "Pokemon already in favorites"
ERROR_NOT_FAVORITE = "Pokemon not in favorites"
ERROR_REGION_REQUIRED = "region is required"
ERROR_INTERNAL = "Internal error"
