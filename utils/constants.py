"""
This module contains static constant definitions used throughout the application,
including:
- Game data tables (natures, gender thresholds, stat keys, types)
- Container and PC box identifiers
- Sprite and cache configuration
- User-facing API messages (errors, status updates)
"""

import re

# Container types accepted by the ingest endpoint
CONTAINER_TYPES = (
    "party",
    "daycare",
    "pc_boxes",
    "pc_box",
    "account_box",
    "pc_box_extra",
)

# Containers the dashboard can read back through /api/state
STATE_SOURCES = ("party", "daycare", "pc_boxes")
DEFAULT_STATE_SOURCE = "party"
PC_BOXES_SOURCE = "pc_boxes"
DAYCARE_SOURCE = "daycare"

# Schema version written into synthesized empty envelopes
DUMP_SCHEMA_VERSION = 1
DUMP_FILENAME_TEMPLATE = "dump-{container_type}.json"

# PC box identifiers (tagged on each Pokemon by the capture agent)
PC_BOX_PREFIX = "box_"
PC_EXTRA_BOX_PREFIX = "extra_box_"
PC_ACCOUNT_BOX = "account_box"
UNKNOWN_BOX = "unknown"

# Daycare regions: (id, display name, first slot, last slot) of the 26-slot daycare
DAYCARE_REGIONS = (
    ("kanto", "Kanto", 0, 3),
    ("hoenn", "Hoenn", 4, 9),
    ("sinnoh", "Sinnoh", 10, 19),
    ("unova", "Unova", 20, 25),
)
DAYCARE_REGION_IDS = tuple(region[0] for region in DAYCARE_REGIONS)
ALL_REGIONS = "all"
UNKNOWN_REGION = "unknown"

# Stat keys as they appear in captured IV/EV blocks
STAT_KEYS = ("hp", "atk", "def", "spa", "spd", "spe")

# PokeAPI stat names -> captured stat keys
POKEAPI_STAT_NAMES = {
    "hp": "hp",
    "attack": "atk",
    "defense": "def",
    "special-attack": "spa",
    "special-defense": "spd",
    "speed": "spe",
}

MAX_IV = 31
MAX_LEVEL = 100

# Nature modifiers: boosted stat x1.1, hindered stat x0.9, the rest x1.0
NATURE_MULTIPLIERS = {
    "Adamant": {"atk": 1.1, "spa": 0.9},
    "Bashful": {},
    "Bold": {"def": 1.1, "atk": 0.9},
    "Brave": {"atk": 1.1, "spe": 0.9},
    "Calm": {"spd": 1.1, "atk": 0.9},
    "Careful": {"spd": 1.1, "spa": 0.9},
    "Docile": {},
    "Gentle": {"spd": 1.1, "def": 0.9},
    "Hardy": {},
    "Hasty": {"spe": 1.1, "def": 0.9},
    "Impish": {"def": 1.1, "spa": 0.9},
    "Jolly": {"spe": 1.1, "spa": 0.9},
    "Lax": {"def": 1.1, "spd": 0.9},
    "Lonely": {"atk": 1.1, "def": 0.9},
    "Mild": {"spa": 1.1, "def": 0.9},
    "Modest": {"spa": 1.1, "atk": 0.9},
    "Naive": {"spe": 1.1, "spd": 0.9},
    "Naughty": {"atk": 1.1, "spd": 0.9},
    "Quiet": {"spa": 1.1, "spe": 0.9},
    "Quirky": {},
    "Rash": {"spa": 1.1, "spd": 0.9},
    "Relaxed": {"def": 1.1, "spe": 0.9},
    "Sassy": {"spd": 1.1, "spe": 0.9},
    "Serious": {},
    "Timid": {"spe": 1.1, "atk": 0.9},
}

NATURES = tuple(sorted(NATURE_MULTIPLIERS))

# Gender ratio (female eighths) -> minimum personality byte for a male
GENDERLESS_RATIO = -1
ALWAYS_MALE_RATIO = 0
ALWAYS_FEMALE_RATIO = 8
GENDER_THRESHOLDS = {1: 31, 2: 63, 4: 127, 6: 191, 7: 225}
DEFAULT_GENDER_THRESHOLD = 127

GROWTH_RATES = ("erratic", "fast", "medium", "medium-slow", "slow", "fluctuating")

POKEMON_TYPES = (
    "normal",
    "fire",
    "water",
    "grass",
    "electric",
    "ice",
    "fighting",
    "poison",
    "ground",
    "flying",
    "psychic",
    "bug",
    "rock",
    "ghost",
    "dragon",
    "dark",
    "steel",
    "fairy",
)

# Nicknames the capture agent synthesizes when a Pokemon has none
PLACEHOLDER_NICKNAME_PATTERN = re.compile(r"^Species \d+$")

# HP bar tiers
HP_GREEN_THRESHOLD = 50  # strictly above -> green
HP_YELLOW_THRESHOLD = 20  # at or above -> yellow, below -> red

# Sprites
# Gen V animated sprites only exist up to Genesect
LAST_ANIMATED_SPECIES_ID = 649
ANIMATED_SPRITE_PATH = "versions/generation-v/black-white/animated"
PLACEHOLDER_SPRITE_URL = (
    "https://raw.githubusercontent.com/PokeAPI/sprites/master/sprites/items/poke-ball.png"
)

# Resource kinds handled by the enrichment caches
RESOURCE_SPECIES = "species"
RESOURCE_MOVE = "move"
RESOURCE_ABILITY = "ability"
RESOURCE_KINDS = (RESOURCE_SPECIES, RESOURCE_MOVE, RESOURCE_ABILITY)

# Versioned names of the persisted cache per resource kind
CACHE_STORAGE_KEYS = {
    RESOURCE_SPECIES: "pokemmo-link-species-cache-v5",
    RESOURCE_MOVE: "pokemmo-link-move-cache-v2",
    RESOURCE_ABILITY: "pokemmo-link-ability-cache-v1",
}

# Proxy Cache Configuration
CACHE_KEY_HASH_ALGORITHM = "md5"  # Algorithm for proxy cache key hashing

# API Configuration
API_STARTUP_VALIDATION_TIMEOUT = 10  # Seconds

# Input Validation
MAX_SLUG_LENGTH = 100
SLUG_PATTERN = re.compile(r"^[a-z0-9\-]+$")
FORM_KEY_PATTERN = re.compile(r"^id-(\d+)-form-(\d+)$")

# Seconds a dashboard request waits for its flow to reach ready or error
DASHBOARD_SETTLE_TIMEOUT = 5

# Graceful Shutdown
SHUTDOWN_GRACE_PERIOD = 5  # Seconds to wait for cleanup before force exit

# Error Messages
ERROR_NOT_FOUND = "Not found"
ERROR_VALIDATION = "Validation error"
ERROR_INGEST_FAILED = "Failed to ingest data"
ERROR_STATE_FAILED = "Failed to read state"
ERROR_INTERNAL = "Internal server error"
ERROR_INVALID_SLUG = "Invalid Pokemon slug"
ERROR_INVALID_MOVE_ID = "Invalid move id"
ERROR_INVALID_ABILITY_ID = "Invalid ability id"
ERROR_UNKNOWN_SOURCE = "Unknown container source"

# Success Messages
SUCCESS_CACHE_CLEARED = "Cache cleared successfully."
SUCCESS_INGESTED = "Data ingested for {container_type}"
