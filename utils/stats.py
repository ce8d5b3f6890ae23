"""
Stat, gender and experience calculations.

Pure functions that turn captured values (base stats, IVs, EVs, level,
nature, personality value, experience) into the numbers the dashboard shows.
Formulas follow the Gen 3-5 mechanics that PokeMMO uses.
"""

import math
from typing import Dict, Mapping, Optional

from utils.constants import (
    ALWAYS_FEMALE_RATIO,
    ALWAYS_MALE_RATIO,
    DEFAULT_GENDER_THRESHOLD,
    GENDER_THRESHOLDS,
    GENDERLESS_RATIO,
    GROWTH_RATES,
    MAX_LEVEL,
    NATURE_MULTIPLIERS,
    STAT_KEYS,
)


def nature_multiplier(nature: str, stat_name: str) -> float:
    """Return 1.1, 0.9 or 1.0 for a stat under the given nature."""
    return NATURE_MULTIPLIERS.get(nature, {}).get(stat_name, 1.0)


def calculate_stat(
    base: int, iv: int, ev: int, level: int, nature: str, stat_name: str
) -> int:
    """
    Calculate an in-game stat value.

    HP: floor((2*base + iv + floor(ev/4)) * level / 100) + level + 10, except
    that a base of 1 always yields 1 (Shedinja).

    Other stats: floor((2*base + iv + floor(ev/4)) * level / 100) + 5, then
    multiplied by the nature coefficient and floored again.

    Args:
        base: Species base stat.
        iv: Individual value (0-31).
        ev: Effort value (0-252).
        level: Pokemon level (1-100).
        nature: Nature name (e.g. 'Modest').
        stat_name: One of 'hp', 'atk', 'def', 'spa', 'spd', 'spe'.

    Returns:
        The calculated stat.
    """
    core = ((2 * base + iv + ev // 4) * level) // 100

    if stat_name == "hp":
        if base == 1:
            return 1
        return core + level + 10

    raw = core + 5
    return math.floor(raw * nature_multiplier(nature, stat_name))


def calculate_stats(
    base_stats: Mapping[str, int],
    ivs: Mapping[str, int],
    evs: Mapping[str, int],
    level: int,
    nature: str,
) -> Dict[str, int]:
    """Calculate all six stats; missing inputs count as 0."""
    return {
        stat: calculate_stat(
            base_stats.get(stat, 0),
            ivs.get(stat, 0),
            evs.get(stat, 0),
            level,
            nature,
            stat,
        )
        for stat in STAT_KEYS
    }


def calculate_gender(personality_value: int, gender_ratio: int) -> str:
    """
    Derive gender from the personality value and the species gender ratio.

    Only the low byte of the unsigned 32-bit personality value matters. It is
    compared against a fixed threshold per ratio: at or above the threshold
    is male, below is female.

    Args:
        personality_value: Signed or unsigned 32-bit personality value.
        gender_ratio: Female ratio in eighths, or -1 for genderless.

    Returns:
        'male', 'female' or 'genderless'.
    """
    if gender_ratio == GENDERLESS_RATIO:
        return "genderless"
    if gender_ratio == ALWAYS_MALE_RATIO:
        return "male"
    if gender_ratio == ALWAYS_FEMALE_RATIO:
        return "female"

    gender_byte = (personality_value & 0xFFFFFFFF) & 0xFF
    threshold = GENDER_THRESHOLDS.get(gender_ratio, DEFAULT_GENDER_THRESHOLD)
    return "male" if gender_byte >= threshold else "female"


def get_xp_for_level(level: int, rate: Optional[str]) -> float:
    """
    Total experience required to reach `level` on a growth curve.

    Unknown or missing rates fall back to medium-fast.
    """
    if level <= 1:
        return 0

    n = level
    n2 = n * n
    n3 = n * n * n

    if rate == "erratic":
        if n < 50:
            return n3 * (100 - n) / 50
        if n < 68:
            return n3 * (150 - n) / 100
        if n < 98:
            return n3 * ((1911 - 10 * n) // 3) / 500
        return n3 * (160 - n) / 100

    if rate == "fast":
        return 4 * n3 / 5

    if rate == "medium-slow":
        return (6 / 5) * n3 - 15 * n2 + 100 * n - 140

    if rate == "slow":
        return 5 * n3 / 4

    if rate == "fluctuating":
        if n < 15:
            return n3 * ((n + 1) // 3 + 24) / 50
        if n < 36:
            return n3 * (n + 14) / 50
        return n3 * (n // 2 + 32) / 50

    # medium, medium-fast and anything unknown
    return n3


def detect_growth_rate(level: int, xp: int) -> Optional[str]:
    """
    Guess the growth rate from the current level and experience.

    Prefers a curve where `xp` falls inside the level's bounds, otherwise the
    curve whose level start is closest below `xp`.
    """
    if level >= MAX_LEVEL:
        return "medium"

    for rate in GROWTH_RATES:
        start = get_xp_for_level(level, rate)
        nxt = get_xp_for_level(level + 1, rate)
        if start <= xp < nxt:
            return rate

    best_rate = None
    min_diff = math.inf
    for rate in GROWTH_RATES:
        start = get_xp_for_level(level, rate)
        if xp >= start and xp - start < min_diff:
            min_diff = xp - start
            best_rate = rate

    return best_rate


def get_level_progress(current_xp: int, current_level: int, rate: Optional[str]) -> float:
    """
    Progress towards the next level as a percentage between 0 and 100.

    The rate is auto-detected when missing or inconsistent with the
    experience value.
    """
    if current_level >= MAX_LEVEL:
        return 100.0

    effective_rate = rate
    if not effective_rate or current_xp < get_xp_for_level(current_level, effective_rate):
        effective_rate = detect_growth_rate(current_level, current_xp)

    start_xp = get_xp_for_level(current_level, effective_rate)
    next_xp = get_xp_for_level(current_level + 1, effective_rate)

    if next_xp <= start_xp or current_xp < start_xp:
        return 0.0
    if current_xp >= next_xp:
        return 100.0

    gained = current_xp - start_xp
    needed = next_xp - start_xp
    return min(100.0, max(0.0, gained / needed * 100))
