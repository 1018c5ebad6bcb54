"""Discipline codes and provider activity-type tables.

Provider type strings map onto a small fixed set of coded disciplines.
Resolution order (resolve_discipline):

1. provider fine-grained type (Strava sport_type, Garmin activityType)
2. provider coarse type (Strava type)
3. lower-cased fine-grained type
4. lower-cased coarse type
5. configured default discipline (DEFAULT_DISCIPLINE)
6. FALLBACK_DISCIPLINE
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import IntEnum

from loguru import logger


class Discipline(IntEnum):
    RUN = 103
    RIDE = 104
    WALK = 105
    HIKE = 106
    VIRTUAL_RIDE = 107
    VIRTUAL_RUN = 108
    SWIM = 109
    WORKOUT = 110
    WEIGHT_TRAINING = 111
    YOGA = 112
    CROSSFIT = 113
    ELLIPTICAL = 114
    ROWING = 115
    ROCK_CLIMBING = 116
    ALPINE_SKI = 117
    SNOWBOARD = 118
    MOUNTAIN_BIKE_RIDE = 119
    GRAVEL_RIDE = 120
    TRAIL_RUN = 121
    GOLF = 123


FALLBACK_DISCIPLINE = Discipline.WORKOUT

STRAVA_TYPE_TABLE: dict[str, Discipline] = {
    "Run": Discipline.RUN,
    "Ride": Discipline.RIDE,
    "Walk": Discipline.WALK,
    "Hike": Discipline.HIKE,
    "VirtualRide": Discipline.VIRTUAL_RIDE,
    "VirtualRun": Discipline.VIRTUAL_RUN,
    "Swim": Discipline.SWIM,
    "Workout": Discipline.WORKOUT,
    "WeightTraining": Discipline.WEIGHT_TRAINING,
    "Yoga": Discipline.YOGA,
    "Crossfit": Discipline.CROSSFIT,
    "Elliptical": Discipline.ELLIPTICAL,
    "Rowing": Discipline.ROWING,
    "RockClimbing": Discipline.ROCK_CLIMBING,
    "AlpineSki": Discipline.ALPINE_SKI,
    "Snowboard": Discipline.SNOWBOARD,
    "MountainBikeRide": Discipline.MOUNTAIN_BIKE_RIDE,
    "GravelRide": Discipline.GRAVEL_RIDE,
    "TrailRun": Discipline.TRAIL_RUN,
    "Golf": Discipline.GOLF,
    # Types without a dedicated discipline map to the closest one
    "EBikeRide": Discipline.RIDE,
    "Handcycle": Discipline.RIDE,
    "Velomobile": Discipline.RIDE,
    "EMountainBikeRide": Discipline.MOUNTAIN_BIKE_RIDE,
    "BackcountrySki": Discipline.ALPINE_SKI,
    "Snowshoe": Discipline.HIKE,
    "VirtualRow": Discipline.ROWING,
    "Kayaking": Discipline.ROWING,
    "Canoeing": Discipline.ROWING,
    "Pilates": Discipline.YOGA,
    "HighIntensityIntervalTraining": Discipline.WORKOUT,
    "StairStepper": Discipline.WORKOUT,
    "NordicSki": Discipline.WORKOUT,
    "RollerSki": Discipline.WORKOUT,
    "IceSkate": Discipline.WORKOUT,
    "InlineSkate": Discipline.WORKOUT,
    "Skateboard": Discipline.WORKOUT,
    "Wheelchair": Discipline.WORKOUT,
    "StandUpPaddling": Discipline.WORKOUT,
    "Surfing": Discipline.WORKOUT,
    "Kitesurf": Discipline.WORKOUT,
    "Windsurf": Discipline.WORKOUT,
    "Sail": Discipline.WORKOUT,
    "Soccer": Discipline.WORKOUT,
    "Tennis": Discipline.WORKOUT,
    "Badminton": Discipline.WORKOUT,
    "Squash": Discipline.WORKOUT,
    "Racquetball": Discipline.WORKOUT,
    "Pickleball": Discipline.WORKOUT,
    "TableTennis": Discipline.WORKOUT,
}

GARMIN_TYPE_TABLE: dict[str, Discipline] = {
    "RUNNING": Discipline.RUN,
    "INDOOR_RUNNING": Discipline.RUN,
    "TREADMILL_RUNNING": Discipline.RUN,
    "TRACK_RUNNING": Discipline.RUN,
    "STREET_RUNNING": Discipline.RUN,
    "TRAIL_RUNNING": Discipline.TRAIL_RUN,
    "VIRTUAL_RUN": Discipline.VIRTUAL_RUN,
    "WALKING": Discipline.WALK,
    "CASUAL_WALKING": Discipline.WALK,
    "SPEED_WALKING": Discipline.WALK,
    "HIKING": Discipline.HIKE,
    "CYCLING": Discipline.RIDE,
    "ROAD_BIKING": Discipline.RIDE,
    "INDOOR_CYCLING": Discipline.RIDE,
    "VIRTUAL_RIDE": Discipline.VIRTUAL_RIDE,
    "MOUNTAIN_BIKING": Discipline.MOUNTAIN_BIKE_RIDE,
    "GRAVEL_CYCLING": Discipline.GRAVEL_RIDE,
    "SWIMMING": Discipline.SWIM,
    "LAP_SWIMMING": Discipline.SWIM,
    "POOL_SWIMMING": Discipline.SWIM,
    "OPEN_WATER_SWIMMING": Discipline.SWIM,
    "STRENGTH_TRAINING": Discipline.WEIGHT_TRAINING,
    "CARDIO_TRAINING": Discipline.WORKOUT,
    "FITNESS_EQUIPMENT": Discipline.WORKOUT,
    "HIIT": Discipline.WORKOUT,
    "YOGA": Discipline.YOGA,
    "ELLIPTICAL": Discipline.ELLIPTICAL,
    "INDOOR_ROWING": Discipline.ROWING,
    "ROWING": Discipline.ROWING,
    "ROCK_CLIMBING": Discipline.ROCK_CLIMBING,
    "INDOOR_CLIMBING": Discipline.ROCK_CLIMBING,
    "RESORT_SKIING_SNOWBOARDING": Discipline.ALPINE_SKI,
    "RESORT_SKIING": Discipline.ALPINE_SKI,
    "RESORT_SNOWBOARDING": Discipline.SNOWBOARD,
    "GOLF": Discipline.GOLF,
    "OTHER": Discipline.WORKOUT,
}

# Provider vocabularies the tables must cover (Strava SportType enum, Garmin activity types)
STRAVA_SPORT_TYPES = frozenset(
    {
        "AlpineSki", "BackcountrySki", "Badminton", "Canoeing", "Crossfit", "EBikeRide",
        "Elliptical", "EMountainBikeRide", "Golf", "GravelRide", "Handcycle",
        "HighIntensityIntervalTraining", "Hike", "IceSkate", "InlineSkate", "Kayaking",
        "Kitesurf", "MountainBikeRide", "NordicSki", "Pickleball", "Pilates", "Racquetball",
        "Ride", "RockClimbing", "RollerSki", "Rowing", "Run", "Sail", "Skateboard",
        "Snowboard", "Snowshoe", "Soccer", "Squash", "StairStepper", "StandUpPaddling",
        "Surfing", "Swim", "TableTennis", "Tennis", "TrailRun", "Velomobile", "VirtualRide",
        "VirtualRow", "VirtualRun", "Walk", "WeightTraining", "Wheelchair", "Windsurf",
        "Workout", "Yoga",
    }
)
GARMIN_ACTIVITY_TYPES = frozenset(
    {
        "RUNNING", "INDOOR_RUNNING", "TREADMILL_RUNNING", "TRACK_RUNNING", "TRAIL_RUNNING",
        "WALKING", "HIKING", "CYCLING", "INDOOR_CYCLING", "MOUNTAIN_BIKING",
        "SWIMMING", "POOL_SWIMMING", "OPEN_WATER_SWIMMING", "LAP_SWIMMING",
        "STRENGTH_TRAINING", "CARDIO_TRAINING", "YOGA", "OTHER",
    }
)

DisciplineLookup = Mapping[str, Discipline]


def _check_tables() -> None:
    missing = sorted((STRAVA_SPORT_TYPES - STRAVA_TYPE_TABLE.keys()) | (GARMIN_ACTIVITY_TYPES - GARMIN_TYPE_TABLE.keys()))
    if missing:
        raise RuntimeError(f"Discipline tables missing provider types: {', '.join(missing)}")

    lowered: dict[str, Discipline] = {}
    for table in (STRAVA_TYPE_TABLE, GARMIN_TYPE_TABLE):
        for name, discipline in table.items():
            key = name.lower()
            if lowered.setdefault(key, discipline) != discipline:
                raise RuntimeError(f"Provider type '{name}' maps to conflicting disciplines")


def build_discipline_lookup() -> dict[str, Discipline]:
    """Merge the provider tables, adding lower-cased keys and enum names.

    Returns:
        Mapping from provider type string to Discipline
    """
    lookup: dict[str, Discipline] = {}
    for table in (STRAVA_TYPE_TABLE, GARMIN_TYPE_TABLE):
        for name, discipline in table.items():
            lookup[name] = discipline
            lookup[name.lower()] = discipline
    for discipline in Discipline:
        lookup.setdefault(discipline.name.lower(), discipline)
    return lookup


_check_tables()
DEFAULT_LOOKUP: dict[str, Discipline] = build_discipline_lookup()


def resolve_discipline(
    fine_type: str | None,
    coarse_type: str | None = None,
    lookup: DisciplineLookup | None = None,
    default: str | None = None,
) -> Discipline:
    """Resolve provider type strings to a Discipline.

    Args:
        fine_type: Fine-grained provider type (Strava sport_type, Garmin activityType)
        coarse_type: Coarse provider type (Strava type)
        lookup: Type lookup table, DEFAULT_LOOKUP when omitted
        default: Configured default discipline name (e.g. "Run")

    Returns:
        Resolved Discipline; never raises
    """
    table = DEFAULT_LOOKUP if lookup is None else lookup

    names = [value for value in (fine_type, coarse_type) if isinstance(value, str) and value]
    for candidate in names + [value.lower() for value in names]:
        if candidate in table:
            return table[candidate]

    if default:
        resolved = table.get(default) or table.get(default.lower())
        if resolved is not None:
            logger.warning(
                f"[NORMALIZE] Unknown activity type (fine={fine_type!r}, coarse={coarse_type!r}), using default discipline {default}"
            )
            return resolved
        logger.warning(f"[NORMALIZE] Configured default discipline {default!r} is not a known type")

    logger.warning(
        f"[NORMALIZE] Unknown activity type (fine={fine_type!r}, coarse={coarse_type!r}), using fallback {FALLBACK_DISCIPLINE.name}"
    )
    return FALLBACK_DISCIPLINE
