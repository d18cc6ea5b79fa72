# Model package init
from .enums import Biome, BossTier  # noqa: F401 re-export
from .models import (  # noqa: F401 re-export
    BossEncounter,
    CooldownSetting,
    EncounterParticipant,
    FightingRoleGrant,
    GameConfig,
    Landmark,
    LandmarkVisit,
    Location,
    Player,
    RewardLedgerEntry,
    TravelHistoryEntry,
)

__all__ = [
    "Biome",
    "BossTier",
    "BossEncounter",
    "CooldownSetting",
    "EncounterParticipant",
    "FightingRoleGrant",
    "GameConfig",
    "Landmark",
    "LandmarkVisit",
    "Location",
    "Player",
    "RewardLedgerEntry",
    "TravelHistoryEntry",
]
