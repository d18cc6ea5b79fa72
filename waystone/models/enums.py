"""Closed enumerations shared by the models and services.

Biome and tier values are persisted as plain strings/ints; these enums are the
only place that knows the legal set. Parsing never guesses: unknown text comes
back as ``None`` and callers pick their explicit default branch.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Optional


class Biome(str, Enum):
    CITY = "city"
    VOLCANIC = "volcanic"
    ICE = "ice"
    FOREST = "forest"
    DESERT = "desert"
    SWAMP = "swamp"
    MOUNTAIN = "mountain"
    RUINS = "ruins"
    MEADOW = "meadow"
    WATER = "water"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["Biome"]:
        if raw is None:
            return None
        if isinstance(raw, Biome):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            return None


class BossTier(IntEnum):
    COMMON = 1
    UNCOMMON = 2
    RARE = 3
    EPIC = 4
    LEGENDARY = 5

    @property
    def label(self) -> str:
        return self.name.title()


__all__ = ["Biome", "BossTier"]
