from __future__ import annotations

import json
import random
from dataclasses import asdict, dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from .config import DEFAULTS, DATA_DIR


DIE_FACES = (1, 2, 3, 4, 5, 6)

Roll = Callable[[], int]


@dataclass(frozen=True)
class Animal:
    key: str
    name: str
    emoji: str
    income: int
    price: int


@dataclass(frozen=True)
class ProtectionItem:
    key: str
    name: str
    emoji: str
    bonus: float
    price: int


class GameData:
    """Static farm catalogs, read once from ``DATA_DIR``."""

    def __init__(self, data_dir: Path = DATA_DIR):
        self.data_dir = data_dir
        self.animals: Mapping[str, Animal] = MappingProxyType(
            {
                row["key"]: Animal(
                    key=row["key"],
                    name=row["name"],
                    emoji=row["emoji"],
                    income=int(row["income"]),
                    price=int(row["price"]),
                )
                for row in self._load_json("animals.json")
            }
        )
        self.protection: Mapping[str, ProtectionItem] = MappingProxyType(
            {
                row["key"]: ProtectionItem(
                    key=row["key"],
                    name=row["name"],
                    emoji=row["emoji"],
                    bonus=float(row["bonus"]),
                    price=int(row["price"]),
                )
                for row in self._load_json("protection.json")
            }
        )

    def _load_json(self, name: str) -> List[Dict[str, Any]]:
        path = self.data_dir / name
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)

    def get_animal(self, key: str) -> Optional[Animal]:
        return self.animals.get(key)

    def get_protection(self, key: str) -> Optional[ProtectionItem]:
        return self.protection.get(key)


def catalog_entry(item: Animal | ProtectionItem) -> Dict[str, Any]:
    return asdict(item)


def roll_die() -> int:
    return random.randint(DIE_FACES[0], DIE_FACES[-1])


def dice_reward(value: int) -> int:
    if value == 1:
        return DEFAULTS.dice_one_reward
    return value * DEFAULTS.dice_step_reward
