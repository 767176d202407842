"""
Quest repository: CRUD over the "Quests" collection.

Owns the quest document shape and its validation. Authorization is the
caller's job; delete() in particular is unconditional.
"""

from datetime import datetime, timezone
from enum import Enum
import logging
import math
from typing import Any, Dict, List, Optional

from database import DocumentStore
from errors import invalid, not_found
from schemas import Location, Quest, QuestCreate
from users import as_points

logger = logging.getLogger(__name__)

QUESTS = "Quests"


class QuestState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"

    @classmethod
    def of(cls, quest: Optional[Dict[str, Any]]) -> "QuestState":
        if quest is not None and quest.get("active", True):
            return cls.OPEN
        return cls.CLOSED


def _number(value: Any) -> Optional[float]:
    """Coerce ``value`` to a finite float, or None when it is not one."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def build_location(lat: Any, lng: Any) -> Optional[Location]:
    latitude, longitude = _number(lat), _number(lng)
    if latitude is None or longitude is None:
        return None
    if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
        return None
    return Location(latitude=latitude, longitude=longitude)


class QuestRepository:
    def __init__(self, store: DocumentStore):
        self.store = store

    def create(self, quest_input: QuestCreate, creator_id: str, creator_name: Optional[str] = None) -> str:
        name = (quest_input.name or "").strip()
        if not name:
            raise invalid("Quest name is required")

        radius = _number(quest_input.radius)
        if radius is None or radius <= 0:
            raise invalid("Radius must be a positive number")

        reward = _number(quest_input.reward if quest_input.reward is not None else 0)
        if reward is None or reward < 0:
            raise invalid("Reward must be a non-negative number")

        quest = Quest(
            name=name,
            radius=radius,
            reward=as_points(reward),
            type=quest_input.type,
            location=build_location(quest_input.lat, quest_input.lng),
            imageUrl=quest_input.imageUrl,
            emoji=quest_input.emoji,
            color=quest_input.color,
            creatorId=creator_id,
            creatorName=creator_name,
            createdAt=datetime.now(timezone.utc),
        )
        doc = quest.model_dump()
        if doc["location"] is None:
            del doc["location"]

        quest_id = self.store.add(QUESTS, doc)
        logger.info("Quest %s (%r) created by %s", quest_id, name, creator_id)
        return quest_id

    def list(self) -> List[Dict[str, Any]]:
        """Open quests only; a closed quest may linger until its sweep deletes it."""
        return [
            {"id": key, **doc}
            for key, doc in self.store.list(QUESTS)
            if QuestState.of(doc) is QuestState.OPEN
        ]

    def get(self, quest_id: str) -> Dict[str, Any]:
        doc = self.store.get(QUESTS, quest_id)
        if doc is None:
            raise not_found("Quest not found")
        return {"id": quest_id, **doc}

    def delete(self, quest_id: str) -> None:
        self.store.delete(QUESTS, quest_id)
