"""
User ledger: the "Users" collection.

Owns points, experience/level, inventory and customisation. Methods that
take a ``txn`` stage their writes on the caller's transaction so they commit
together with whatever quest change they belong to.

Callers must already have checked that the acting user owns the document;
the only exception is quest approval, which is system-initiated.
"""

from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Any, Dict, List, Optional, Union

from database import ArrayRemove, ArrayUnion, DocumentStore, Increment, Transaction
from errors import conflict, invalid, not_found
from schemas import CompletedQuest, ProfileView, User

logger = logging.getLogger(__name__)

USERS = "Users"

Number = Union[int, float]

PROFILE_FIELDS = ("Name", "Bio", "ProfilePictureUrl")
CUSTOMISATION_FIELDS = ("borderId", "cardColor", "backgroundColor")

DEFAULT_INVENTORY_ITEMS = [
    "card-customization",
    "background-customization",
    "border-1",
    "border-2",
    "border-3",
    "border-4",
    "border-5",
    "border-6",
]

# Restored by an administrative reset.
PROGRESSION_DEFAULTS: Dict[str, Any] = {
    "Level": 0,
    "CompletedQuests": [],
    "Bio": "",
    "SpendablePoints": 0,
    "Experience": 0,
}

# Identity fields come from registration, never from a defaults sweep.
_IDENTITY_FIELDS = {"Email", "Name", "Role", "joinedAt"}


class Balance(str, Enum):
    SPENDABLE = "SpendablePoints"
    LEADERBOARD = "LeaderBoardPoints"
    EXPERIENCE = "Experience"


# ---------- Progression ----------

def next_level_exp(level: int) -> int:
    # Progression: 100 * level^1.5 experience to reach ``level``
    return int(100 * (level ** 1.5))


def as_points(value: Optional[Number]) -> Number:
    """Normalise a point amount; whole floats collapse to int."""
    number = value or 0
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return number


def level_for_experience(experience: Number) -> int:
    level, remaining = 0, experience
    while remaining >= next_level_exp(level + 1):
        remaining -= next_level_exp(level + 1)
        level += 1
    return level


class UserLedger:
    def __init__(self, store: DocumentStore):
        self.store = store

    # ---------- Documents ----------

    def create(self, user_id: str, email: Optional[str], name: Optional[str], role: Optional[str]) -> bool:
        """Create the user's document. Returns False if it already existed.

        An existing document is left exactly as it is, so re-registering
        never wipes earned points.
        """
        def _create(txn: Transaction) -> bool:
            if txn.get(USERS, user_id) is not None:
                return False
            user = User(Email=email, Name=name, Role=role, joinedAt=datetime.now(timezone.utc))
            txn.set(USERS, user_id, user.model_dump())
            return True

        created = self.store.run_transaction(_create)
        if created:
            logger.info("User %s registered", user_id)
        else:
            logger.info("User %s already registered, keeping existing document", user_id)
        return created

    def get(self, user_id: str) -> Dict[str, Any]:
        doc = self.store.get(USERS, user_id)
        if doc is None:
            raise not_found("User document not found")
        return doc

    def get_profile(self, user_id: str) -> ProfileView:
        doc = self.get(user_id)
        return ProfileView(
            uid=user_id,
            Name=doc.get("Name"),
            LeaderBoardPoints=doc.get("LeaderBoardPoints") or 0,
            CompletedQuests=doc.get("CompletedQuests") or [],
            acceptedQuests=doc.get("acceptedQuests") or [],
            Level=doc.get("Level") or 0,
            Bio=doc.get("Bio"),
            profilePicture=doc.get("ProfilePictureUrl"),
            Experience=doc.get("Experience") or 0,
            SpendablePoints=doc.get("SpendablePoints") or 0,
        )

    def update_profile(self, user_id: str, changes: Dict[str, Any]) -> List[str]:
        """Partial update of Name/Bio/ProfilePictureUrl; returns the fields written."""
        fields = {key: value for key, value in changes.items() if key in PROFILE_FIELDS}
        self._update_existing(user_id, fields)
        return list(fields)

    def is_admin(self, user_id: str) -> bool:
        doc = self.store.get(USERS, user_id)
        return doc is not None and doc.get("Role") == "admin"

    def _update_existing(self, user_id: str, changes: Dict[str, Any]) -> None:
        def _update(txn: Transaction) -> None:
            if txn.get(USERS, user_id) is None:
                raise not_found("User document not found")
            if changes:
                txn.update(USERS, user_id, changes)

        self.store.run_transaction(_update)

    # ---------- Transactional mutations ----------

    def adjust_points(self, txn: Transaction, user_id: str, delta: Number, which: Balance) -> None:
        txn.update(USERS, user_id, {Balance(which).value: Increment(delta)})

    def add_accepted_quest(self, txn: Transaction, user_id: str, quest_id: str) -> None:
        txn.update(USERS, user_id, {"acceptedQuests": ArrayUnion(quest_id)})

    def remove_accepted_quest(self, txn: Transaction, user_id: str, quest_id: str) -> None:
        txn.update(USERS, user_id, {"acceptedQuests": ArrayRemove(quest_id)})

    def award(self, txn: Transaction, user_id: str, user_doc: Dict[str, Any], amount: Number) -> None:
        """Credit ``amount`` to all three balances and recompute the level.

        ``user_doc`` must have been read in the same transaction.
        """
        experience = (user_doc.get("Experience") or 0) + amount
        txn.update(USERS, user_id, {
            Balance.SPENDABLE.value: Increment(amount),
            Balance.LEADERBOARD.value: Increment(amount),
            Balance.EXPERIENCE.value: Increment(amount),
            "Level": level_for_experience(experience),
        })

    def record_completion(self, txn: Transaction, user_id: str, quest_id: str, quest: Dict[str, Any]) -> None:
        snapshot = CompletedQuest(
            questId=quest_id,
            name=quest.get("name"),
            reward=as_points(quest.get("reward")),
            type=quest.get("type"),
            creatorId=quest.get("creatorId"),
            completedAt=datetime.now(timezone.utc),
        )
        txn.update(USERS, user_id, {"CompletedQuests": ArrayUnion(snapshot.model_dump())})

    # ---------- Inventory & customisation ----------

    def unlock_inventory_item(self, user_id: str, item_id: str, cost: int) -> Number:
        """Spend ``cost`` points on ``item_id``; returns the remaining balance."""
        if not item_id or "." in item_id or item_id.startswith("$"):
            raise invalid("Invalid itemId")
        if cost < 0:
            raise invalid("Cost must be non-negative")

        def _unlock(txn: Transaction) -> Number:
            doc = txn.get(USERS, user_id)
            if doc is None:
                raise not_found("User document not found")
            inventory = doc.get("inventoryItems") or {}
            points = doc.get("SpendablePoints") or 0
            if inventory.get(item_id):
                raise conflict("Item already unlocked")
            if points < cost:
                raise conflict("Not enough points to unlock item")
            txn.update(USERS, user_id, {
                f"inventoryItems.{item_id}": True,
                Balance.SPENDABLE.value: Increment(-cost),
            })
            return as_points(points - cost)

        remaining = self.store.run_transaction(_unlock)
        logger.info("User %s unlocked %s for %s points", user_id, item_id, cost)
        return remaining

    def get_inventory(self, user_id: str) -> Dict[str, Any]:
        """Inventory and customisation; seeds the locked default catalog on first read."""
        def _read(txn: Transaction) -> Dict[str, Any]:
            doc = txn.get(USERS, user_id)
            if doc is None:
                raise not_found("User document not found")
            inventory = doc.get("inventoryItems") or {}
            if not inventory:
                inventory = {item: False for item in DEFAULT_INVENTORY_ITEMS}
                txn.update(USERS, user_id, {"inventoryItems": inventory})
            return {
                "inventoryItems": inventory,
                "customisation": doc.get("customisation") or {},
            }

        return self.store.run_transaction(_read)

    def get_customisation(self, user_id: str) -> Dict[str, Any]:
        return self.get(user_id).get("customisation") or {}

    def update_customisation(self, user_id: str, changes: Dict[str, Any]) -> List[str]:
        fields = {
            f"customisation.{key}": value
            for key, value in changes.items()
            if key in CUSTOMISATION_FIELDS
        }
        self._update_existing(user_id, fields)
        return list(fields)

    # ---------- Administration ----------

    def init_fields(self, reset: bool = False) -> int:
        """Batch over every user filling in default fields.

        With ``reset`` the progression fields are restored to their starting
        values as well. Returns the number of documents written.
        """
        defaults = {
            key: value
            for key, value in User().model_dump().items()
            if key not in _IDENTITY_FIELDS
        }
        batch = self.store.batch()
        for user_id, doc in self.store.list(USERS):
            changes = {key: value for key, value in defaults.items() if key not in doc}
            if reset:
                changes.update(PROGRESSION_DEFAULTS)
            if changes:
                batch.update(USERS, user_id, changes)
        count = len(batch)
        batch.commit()
        logger.info("Initialised default fields on %d user documents (reset=%s)", count, reset)
        return count
