"""
Reconciliation sweep run after a quest is approved or closed.

Finds every user still holding the quest id in ``acceptedQuests`` and strips
it with a non-atomic batch, then deletes the quest as the batch's last write.

The query and the batch are not atomic: an acceptance committed between the
two can leave a dangling id. Removing an absent id is a no-op, so running the
sweep again is always safe.
"""

import logging

from database import ArrayRemove, DocumentStore
from quests import QUESTS
from users import USERS

logger = logging.getLogger(__name__)


class ReconciliationSweeper:
    def __init__(self, store: DocumentStore):
        self.store = store

    def sweep(self, quest_id: str, delete_quest: bool = True) -> int:
        """Remove ``quest_id`` from every holder; returns how many users were touched."""
        holders = self.store.query_array_contains(USERS, "acceptedQuests", quest_id)

        batch = self.store.batch()
        for user_id, _ in holders:
            batch.update(USERS, user_id, {"acceptedQuests": ArrayRemove(quest_id)})
        if delete_quest:
            batch.delete(QUESTS, quest_id)
        batch.commit()

        logger.info(
            "Swept quest %s from %d user(s)%s",
            quest_id, len(holders), " and deleted it" if delete_quest else "",
        )
        return len(holders)
