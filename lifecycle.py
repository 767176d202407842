"""
Quest lifecycle engine.

Orchestrates every operation that touches a quest together with one or more
user documents. Each operation runs its checks and writes inside a single
store transaction, so callers see all of it or none of it. Approve and close
add a second, best-effort step (the reconciliation sweep) after the
transaction commits.

A quest is OPEN while its document exists with ``active`` set, and CLOSED
once approve/close has flipped ``active`` off or the document is gone.
ALLOWED_STATES is the transition table: an operation on a quest in any other
state fails with NotFound.
"""

from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Any, Dict, List, Optional

from database import ArrayRemove, ArrayUnion, DocumentStore, Transaction
from errors import forbidden, invalid, not_found
from quests import QUESTS, QuestRepository, QuestState
from schemas import Submission
from sweeper import ReconciliationSweeper
from users import USERS, Number, UserLedger, as_points

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    ACCEPT = "accept"
    ABANDON = "abandon"
    SUBMIT = "submit"
    LIST_SUBMISSIONS = "list_submissions"
    REMOVE_SUBMISSION = "remove_submission"
    APPROVE = "approve"
    CLOSE = "close"


ALLOWED_STATES = {
    Operation.ACCEPT: {QuestState.OPEN},
    Operation.ABANDON: {QuestState.OPEN, QuestState.CLOSED},
    Operation.SUBMIT: {QuestState.OPEN},
    Operation.LIST_SUBMISSIONS: {QuestState.OPEN, QuestState.CLOSED},
    Operation.REMOVE_SUBMISSION: {QuestState.OPEN},
    Operation.APPROVE: {QuestState.OPEN},
    # Closing an already-closed quest finishes an interrupted sweep.
    Operation.CLOSE: {QuestState.OPEN, QuestState.CLOSED},
}


def check_transition(operation: Operation, quest: Optional[Dict[str, Any]]) -> QuestState:
    if quest is None:
        raise not_found("Quest not found")
    state = QuestState.of(quest)
    if state not in ALLOWED_STATES[operation]:
        raise not_found("Quest is closed")
    return state


def require_creator(quest: Dict[str, Any], caller_id: str) -> None:
    if quest.get("creatorId") != caller_id:
        raise forbidden("You are not the creator of this quest")


class QuestLifecycleEngine:
    def __init__(
        self,
        store: DocumentStore,
        quests: QuestRepository,
        users: UserLedger,
        sweeper: ReconciliationSweeper,
        creator_bonus: bool = True,
    ):
        self.store = store
        self.quests = quests
        self.users = users
        self.sweeper = sweeper
        self.creator_bonus = creator_bonus

    # ---------- Participation ----------

    def accept(self, quest_id: str, user_id: str) -> None:
        def _accept(txn: Transaction) -> None:
            quest, user = txn.get_all((QUESTS, quest_id), (USERS, user_id))
            check_transition(Operation.ACCEPT, quest)
            if user is None:
                raise not_found("User not found")
            if quest.get("creatorId") == user_id:
                raise forbidden("You cannot accept your own quest")
            txn.update(QUESTS, quest_id, {"acceptedBy": ArrayUnion(user_id)})
            self.users.add_accepted_quest(txn, user_id, quest_id)

        self.store.run_transaction(_accept)
        logger.info("User %s accepted quest %s", user_id, quest_id)

    def abandon(self, quest_id: str, user_id: str) -> None:
        def _abandon(txn: Transaction) -> None:
            quest, user = txn.get_all((QUESTS, quest_id), (USERS, user_id))
            if user is None:
                raise not_found("User not found")
            if quest is None:
                # Dangling id left behind by a sweep race: drop the user side only.
                if quest_id not in (user.get("acceptedQuests") or []):
                    raise not_found("Quest not found")
                self.users.remove_accepted_quest(txn, user_id, quest_id)
                return
            check_transition(Operation.ABANDON, quest)
            txn.update(QUESTS, quest_id, {"acceptedBy": ArrayRemove(user_id)})
            self.users.remove_accepted_quest(txn, user_id, quest_id)

        self.store.run_transaction(_abandon)
        logger.info("User %s abandoned quest %s", user_id, quest_id)

    # ---------- Submissions ----------

    def submit(self, quest_id: str, user_id: str, image_url: Optional[str],
               display_name: Optional[str] = None) -> Dict[str, Any]:
        """Record the caller's proof, replacing any earlier submission of theirs."""
        if not image_url:
            raise invalid("imageUrl is required")

        def _submit(txn: Transaction) -> Dict[str, Any]:
            quest = txn.get(QUESTS, quest_id)
            check_transition(Operation.SUBMIT, quest)
            submission = Submission(
                userId=user_id,
                displayName=display_name,
                imageUrl=image_url,
                submittedAt=datetime.now(timezone.utc),
            ).model_dump()
            kept = [s for s in quest.get("submissions") or [] if s.get("userId") != user_id]
            txn.update(QUESTS, quest_id, {"submissions": kept + [submission]})
            return submission

        submission = self.store.run_transaction(_submit)
        logger.info("User %s submitted proof for quest %s", user_id, quest_id)
        return submission

    def list_submissions(self, quest_id: str, caller_id: str) -> List[Dict[str, Any]]:
        quest = self.store.get(QUESTS, quest_id)
        check_transition(Operation.LIST_SUBMISSIONS, quest)
        require_creator(quest, caller_id)
        return quest.get("submissions") or []

    def remove_submission(self, quest_id: str, caller_id: str,
                          index: Optional[int] = None, user_id: Optional[str] = None) -> int:
        """Drop a submission by position or by submitting user; returns how many were removed."""
        if index is None and user_id is None:
            raise invalid("Provide a submission index or userId")

        def _remove(txn: Transaction) -> int:
            quest = txn.get(QUESTS, quest_id)
            check_transition(Operation.REMOVE_SUBMISSION, quest)
            require_creator(quest, caller_id)
            submissions = list(quest.get("submissions") or [])
            if index is not None:
                if not 0 <= index < len(submissions):
                    raise invalid("Invalid submission index")
                del submissions[index]
                removed = 1
            else:
                kept = [s for s in submissions if s.get("userId") != user_id]
                removed = len(submissions) - len(kept)
                submissions = kept
            if removed:
                txn.update(QUESTS, quest_id, {"submissions": submissions})
            return removed

        return self.store.run_transaction(_remove)

    # ---------- Completion ----------

    def approve(self, quest_id: str, caller_id: str, approved_user_id: Optional[str]) -> Dict[str, Number]:
        """Award the quest to ``approved_user_id`` and close it.

        Points, the completion snapshot, the accepted-quest removals and the
        quest's switch to CLOSED commit in one transaction, so a second
        approval of the same quest finds it closed and awards nothing.
        """
        if not approved_user_id:
            raise invalid("approvedUserId is required")

        def _approve(txn: Transaction) -> Dict[str, Number]:
            quest = txn.get(QUESTS, quest_id)
            check_transition(Operation.APPROVE, quest)
            require_creator(quest, caller_id)

            approved = txn.get(USERS, approved_user_id)
            if approved is None:
                raise not_found("Approved user not found")
            creator_id = quest["creatorId"]
            creator = None
            if creator_id != approved_user_id:
                creator = txn.get(USERS, creator_id)

            reward = as_points(quest.get("reward"))
            self.users.award(txn, approved_user_id, approved, reward)
            self.users.record_completion(txn, approved_user_id, quest_id, quest)
            self.users.remove_accepted_quest(txn, approved_user_id, quest_id)

            bonus = 0
            if creator is not None:
                if self.creator_bonus:
                    bonus = as_points(reward / 2)
                    self.users.award(txn, creator_id, creator, bonus)
                self.users.remove_accepted_quest(txn, creator_id, quest_id)

            txn.update(QUESTS, quest_id, {
                "active": False,
                "acceptedBy": ArrayRemove(approved_user_id, creator_id),
            })
            return {"reward": reward, "creatorBonus": bonus}

        result = self.store.run_transaction(_approve)
        logger.info(
            "Quest %s approved for %s by %s (reward=%s, creator bonus=%s)",
            quest_id, approved_user_id, caller_id, result["reward"], result["creatorBonus"],
        )
        result["sweptUsers"] = self._finish_closing(quest_id)
        return result

    def close(self, quest_id: str, caller_id: str) -> int:
        """Close without approval; returns how many users were swept."""
        def _close(txn: Transaction) -> None:
            quest = txn.get(QUESTS, quest_id)
            state = check_transition(Operation.CLOSE, quest)
            require_creator(quest, caller_id)
            if state is QuestState.OPEN:
                txn.update(QUESTS, quest_id, {"active": False})

        self.store.run_transaction(_close)
        swept = self._finish_closing(quest_id)
        logger.info("Quest %s closed by %s", quest_id, caller_id)
        return swept

    def _finish_closing(self, quest_id: str) -> int:
        # Runs after the atomic step has committed, so the quest is deleted
        # even when the sweep fails; leftover ids are cleared by abandon.
        try:
            return self.sweeper.sweep(quest_id, delete_quest=True)
        except Exception:
            logger.exception("Sweep for quest %s failed, deleting quest anyway", quest_id)
            self.quests.delete(quest_id)
            return 0
