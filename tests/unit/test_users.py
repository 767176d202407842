"""
Unit tests for UserLedger.

Tests registration, profile projection, point adjustments, the inventory
transaction and the administrative defaults sweep.
"""

import pytest

from errors import ErrorKind, ServiceError
from users import DEFAULT_INVENTORY_ITEMS, Balance, level_for_experience, next_level_exp


class TestProgression:
    def test_level_zero_without_experience(self):
        assert level_for_experience(0) == 0

    def test_first_level_at_hundred_experience(self):
        assert level_for_experience(99) == 0
        assert level_for_experience(100) == 1

    def test_levels_accumulate(self):
        total = next_level_exp(1) + next_level_exp(2)
        assert level_for_experience(total) == 2
        assert level_for_experience(total - 1) == 1


class TestRegistration:
    def test_create_initialises_accumulators(self, users):
        assert users.create("u1", "a@b.com", "A", "player") is True
        doc = users.get("u1")

        assert doc["Email"] == "a@b.com"
        assert doc["Name"] == "A"
        assert doc["Role"] == "player"
        assert doc["Level"] == 0
        assert doc["SpendablePoints"] == 0
        assert doc["LeaderBoardPoints"] == 0
        assert doc["Experience"] == 0
        assert doc["acceptedQuests"] == []
        assert doc["CompletedQuests"] == []
        assert doc["currentJourneyStop"] == 1
        assert doc["currentJourneyQuestId"] is None

    def test_recreate_keeps_existing_document(self, users, store):
        users.create("u1", "a@b.com", "A", "player")
        store.update("Users", "u1", {"SpendablePoints": 40})

        assert users.create("u1", "other@b.com", "Impostor", "admin") is False
        doc = users.get("u1")
        assert doc["SpendablePoints"] == 40
        assert doc["Name"] == "A"

    def test_missing_user_is_not_found(self, users):
        with pytest.raises(ServiceError) as excinfo:
            users.get("ghost")
        assert excinfo.value.kind is ErrorKind.NOT_FOUND


class TestProfile:
    def test_profile_is_a_projection(self, users, make_user):
        make_user("u1", Bio="hello", ProfilePictureUrl="https://img/u1.png")
        profile = users.get_profile("u1").model_dump()

        assert profile["uid"] == "u1"
        assert profile["Bio"] == "hello"
        assert profile["profilePicture"] == "https://img/u1.png"
        assert "Email" not in profile
        assert "inventoryItems" not in profile

    def test_update_profile_is_partial(self, users, make_user):
        make_user("u1", Bio="old bio")
        updated = users.update_profile("u1", {"Name": "New", "Role": "admin"})

        assert updated == ["Name"]
        doc = users.get("u1")
        assert doc["Name"] == "New"
        assert doc["Bio"] == "old bio"
        assert doc["Role"] == "player"

    def test_update_profile_of_missing_user(self, users):
        with pytest.raises(ServiceError) as excinfo:
            users.update_profile("ghost", {"Name": "x"})
        assert excinfo.value.kind is ErrorKind.NOT_FOUND


class TestPoints:
    def test_adjust_points_inside_transaction(self, users, store, make_user):
        make_user("u1")
        store.run_transaction(lambda txn: users.adjust_points(txn, "u1", 30, Balance.SPENDABLE))
        store.run_transaction(lambda txn: users.adjust_points(txn, "u1", 5, Balance.EXPERIENCE))

        doc = users.get("u1")
        assert doc["SpendablePoints"] == 30
        assert doc["Experience"] == 5
        assert doc["LeaderBoardPoints"] == 0

    def test_accepted_quest_set_is_idempotent(self, users, store, make_user):
        make_user("u1")
        for _ in range(2):
            store.run_transaction(lambda txn: users.add_accepted_quest(txn, "u1", "q1"))
        assert users.get("u1")["acceptedQuests"] == ["q1"]

        for _ in range(2):
            store.run_transaction(lambda txn: users.remove_accepted_quest(txn, "u1", "q1"))
        assert users.get("u1")["acceptedQuests"] == []


class TestInventory:
    def test_unlock_debits_points(self, users, make_user):
        make_user("u1", SpendablePoints=100)
        remaining = users.unlock_inventory_item("u1", "border-1", 60)

        doc = users.get("u1")
        assert remaining == 40
        assert doc["SpendablePoints"] == 40
        assert doc["inventoryItems"]["border-1"] is True

    def test_second_unlock_is_rejected_without_charge(self, users, make_user):
        make_user("u1", SpendablePoints=100)
        users.unlock_inventory_item("u1", "border-1", 60)

        with pytest.raises(ServiceError) as excinfo:
            users.unlock_inventory_item("u1", "border-1", 10)
        assert excinfo.value.kind is ErrorKind.CONFLICT
        assert excinfo.value.message == "Item already unlocked"
        assert users.get("u1")["SpendablePoints"] == 40

    def test_unlock_above_balance_changes_nothing(self, users, make_user):
        make_user("u1", SpendablePoints=10)

        with pytest.raises(ServiceError) as excinfo:
            users.unlock_inventory_item("u1", "border-2", 11)
        assert excinfo.value.kind is ErrorKind.CONFLICT
        doc = users.get("u1")
        assert doc["SpendablePoints"] == 10
        assert not doc["inventoryItems"].get("border-2")

    def test_item_id_cannot_be_a_path(self, users, make_user):
        make_user("u1", SpendablePoints=10)
        with pytest.raises(ServiceError) as excinfo:
            users.unlock_inventory_item("u1", "a.b", 1)
        assert excinfo.value.kind is ErrorKind.VALIDATION

    def test_get_inventory_seeds_locked_catalog(self, users, make_user):
        make_user("u1")
        result = users.get_inventory("u1")

        assert result["inventoryItems"] == {item: False for item in DEFAULT_INVENTORY_ITEMS}
        assert users.get("u1")["inventoryItems"] == result["inventoryItems"]

    def test_get_inventory_keeps_unlocked_items(self, users, make_user):
        make_user("u1", SpendablePoints=5)
        users.unlock_inventory_item("u1", "border-3", 5)
        assert users.get_inventory("u1")["inventoryItems"] == {"border-3": True}

    def test_customisation_update_is_nested_and_partial(self, users, make_user):
        make_user("u1")
        users.update_customisation("u1", {"cardColor": "red"})
        updated = users.update_customisation("u1", {"borderId": "border-1", "unknown": 1})

        assert updated == ["customisation.borderId"]
        custom = users.get_customisation("u1")
        assert custom["cardColor"] == "red"
        assert custom["borderId"] == "border-1"
        assert "unknown" not in custom


class TestInitFields:
    def test_fills_missing_fields_only(self, users, store):
        store.set("Users", "legacy", {"Name": "Old", "SpendablePoints": 12})
        users.create("fresh", "f@b.com", "Fresh", "player")

        count = users.init_fields()

        assert count == 1
        legacy = users.get("legacy")
        assert legacy["SpendablePoints"] == 12
        assert legacy["Level"] == 0
        assert legacy["acceptedQuests"] == []
        assert "Email" not in legacy

    def test_reset_restores_progression(self, users, make_user):
        make_user("u1", SpendablePoints=50, Experience=300, Level=2, Bio="bio")
        users.init_fields(reset=True)

        doc = users.get("u1")
        assert doc["SpendablePoints"] == 0
        assert doc["Experience"] == 0
        assert doc["Level"] == 0
        assert doc["Bio"] == ""

    def test_is_admin(self, users, make_user):
        make_user("boss", Role="admin")
        make_user("pleb")
        assert users.is_admin("boss")
        assert not users.is_admin("pleb")
        assert not users.is_admin("ghost")
