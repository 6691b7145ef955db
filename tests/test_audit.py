"""
Tests for the hash-chained activity log
"""

from decimal import Decimal

from microloans.audit import ActivityLog, ActivityType, SYSTEM_ACTOR


class TestActivityLogging:
    """Test appending and querying activities"""

    def test_first_activity_has_empty_previous_hash(self, activity_log):
        activity = activity_log.log_activity(
            ActivityType.LOAN_CREATED, "Loan created", "loan", "loan-1", user_id="officer-1"
        )
        assert activity.previous_hash == ""
        assert activity.verify_hash()

    def test_chain_links(self, activity_log):
        first = activity_log.log_activity(ActivityType.LOAN_CREATED, "created", "loan", "loan-1")
        second = activity_log.log_activity(ActivityType.LOAN_APPROVED, "approved", "loan", "loan-1")
        assert second.previous_hash == first.current_hash

    def test_metadata_amounts_serialised(self, activity_log):
        activity = activity_log.log_activity(
            ActivityType.PAYMENT_RECEIVED, "paid", "loan", "loan-1", {"amount": Decimal("5000.00")}
        )
        assert activity.metadata == {"amount": "5000.00"}

    def test_system_actor(self, activity_log):
        activity = activity_log.log_activity(
            ActivityType.PENALTY_APPLIED, "penalty", "loan", "loan-1", is_system=True
        )
        assert activity.user_id == SYSTEM_ACTOR
        assert activity.is_system

    def test_entity_activities_oldest_first(self, activity_log):
        activity_log.log_activity(ActivityType.LOAN_CREATED, "created", "loan", "loan-1")
        activity_log.log_activity(ActivityType.CUSTOMER_CREATED, "customer", "customer", "c-1")
        activity_log.log_activity(ActivityType.LOAN_APPROVED, "approved", "loan", "loan-1")

        activities = activity_log.get_entity_activities("loan", "loan-1")
        assert [a.activity_type for a in activities] == [ActivityType.LOAN_CREATED, ActivityType.LOAN_APPROVED]

    def test_recent_activities_newest_first(self, activity_log):
        for n in range(5):
            activity_log.log_activity(ActivityType.SYSTEM_ACTION, f"run {n}", "system", "scheduler")

        recent = activity_log.get_recent_activities(limit=2)
        assert [a.description for a in recent] == ["run 4", "run 3"]

    def test_filter_by_type(self, activity_log):
        activity_log.log_activity(ActivityType.LOAN_CREATED, "created", "loan", "loan-1")
        activity_log.log_activity(ActivityType.SYSTEM_ACTION, "sweep", "system", "scheduler")
        found = activity_log.get_recent_activities(activity_type=ActivityType.SYSTEM_ACTION)
        assert len(found) == 1

    def test_user_activities(self, activity_log):
        activity_log.log_activity(ActivityType.LOAN_APPROVED, "approved", "loan", "loan-1", user_id="officer-1")
        activity_log.log_activity(ActivityType.LOAN_APPROVED, "approved", "loan", "loan-2", user_id="officer-2")

        mine = activity_log.get_user_activities("officer-1")
        assert [a.entity_id for a in mine] == ["loan-1"]

    def test_chain_continues_after_reload(self, storage, activity_log):
        first = activity_log.log_activity(ActivityType.LOAN_CREATED, "created", "loan", "loan-1")
        reopened = ActivityLog(storage)
        second = reopened.log_activity(ActivityType.LOAN_APPROVED, "approved", "loan", "loan-1")
        assert second.previous_hash == first.current_hash


class TestIntegrity:
    """Test tamper detection"""

    def test_untouched_chain_is_valid(self, activity_log):
        for n in range(3):
            activity_log.log_activity(ActivityType.SYSTEM_ACTION, f"run {n}", "system", "scheduler")
        result = activity_log.verify_integrity()
        assert result["valid"]
        assert result["total_activities"] == 3

    def test_edited_entry_detected(self, storage, activity_log):
        target = activity_log.log_activity(
            ActivityType.PENALTY_WAIVED, "waived", "loan", "loan-1", {"waive_amount": "590.00"}
        )
        activity_log.log_activity(ActivityType.SYSTEM_ACTION, "later", "system", "scheduler")

        record = storage.load("activities", target.id)
        record["metadata"]["waive_amount"] = "5900.00"
        storage.save("activities", target.id, record)

        result = activity_log.verify_integrity()
        assert not result["valid"]
        assert target.id in result["hash_errors"]
