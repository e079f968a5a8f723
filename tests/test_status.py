"""Tests for status conditions."""

from datetime import UTC, datetime, timedelta

from fivetran_operator.models import ConditionStatus
from fivetran_operator.status import (
    CONNECTOR_READY,
    REASON_FAILED,
    REASON_SUCCESS,
    REASON_SUCCESS_WITH_WARNINGS,
    SCHEMA_READY,
    SETUP_TEST_READY,
    get_condition,
    has_failed_conditions,
    set_condition,
    setup_tests_message,
)
from fivetran_mock import make_resource

T0 = datetime(2026, 1, 1, tzinfo=UTC)


class TestSetCondition:
    """Tests for condition upserts."""

    def test_one_condition_per_type(self) -> None:
        """Test that setting a type twice replaces it."""
        resource = make_resource(generation=3)

        set_condition(resource, CONNECTOR_READY, ConditionStatus.FALSE, REASON_FAILED, "boom", T0)
        set_condition(resource, SCHEMA_READY, ConditionStatus.TRUE, REASON_SUCCESS, "ok", T0)
        set_condition(resource, CONNECTOR_READY, ConditionStatus.TRUE, REASON_SUCCESS, "ok", T0)

        assert [c.type for c in resource.status.conditions] == [CONNECTOR_READY, SCHEMA_READY]
        condition = get_condition(resource, CONNECTOR_READY)
        assert condition is not None
        assert condition.status == ConditionStatus.TRUE
        assert condition.observed_generation == 3

    def test_transition_time_moves_on_status_change_only(self) -> None:
        """Test that a repeated status keeps its original transition time."""
        resource = make_resource()
        later = T0 + timedelta(minutes=5)

        set_condition(resource, CONNECTOR_READY, ConditionStatus.TRUE, REASON_SUCCESS, "a", T0)
        set_condition(resource, CONNECTOR_READY, ConditionStatus.TRUE, REASON_SUCCESS, "b", later)
        condition = get_condition(resource, CONNECTOR_READY)
        assert condition is not None
        assert condition.last_transition_time == T0
        assert condition.message == "b"

        set_condition(resource, CONNECTOR_READY, ConditionStatus.FALSE, REASON_FAILED, "c", later)
        condition = get_condition(resource, CONNECTOR_READY)
        assert condition is not None
        assert condition.last_transition_time == later

    def test_has_failed_conditions(self) -> None:
        """Test that any False condition counts as a failure."""
        resource = make_resource()
        assert has_failed_conditions(resource) is False

        set_condition(resource, SETUP_TEST_READY, ConditionStatus.FALSE, REASON_FAILED, "x")
        assert has_failed_conditions(resource) is True

    def test_conditions_serialize_with_aliases(self) -> None:
        """Test the wire format of a condition."""
        resource = make_resource()
        set_condition(resource, CONNECTOR_READY, ConditionStatus.TRUE, REASON_SUCCESS, "ok", T0)

        (condition,) = resource.to_manifest()["status"]["conditions"]

        assert condition["status"] == "True"
        assert condition["lastTransitionTime"].startswith("2026-01-01T00:00:00")
        assert condition["observedGeneration"] == 1


class TestSetupTestsMessage:
    """Tests for the setup test condition text."""

    def test_without_warnings(self) -> None:
        """Test the plain success message."""
        assert setup_tests_message([]) == (REASON_SUCCESS, "Setup tests completed successfully")

    def test_with_warnings(self) -> None:
        """Test that warnings are joined into the message."""
        reason, message = setup_tests_message(["a: x", "b: y"])

        assert reason == REASON_SUCCESS_WITH_WARNINGS
        assert message == "Setup tests completed with warnings: a: x; b: y"
