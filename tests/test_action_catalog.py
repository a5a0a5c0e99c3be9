"""
Unit tests for the action catalog.

The catalog is a pure function, so these tests sweep the whole
(state, role, delivery type) domain instead of mocking anything.
"""

import itertools

import pytest

from models.package import DeliveryType, OperatorRole, PackageState
from models.scan_action import ActionType
from modules import action_catalog
from modules.action_catalog import (
    TRANSITIONS,
    is_action_allowed,
    resolve_action_ids,
    resolve_actions,
    role_permissions,
    target_state,
)


ALL_COMBINATIONS = list(itertools.product(PackageState, OperatorRole, DeliveryType))


class TestResolveActions:
    """Test resolve_actions() over the documented domain."""

    def test_rider_in_transit_doorstep(self):
        """In-transit doorstep package scanned by a rider can be delivered, not collected from sender."""
        ids = resolve_action_ids("in_transit", "rider", "doorstep")

        assert "deliver" in ids
        assert "collect_from_sender" not in ids
        assert "give_to_receiver" in ids

    def test_agent_delivery_needs_pickup_point_first(self):
        """Agent deliveries cannot be handed over straight from transit."""
        assert "give_to_receiver" not in resolve_action_ids("in_transit", "rider", "agent")
        assert "give_to_receiver" in resolve_action_ids("delivered", "rider", "agent")

    @pytest.mark.parametrize("state,role,delivery_type", ALL_COMBINATIONS)
    def test_only_documented_edges(self, state, role, delivery_type):
        """Every resolved action is an edge leaving the current state."""
        for descriptor in resolve_actions(state, role, delivery_type):
            action = ActionType(descriptor.action)
            assert state in TRANSITIONS[action]
            assert target_state(action, state) is not None

    @pytest.mark.parametrize("state,role,delivery_type", ALL_COMBINATIONS)
    def test_deterministic(self, state, role, delivery_type):
        first = resolve_actions(state, role, delivery_type)
        second = resolve_actions(state.value, role.value, delivery_type.value)
        assert first == second

    def test_only_permitted_roles_collect(self):
        for role in OperatorRole:
            ids = resolve_action_ids("submitted", role, "doorstep")
            if role in (OperatorRole.WAREHOUSE, OperatorRole.AGENT, OperatorRole.RIDER, OperatorRole.ADMIN):
                assert "collect" in ids
            else:
                assert "collect" not in ids

    def test_client_can_only_confirm_receipt(self):
        assert resolve_action_ids("delivered", "client", "doorstep") == ["confirm_receipt"]
        assert resolve_action_ids("in_transit", "customer", "doorstep") == []

    def test_terminal_states_have_no_actions(self):
        for role in OperatorRole:
            assert resolve_actions("collected", role) == []
            assert resolve_actions("rejected", role) == []
            assert resolve_actions("pending_unpaid", role) == []

    @pytest.mark.parametrize("state,role", [
        ("lost_in_space", "rider"),
        ("in_transit", "pilot"),
        (None, "rider"),
        ("in_transit", None),
        ("", ""),
    ])
    def test_unknown_inputs_resolve_to_empty(self, state, role):
        assert resolve_actions(state, role, "doorstep") == []

    def test_inputs_are_case_insensitive(self):
        assert resolve_action_ids("IN_TRANSIT", "Rider", "DOORSTEP") == resolve_action_ids(
            "in_transit", "rider", "doorstep"
        )

    def test_actions_come_in_display_order(self):
        ids = resolve_action_ids("in_transit", "admin", "doorstep")
        assert ids == ["deliver", "give_to_receiver", "process", "print"]

    def test_descriptors_carry_labels(self):
        descriptors = resolve_actions("submitted", "warehouse", "doorstep")
        labels = {d.action: d.label for d in descriptors}
        assert labels["collect"] == "Collect for Delivery"
        assert all(d.description for d in descriptors)


class TestTransitionHelpers:
    """Test is_action_allowed(), target_state() and get_descriptor()."""

    def test_is_action_allowed(self):
        assert is_action_allowed("collect", "submitted", "rider", "doorstep") is True
        assert is_action_allowed("collect", "in_transit", "rider", "doorstep") is False
        assert is_action_allowed("teleport", "in_transit", "rider", "doorstep") is False

    def test_target_state_for_edges(self):
        assert target_state("collect_from_sender", "pending") == "submitted"
        assert target_state("collect", "submitted") == "in_transit"
        assert target_state("deliver", "in_transit") == "delivered"
        assert target_state("confirm_receipt", "delivered") == "collected"

    def test_side_effect_actions_keep_state(self):
        assert target_state("print", "in_transit") == "in_transit"
        assert target_state("process", "submitted") == "submitted"

    def test_target_state_for_non_edge(self):
        assert target_state("deliver", "pending") is None
        assert target_state("nope", "pending") is None

    def test_confirm_receipt_is_not_bulk(self):
        assert action_catalog.get_descriptor("confirm_receipt").allow_bulk is False
        assert action_catalog.get_descriptor("deliver").allow_bulk is True
        assert action_catalog.get_descriptor("unknown") is None


class TestRolePermissions:
    """Test role_permissions()."""

    def test_rider_permissions(self):
        perms = role_permissions("rider")
        assert perms["can_scan_packages"] is True
        assert perms["can_print_labels"] is False
        assert perms["available_actions"] == ["collect", "deliver", "give_to_receiver"]

    def test_admin_can_do_everything(self):
        perms = role_permissions("admin")
        assert perms["can_view_all_packages"] is True
        assert perms["can_manage_packages"] is True
        assert len(perms["available_actions"]) == len(ActionType)

    def test_unknown_role_gets_client_permissions(self):
        perms = role_permissions("intruder")
        assert perms["role"] == "client"
        assert perms["can_scan_packages"] is False
        assert perms["can_bulk_scan"] is False


class TestBulkRefusal:

    @pytest.mark.parametrize("role,action", [
        ("rider", "deliver"),
        ("rider", "collect"),
        ("agent", "collect_from_sender"),
        ("warehouse", "process"),
        ("admin", "deliver"),
    ])
    def test_allowed(self, role, action):
        assert action_catalog.bulk_refusal(action, role) is None

    @pytest.mark.parametrize("role,action,fragment", [
        ("rider", "process", "may not perform"),
        ("agent", "deliver", "may not perform"),
        ("client", "collect", "may not bulk scan"),
        ("stranger", "collect", "may not bulk scan"),
        ("admin", "confirm_receipt", "cannot be applied in bulk"),
        ("rider", "teleport", "not a known action"),
    ])
    def test_refused(self, role, action, fragment):
        assert fragment in action_catalog.bulk_refusal(action, role)

    def test_every_allowed_pair_is_a_role_action(self):
        for role, action in itertools.product(OperatorRole, ActionType):
            if action_catalog.bulk_refusal(action, role) is None:
                assert action in action_catalog.ROLE_ACTIONS[role]
