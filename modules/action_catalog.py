"""
Action catalog: the single source of truth for legal scan actions.

resolve_actions(state, role, delivery_type) answers "what may this operator
do to this package right now?". It is a pure function: no I/O, deterministic,
and total over its inputs. Unknown states, roles or actions resolve to the
empty set instead of raising.

Three tables drive it:

    TRANSITIONS       - the lifecycle edges each action may take
    ROLE_ACTIONS      - which actions each role may trigger at all
    DIRECT_HANDOVER   - delivery types where a rider may hand an in-transit
                        package straight to the receiver

State machine:
    pending_unpaid -> pending -> submitted -> in_transit -> (delivered | rejected)

    collect_from_sender   pending     -> submitted
    collect               submitted   -> in_transit
    deliver               in_transit  -> delivered
    give_to_receiver      in_transit  -> collected   (direct-handover types only)
                          delivered   -> collected
    confirm_receipt       delivered   -> collected
    process, print        no state change
"""

from __future__ import annotations

from typing import Dict, Any, List, Optional, Tuple, Union

from models.package import DeliveryType, OperatorRole, PackageState
from models.scan_action import ActionDescriptor, ActionType


StateLike = Union[PackageState, str, None]
RoleLike = Union[OperatorRole, str, None]
DeliveryLike = Union[DeliveryType, str, None]
ActionLike = Union[ActionType, str, None]


# Target state per (action, from-state). None as target means "no state change".
TRANSITIONS: Dict[ActionType, Dict[PackageState, Optional[PackageState]]] = {
    ActionType.COLLECT_FROM_SENDER: {
        PackageState.PENDING: PackageState.SUBMITTED,
    },
    ActionType.COLLECT: {
        PackageState.SUBMITTED: PackageState.IN_TRANSIT,
    },
    ActionType.DELIVER: {
        PackageState.IN_TRANSIT: PackageState.DELIVERED,
    },
    ActionType.GIVE_TO_RECEIVER: {
        PackageState.IN_TRANSIT: PackageState.COLLECTED,
        PackageState.DELIVERED: PackageState.COLLECTED,
    },
    ActionType.CONFIRM_RECEIPT: {
        PackageState.DELIVERED: PackageState.COLLECTED,
    },
    ActionType.PROCESS: {
        PackageState.SUBMITTED: None,
        PackageState.IN_TRANSIT: None,
    },
    ActionType.PRINT: {
        PackageState.PENDING: None,
        PackageState.SUBMITTED: None,
        PackageState.IN_TRANSIT: None,
        PackageState.DELIVERED: None,
    },
}

ROLE_ACTIONS: Dict[OperatorRole, Tuple[ActionType, ...]] = {
    OperatorRole.CLIENT: (ActionType.CONFIRM_RECEIPT,),
    OperatorRole.CUSTOMER: (ActionType.CONFIRM_RECEIPT,),
    OperatorRole.AGENT: (
        ActionType.COLLECT_FROM_SENDER,
        ActionType.COLLECT,
        ActionType.GIVE_TO_RECEIVER,
        ActionType.PRINT,
    ),
    OperatorRole.RIDER: (
        ActionType.COLLECT,
        ActionType.DELIVER,
        ActionType.GIVE_TO_RECEIVER,
    ),
    OperatorRole.WAREHOUSE: (
        ActionType.COLLECT,
        ActionType.PROCESS,
        ActionType.PRINT,
    ),
    OperatorRole.ADMIN: tuple(ActionType),
}

# Delivery types where the rider carries the package to the receiver, so a
# handover can happen straight from in_transit. Agent deliveries must reach
# the pickup point (delivered) first.
DIRECT_HANDOVER = frozenset({
    DeliveryType.DOORSTEP,
    DeliveryType.FRAGILE,
    DeliveryType.COLLECTION,
})

# Display order of actions in the UI
ACTION_ORDER: Tuple[ActionType, ...] = (
    ActionType.COLLECT_FROM_SENDER,
    ActionType.COLLECT,
    ActionType.DELIVER,
    ActionType.GIVE_TO_RECEIVER,
    ActionType.CONFIRM_RECEIPT,
    ActionType.PROCESS,
    ActionType.PRINT,
)

DESCRIPTORS: Dict[ActionType, ActionDescriptor] = {
    ActionType.COLLECT_FROM_SENDER: ActionDescriptor(
        action=ActionType.COLLECT_FROM_SENDER.value,
        label="Collect from Sender",
        description="Confirm package pickup from sender (Pending → Submitted)",
    ),
    ActionType.COLLECT: ActionDescriptor(
        action=ActionType.COLLECT.value,
        label="Collect for Delivery",
        description="Pick up package for delivery (Submitted → In Transit)",
    ),
    ActionType.DELIVER: ActionDescriptor(
        action=ActionType.DELIVER.value,
        label="Mark as Delivered",
        description="Mark package as delivered to destination (In Transit → Delivered)",
    ),
    ActionType.GIVE_TO_RECEIVER: ActionDescriptor(
        action=ActionType.GIVE_TO_RECEIVER.value,
        label="Give to Receiver",
        description="Hand package directly to recipient (In Transit/Delivered → Collected)",
    ),
    ActionType.CONFIRM_RECEIPT: ActionDescriptor(
        action=ActionType.CONFIRM_RECEIPT.value,
        label="Confirm Receipt",
        description="Confirm you received your package (Delivered → Collected)",
        allow_bulk=False,
    ),
    ActionType.PROCESS: ActionDescriptor(
        action=ActionType.PROCESS.value,
        label="Process Package",
        description="Process package at the warehouse (no state change)",
    ),
    ActionType.PRINT: ActionDescriptor(
        action=ActionType.PRINT.value,
        label="Print Label",
        description="Print shipping label or receipt (no state change)",
    ),
}


def _is_edge(action: ActionType, state: PackageState, delivery_type: Optional[DeliveryType]) -> bool:
    edges = TRANSITIONS.get(action, {})
    if state not in edges:
        return False
    if action == ActionType.GIVE_TO_RECEIVER and state == PackageState.IN_TRANSIT:
        return delivery_type in DIRECT_HANDOVER
    return True


def resolve_actions(
    state: StateLike,
    role: RoleLike,
    delivery_type: DeliveryLike = None,
) -> List[ActionDescriptor]:
    """
    Resolve the legal next actions for a package.

    Args:
        state: Current lifecycle state
        role: Operator role
        delivery_type: Package delivery type (affects in-transit handover)

    Returns:
        Ordered list of ActionDescriptor; empty for unknown state or role
    """
    parsed_state = PackageState.parse(state) if state is not None else None
    parsed_role = OperatorRole.parse(role) if role is not None else None
    if parsed_state is None or parsed_role is None:
        return []

    parsed_delivery = DeliveryType.parse(delivery_type) if delivery_type is not None else None
    permitted = ROLE_ACTIONS.get(parsed_role, ())

    return [
        DESCRIPTORS[action]
        for action in ACTION_ORDER
        if action in permitted and _is_edge(action, parsed_state, parsed_delivery)
    ]


def resolve_action_ids(state: StateLike, role: RoleLike, delivery_type: DeliveryLike = None) -> List[str]:
    """Same as resolve_actions(), returning only the action ids."""
    return [d.action for d in resolve_actions(state, role, delivery_type)]


def is_action_allowed(
    action: ActionLike,
    state: StateLike,
    role: RoleLike,
    delivery_type: DeliveryLike = None,
) -> bool:
    """Local precondition check used before any network call."""
    parsed_action = ActionType.parse(action) if action is not None else None
    if parsed_action is None:
        return False
    return parsed_action.value in resolve_action_ids(state, role, delivery_type)


def target_state(action: ActionLike, state: StateLike) -> Optional[str]:
    """
    State a package will be in after a confirmed action.

    Used as the optimistic echo when the server confirms an action without
    returning the package. Side-effect-only actions keep the current state.

    Returns:
        Target state value, or None if the action is not an edge from state
    """
    parsed_action = ActionType.parse(action) if action is not None else None
    parsed_state = PackageState.parse(state) if state is not None else None
    if parsed_action is None or parsed_state is None:
        return None
    edges = TRANSITIONS.get(parsed_action, {})
    if parsed_state not in edges:
        return None
    target = edges[parsed_state]
    return (target or parsed_state).value


def get_descriptor(action: ActionLike) -> Optional[ActionDescriptor]:
    parsed_action = ActionType.parse(action) if action is not None else None
    return DESCRIPTORS.get(parsed_action) if parsed_action else None


def role_permissions(role: RoleLike) -> Dict[str, Any]:
    """
    Summarize what a role may do, for the UI to enable or hide features.

    Unknown roles get the client's (read-only) permissions.
    """
    parsed_role = OperatorRole.parse(role) if role is not None else None
    if parsed_role is None:
        parsed_role = OperatorRole.CLIENT

    actions = ROLE_ACTIONS.get(parsed_role, ())
    staff = parsed_role not in (OperatorRole.CLIENT, OperatorRole.CUSTOMER)

    return {
        "role": parsed_role.value,
        "can_scan_packages": staff,
        "can_print_labels": ActionType.PRINT in actions,
        "can_manage_packages": parsed_role in (OperatorRole.WAREHOUSE, OperatorRole.ADMIN),
        "can_view_all_packages": parsed_role == OperatorRole.ADMIN,
        "can_bulk_scan": staff,
        "available_actions": [a.value for a in ACTION_ORDER if a in actions],
    }


def bulk_refusal(action: ActionLike, role: RoleLike) -> Optional[str]:
    """
    Why this role may not apply this action in bulk, or None if it may.

    Checked before any code of a batch is sent or queued, so online and
    offline batches are refused alike.
    """
    descriptor = get_descriptor(action)
    if descriptor is None:
        return f"'{action}' is not a known action"
    if not descriptor.allow_bulk:
        return f"'{descriptor.label}' cannot be applied in bulk"

    parsed_role = OperatorRole.parse(role) if role is not None else None
    if parsed_role is None or not role_permissions(parsed_role)["can_bulk_scan"]:
        return f"Role '{role}' may not bulk scan"
    if ActionType.parse(action) not in ROLE_ACTIONS.get(parsed_role, ()):
        return f"Role '{parsed_role.value}' may not perform '{descriptor.label}'"
    return None
