"""
Order item state machine.

    pending -> confirmed -> ready -> fulfilled -> completed
                       \\_____________/
    (confirmed may go straight to fulfilled)

cancelled and expired are reachable from every non-terminal status.
completed, cancelled and expired are terminal.

The transition table below is the only place that decides legality; the
repository's status-guarded UPDATE enforces the same decision at storage
level so that concurrent triggers on one item cannot both apply.
"""

import enum
from typing import Dict, Optional, Tuple

from .entities import TERMINAL_ITEM_STATUSES, TransitionConflictError
from .notification_types import NotificationType
from .value_objects import ActorRole, ItemStatus


class LifecycleEvent(str, enum.Enum):
    CONFIRM = "confirm"
    MARK_READY = "mark_ready"
    FULFILL = "fulfill"
    COMPLETE = "complete"
    CANCEL = "cancel"
    EXPIRE = "expire"


_NON_TERMINAL = [status for status in ItemStatus if status not in TERMINAL_ITEM_STATUSES]

TRANSITIONS: Dict[Tuple[ItemStatus, LifecycleEvent], ItemStatus] = {
    (ItemStatus.PENDING, LifecycleEvent.CONFIRM): ItemStatus.CONFIRMED,
    (ItemStatus.CONFIRMED, LifecycleEvent.MARK_READY): ItemStatus.READY,
    (ItemStatus.CONFIRMED, LifecycleEvent.FULFILL): ItemStatus.FULFILLED,
    (ItemStatus.READY, LifecycleEvent.FULFILL): ItemStatus.FULFILLED,
    (ItemStatus.FULFILLED, LifecycleEvent.COMPLETE): ItemStatus.COMPLETED,
}
TRANSITIONS.update({(status, LifecycleEvent.CANCEL): ItemStatus.CANCELLED for status in _NON_TERMINAL})
TRANSITIONS.update({(status, LifecycleEvent.EXPIRE): ItemStatus.EXPIRED for status in _NON_TERMINAL})

# Who may trigger each event (system actors may trigger any of them)
EVENT_ROLES: Dict[LifecycleEvent, frozenset] = {
    LifecycleEvent.CONFIRM: frozenset({ActorRole.VENDOR}),
    LifecycleEvent.MARK_READY: frozenset({ActorRole.VENDOR}),
    LifecycleEvent.FULFILL: frozenset({ActorRole.VENDOR}),
    LifecycleEvent.COMPLETE: frozenset({ActorRole.BUYER}),
    LifecycleEvent.CANCEL: frozenset({ActorRole.BUYER, ActorRole.VENDOR}),
    LifecycleEvent.EXPIRE: frozenset(),
}


def next_status(item_id: str, current: ItemStatus, event: LifecycleEvent) -> ItemStatus:
    """Target status for (current, event), or TransitionConflictError."""
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise TransitionConflictError(item_id, current, event.value)


def can_transition(current: ItemStatus, event: LifecycleEvent) -> bool:
    return (current, event) in TRANSITIONS


def resolve_notification(
    old: ItemStatus,
    new: ItemStatus,
    actor_role: ActorRole,
) -> Optional[NotificationType]:
    """
    Notification type for a completed transition.

    A cancellation notifies the other party: the vendor when the buyer
    cancels, the buyer when the vendor (or the system) cancels.
    """
    if old == new:
        return None
    if new == ItemStatus.CONFIRMED:
        return NotificationType.ORDER_CONFIRMED
    if new == ItemStatus.READY:
        return NotificationType.ORDER_READY
    if new == ItemStatus.FULFILLED:
        return NotificationType.ORDER_FULFILLED
    if new == ItemStatus.COMPLETED:
        return NotificationType.PICKUP_CONFIRMED
    if new == ItemStatus.CANCELLED:
        if actor_role == ActorRole.BUYER:
            return NotificationType.ORDER_CANCELLED_BY_BUYER
        return NotificationType.ORDER_CANCELLED_BY_VENDOR
    if new == ItemStatus.EXPIRED:
        return NotificationType.ORDER_EXPIRED
    return None
