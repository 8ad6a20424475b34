"""State machine guards for orders, escrows and ledger transactions.

Uses python-statemachine to enforce legal state transitions at the domain
level. Services instantiate a machine at the entity's persisted status, fire
the event to validate it, and only then issue the conditional UPDATE that
moves the row. An illegal transition raises TransitionNotAllowed before any
SQL runs.

Order transition table:
    PENDING                          -> CONFIRMED  (confirm_payment)
    PENDING | CONFIRMED              -> ACCEPTED   (accept)
    PENDING | CONFIRMED | ACCEPTED   -> PENDING    (reject)
    ACCEPTED                         -> PICKED_UP  (pick_up)
    PICKED_UP                        -> IN_TRANSIT (start_transit)
    PICKED_UP | IN_TRANSIT           -> DELIVERED  (deliver)
    any non-terminal                 -> CANCELLED  (cancel)

Escrow transition table:
    HELD             -> RELEASED  (release)
    HELD | DISPUTED  -> REFUNDED  (refund)
    HELD             -> DISPUTED  (dispute)
    DISPUTED         -> HELD      (resolve_dispute)

Transaction transition table:
    PENDING              -> COMPLETED  (complete)
    PENDING              -> FAILED     (fail)
    COMPLETED            -> REFUNDED   (refund)
    PENDING | COMPLETED  -> REFUNDED   (reverse)
"""

from __future__ import annotations

from statemachine import State, StateMachine


class _GuardMixin:
    """Shared construction and introspection for the ledger's machines."""

    def __init__(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the enum)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.id for event in self.allowed_events]


class OrderStateMachine(_GuardMixin, StateMachine):
    """Delivery lifecycle of a marketplace order.

    Usage:
        sm = OrderStateMachine("ACCEPTED")
        sm.pick_up()
        sm.status  # "PICKED_UP"
    """

    PENDING = State("PENDING", initial=True)
    CONFIRMED = State("CONFIRMED")
    ACCEPTED = State("ACCEPTED")
    PICKED_UP = State("PICKED_UP")
    IN_TRANSIT = State("IN_TRANSIT")
    DELIVERED = State("DELIVERED", final=True)
    CANCELLED = State("CANCELLED", final=True)

    confirm_payment = PENDING.to(CONFIRMED)
    accept = PENDING.to(ACCEPTED) | CONFIRMED.to(ACCEPTED)
    reject = PENDING.to.itself() | CONFIRMED.to(PENDING) | ACCEPTED.to(PENDING)
    pick_up = ACCEPTED.to(PICKED_UP)
    start_transit = PICKED_UP.to(IN_TRANSIT)
    deliver = PICKED_UP.to(DELIVERED) | IN_TRANSIT.to(DELIVERED)
    cancel = (
        PENDING.to(CANCELLED)
        | CONFIRMED.to(CANCELLED)
        | ACCEPTED.to(CANCELLED)
        | PICKED_UP.to(CANCELLED)
        | IN_TRANSIT.to(CANCELLED)
    )

    def __init__(self, current_status: str = "PENDING") -> None:
        super().__init__(current_status)


class EscrowStateMachine(_GuardMixin, StateMachine):
    """Custody of funds held against an order.

    RELEASED and REFUNDED are final: there is no path back to HELD once money
    has left custody, so a second payout cannot be validated.
    """

    HELD = State("HELD", initial=True)
    DISPUTED = State("DISPUTED")
    RELEASED = State("RELEASED", final=True)
    REFUNDED = State("REFUNDED", final=True)

    release = HELD.to(RELEASED)
    refund = HELD.to(REFUNDED) | DISPUTED.to(REFUNDED)
    dispute = HELD.to(DISPUTED)
    resolve_dispute = DISPUTED.to(HELD)

    def __init__(self, current_status: str = "HELD") -> None:
        super().__init__(current_status)


class TransactionStateMachine(_GuardMixin, StateMachine):
    """Status of a single ledger entry."""

    PENDING = State("PENDING", initial=True)
    COMPLETED = State("COMPLETED")
    FAILED = State("FAILED", final=True)
    REFUNDED = State("REFUNDED", final=True)

    complete = PENDING.to(COMPLETED)
    fail = PENDING.to(FAILED)
    refund = COMPLETED.to(REFUNDED)
    reverse = PENDING.to(REFUNDED) | COMPLETED.to(REFUNDED)

    def __init__(self, current_status: str = "PENDING") -> None:
        super().__init__(current_status)


def validate_transition(
    machine_cls: type[_GuardMixin], current_status: str, event_name: str
) -> str:
    """Validate a state transition and return the new status.

    Creates a temporary machine at `current_status`, fires the named event,
    and returns the resulting status string.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = machine_cls(current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status
