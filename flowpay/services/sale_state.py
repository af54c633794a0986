from enum import Enum


class SaleStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CANCELLED = "cancelled"
    FAILED = "failed"
    REFUNDED = "refunded"


# APPROVED has no outgoing edges: once paid, a sale never reverts.
VALID_TRANSITIONS = {
    SaleStatus.PENDING: [SaleStatus.APPROVED, SaleStatus.CANCELLED, SaleStatus.FAILED],
    SaleStatus.APPROVED: [],
    SaleStatus.CANCELLED: [],
    SaleStatus.FAILED: [],
    SaleStatus.REFUNDED: [],
}

# Gateway payment statuses (Mercado Pago) mapped to the sale status they drive.
# "rejected" is informational: the buyer may retry on the same preference.
GATEWAY_STATUS_MAP = {
    "approved": SaleStatus.APPROVED,
    "cancelled": SaleStatus.CANCELLED,
    "expired": SaleStatus.CANCELLED,
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: SaleStatus, to_state: SaleStatus):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid sale transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: SaleStatus, to_state: SaleStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: SaleStatus, to_state: SaleStatus) -> SaleStatus:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def sources_for(to_state: SaleStatus) -> list[SaleStatus]:
    """States from which `to_state` may be reached; used to build conditional updates."""
    return [state for state, targets in VALID_TRANSITIONS.items() if to_state in targets]


def is_terminal(state: SaleStatus) -> bool:
    return not VALID_TRANSITIONS.get(state)


def map_gateway_status(gateway_status: str | None) -> SaleStatus | None:
    """Sale status a gateway status drives, or None when it is informational only."""
    if not gateway_status:
        return None
    return GATEWAY_STATUS_MAP.get(gateway_status.lower())
