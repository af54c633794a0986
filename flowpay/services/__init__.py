from flowpay.services.result import Result
from flowpay.services.sale_state import (
    InvalidTransitionError,
    SaleStatus,
    can_transition,
    map_gateway_status,
    sources_for,
    transition,
)
