from flowpay.models.plan import Plan
from flowpay.models.product import Product
from flowpay.models.purchase import Purchase
from flowpay.models.sale import Sale
from flowpay.models.tenant import Tenant
from flowpay.models.tenant_subscription import TenantSubscription
from flowpay.models.user import User

__all__ = [
    "Tenant",
    "Plan",
    "TenantSubscription",
    "Product",
    "Sale",
    "User",
    "Purchase",
]
