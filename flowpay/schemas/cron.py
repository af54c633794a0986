from pydantic import BaseModel


class SubscriptionSweepResponse(BaseModel):
    success: bool
    purchases_expired: int
    users_kicked: int
    tenants_deactivated: int


class NotificationSweepResponse(BaseModel):
    success: bool
    notifications_sent: int


class CleanupResponse(BaseModel):
    success: bool
    deleted_count: int
