"""API routers package."""

from paygate.api import deps, payments, realtime, webhooks

__all__ = [
    "payments",
    "realtime",
    "webhooks",
    "deps",
]
