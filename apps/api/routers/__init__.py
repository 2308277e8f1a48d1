"""Routers package."""

from . import (
    health,
    auth,
    billing,
    entitlements,
    subscriptions,
    generations,
    internal,
    webhooks,
)
