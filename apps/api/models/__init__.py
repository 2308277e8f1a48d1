"""Models package."""

from .user import User
from .ledger_entry import LedgerEntry
from .subscription import Subscription
from .subscription_usage import SubscriptionUsage
from .generation import Generation
from .order import Order
from .system_config import SystemConfig
