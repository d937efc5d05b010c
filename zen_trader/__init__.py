"""
zen_trader: recurring automated limit orders ("zen mode").

Enrolled users get a signed limit order built on their behalf whenever the
policy allows; takers later submit those orders for on-chain fulfillment.
"""

__version__ = "0.1.0"

from zen_trader.builder import FixedSpreadPricing, OrderBuilder
from zen_trader.config import Settings, get_settings
from zen_trader.engine import ZenEngine, build_engine
from zen_trader.executor import FulfillmentExecutor
from zen_trader.policy import PolicyDecision, default_policy
from zen_trader.scheduler import MonitoringScheduler
from zen_trader.schemas import Enrollment, Order, OrderStatus

__all__ = [
    "FixedSpreadPricing",
    "OrderBuilder",
    "Settings",
    "get_settings",
    "ZenEngine",
    "build_engine",
    "FulfillmentExecutor",
    "PolicyDecision",
    "default_policy",
    "MonitoringScheduler",
    "Enrollment",
    "Order",
    "OrderStatus",
]
