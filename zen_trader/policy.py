"""
Policy evaluation - decides whether an enrollment should get a new order now.

Policies are pure: no I/O, no mutation, no exceptions for well-formed input.
A malformed enrollment yields NOT_EVALUABLE so the scheduler can tell
"nothing to do" apart from "cannot decide".
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from enum import Enum

from .errors import DataError
from .schemas import BalanceSnapshot, Enrollment, MarketSnapshot, ZenPreferences

logger = logging.getLogger(__name__)


class PolicyDecision(str, Enum):
    ACT = "act"
    HOLD = "hold"
    NOT_EVALUABLE = "not_evaluable"


class Policy(ABC):
    """Base for pluggable order-creation rules."""

    def evaluate(
        self,
        enrollment: Enrollment,
        market: MarketSnapshot,
        balance: BalanceSnapshot,
        now: datetime,
    ) -> PolicyDecision:
        try:
            prefs = enrollment.parse_preferences()
        except DataError as e:
            logger.debug(f"Enrollment {enrollment.user_address} not evaluable: {e}")
            return PolicyDecision.NOT_EVALUABLE
        return self.decide(enrollment, prefs, market, balance, now)

    @abstractmethod
    def decide(
        self,
        enrollment: Enrollment,
        prefs: ZenPreferences,
        market: MarketSnapshot,
        balance: BalanceSnapshot,
        now: datetime,
    ) -> PolicyDecision:
        ...


class IntervalPolicy(Policy):
    """Act when the minimum window has passed since the last order."""

    def __init__(self, window: timedelta):
        self.window = window

    def decide(self, enrollment, prefs, market, balance, now) -> PolicyDecision:
        if enrollment.last_checked_at is None:
            return PolicyDecision.ACT
        if now - enrollment.last_checked_at > self.window:
            return PolicyDecision.ACT
        return PolicyDecision.HOLD


class BalanceThresholdPolicy(Policy):
    """
    Opt-in balance floor. Without ``min_balance`` in the preferences this
    always acts; with it, hold while the maker cannot fund the order or sits
    below the floor.
    """

    def decide(self, enrollment, prefs, market, balance, now) -> PolicyDecision:
        if prefs.min_balance is None:
            return PolicyDecision.ACT
        if balance.token != prefs.maker_token:
            return PolicyDecision.HOLD
        floor = max(prefs.amount, prefs.min_balance or 0)
        if balance.amount < floor:
            return PolicyDecision.HOLD
        return PolicyDecision.ACT


class PriceBandPolicy(Policy):
    """Act only while the maker token's price sits inside the configured band."""

    def decide(self, enrollment, prefs, market, balance, now) -> PolicyDecision:
        if prefs.min_price is None and prefs.max_price is None:
            return PolicyDecision.ACT

        price = market.prices.get(prefs.maker_token)
        if price is None:
            return PolicyDecision.HOLD
        if prefs.min_price is not None and price < prefs.min_price:
            return PolicyDecision.HOLD
        if prefs.max_price is not None and price > prefs.max_price:
            return PolicyDecision.HOLD
        return PolicyDecision.ACT


class AllOfPolicy(Policy):
    """Act only if every member policy acts."""

    def __init__(self, *policies: Policy):
        self.policies = policies

    def decide(self, enrollment, prefs, market, balance, now) -> PolicyDecision:
        for policy in self.policies:
            decision = policy.decide(enrollment, prefs, market, balance, now)
            if decision != PolicyDecision.ACT:
                return decision
        return PolicyDecision.ACT


def default_policy(window_seconds: float) -> Policy:
    return AllOfPolicy(
        IntervalPolicy(timedelta(seconds=window_seconds)),
        BalanceThresholdPolicy(),
        PriceBandPolicy(),
    )
