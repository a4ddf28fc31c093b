"""Per-route sliding-window rate limiter."""

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable

from accessguard.core.config import RateLimitRule
from accessguard.core.exceptions import StoreUnavailableError
from accessguard.services.counter_store import CounterStore

logger = logging.getLogger("accessguard.ratelimit")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    route: str
    limit: int
    remaining: int
    retry_after: int = 0


class RateLimiter:
    """Counts requests per (client, route) inside a trailing window.

    Each logical route has its own budget; equivalent endpoints share a
    budget by sharing a route name. Rejected requests do not consume a slot.
    When the counter store is unreachable the limiter fails closed.
    """

    def __init__(
        self,
        store: CounterStore,
        rules: Dict[str, RateLimitRule],
        default_rule: str = "global",
        grace_seconds: int = 60,
        whitelist: Iterable[str] = (),
    ):
        if default_rule not in rules:
            raise ValueError(f"Default rate limit rule '{default_rule}' is not configured")
        self.store = store
        self.rules = dict(rules)
        self.default_rule = default_rule
        self.grace_seconds = grace_seconds
        self.whitelist = frozenset(whitelist)

    def rule_for(self, route: str) -> RateLimitRule:
        return self.rules.get(route) or self.rules[self.default_rule]

    def check(self, client_key: str, route: str) -> RateLimitDecision:
        rule = self.rule_for(route)
        if client_key in self.whitelist:
            return RateLimitDecision(True, route, rule.limit, rule.limit)

        try:
            allowed, count, retry_after = self.store.hit(
                f"rl:{route}:{client_key}",
                window_seconds=rule.window_seconds,
                limit=rule.limit,
                ttl_seconds=rule.window_seconds + self.grace_seconds,
            )
        except StoreUnavailableError:
            logger.error("Counter store unavailable; limiting %s on %s", client_key, route)
            return RateLimitDecision(False, route, rule.limit, 0, rule.window_seconds)

        if allowed:
            return RateLimitDecision(True, route, rule.limit, max(rule.limit - count, 0))
        return RateLimitDecision(False, route, rule.limit, 0, max(math.ceil(retry_after), 1))
