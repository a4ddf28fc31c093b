"""IP ban registry fed by sustained rate-limit violations.

Escalation policy: each time an IP crosses the violation threshold inside the
violation interval it commits one more *offense*. The n-th offense bans for
``ttl_tiers[n - 1]`` seconds (the last tier repeats). Offenses are remembered
for ``offense_memory_seconds``. Refreshing an active ban never shortens it.
"""

import logging
import math
from dataclasses import dataclass, asdict
from typing import Iterable, List, Optional, Sequence

from accessguard.core.clock import Clock, system_clock
from accessguard.services.counter_store import CounterStore

logger = logging.getLogger("accessguard.ratelimit")

ENTRY_PREFIX = "ban:entry:"
VIOLATIONS_PREFIX = "ban:violations:"
OFFENSES_PREFIX = "ban:offenses:"


@dataclass(frozen=True)
class BanEntry:
    ip: str
    banned_at: float
    ttl_seconds: int
    violation_count: int
    offense: int = 1

    @property
    def expires_at(self) -> float:
        return self.banned_at + self.ttl_seconds

    def ttl_remaining(self, now: float) -> float:
        return max(self.expires_at - now, 0.0)


class BanList:
    """Ban state lives in the counter store; entries expire with their TTL."""

    def __init__(
        self,
        store: CounterStore,
        clock: Clock = system_clock,
        threshold: int = 10,
        interval_seconds: int = 3600,
        ttl_tiers: Sequence[int] = (3600,),
        offense_memory_seconds: int = 7 * 24 * 3600,
        whitelist: Iterable[str] = (),
    ):
        if not ttl_tiers:
            raise ValueError("At least one ban TTL tier is required")
        self.store = store
        self.clock = clock
        self.threshold = threshold
        self.interval_seconds = interval_seconds
        self.ttl_tiers = list(ttl_tiers)
        self.offense_memory_seconds = offense_memory_seconds
        self.whitelist = frozenset(whitelist)

    def get(self, ip: str) -> Optional[BanEntry]:
        """Active ban for ``ip``, or None once it has run out."""
        data = self.store.get_json(ENTRY_PREFIX + ip)
        if not data:
            return None
        entry = BanEntry(**data)
        if entry.ttl_remaining(self.clock()) <= 0:
            return None
        return entry

    def is_banned(self, ip: str) -> bool:
        if ip in self.whitelist:
            return False
        return self.get(ip) is not None

    def ttl_for_offense(self, offense: int) -> int:
        return self.ttl_tiers[min(max(offense, 1), len(self.ttl_tiers)) - 1]

    def record_violation(self, ip: str) -> Optional[BanEntry]:
        """Count one rate-limit violation; returns the ban if this one triggered it."""
        if ip in self.whitelist:
            return None

        violations = self.store.incr(VIOLATIONS_PREFIX + ip, self.interval_seconds)
        # Only the increment that lands exactly on the threshold bans; concurrent
        # violations past it belong to the same offense.
        if violations != self.threshold:
            return None

        offense = self.store.incr(OFFENSES_PREFIX + ip, self.offense_memory_seconds)
        now = self.clock()
        expires_at = now + self.ttl_for_offense(offense)
        current = self.get(ip)
        if current is not None:
            expires_at = max(expires_at, current.expires_at)

        entry = BanEntry(
            ip=ip,
            banned_at=now,
            ttl_seconds=math.ceil(expires_at - now),
            violation_count=violations,
            offense=offense,
        )
        self.store.set_json(ENTRY_PREFIX + ip, asdict(entry), entry.ttl_seconds)
        self.store.delete(VIOLATIONS_PREFIX + ip)
        logger.warning(
            "IP %s banned for %ss after %d rate limit violations (offense #%d)",
            ip, entry.ttl_seconds, violations, offense,
        )
        return entry

    def list_active(self) -> List[BanEntry]:
        """Active bans, longest remaining first."""
        now = self.clock()
        entries = []
        for key in self.store.keys(ENTRY_PREFIX):
            entry = self.get(key[len(ENTRY_PREFIX):])
            if entry is not None:
                entries.append(entry)
        return sorted(entries, key=lambda e: e.ttl_remaining(now), reverse=True)

    def unban(self, ip: str) -> bool:
        """Clear the ban and pending violations for ``ip``.

        The offense count is kept so a relapse still escalates.
        """
        existed = self.get(ip) is not None
        self.store.delete(ENTRY_PREFIX + ip, VIOLATIONS_PREFIX + ip)
        if existed:
            logger.info("IP %s unbanned", ip)
        return existed

    def unban_all(self) -> List[str]:
        """Clear every active ban. Returns the unbanned IPs."""
        ips = [entry.ip for entry in self.list_active()]
        for ip in ips:
            self.store.delete(ENTRY_PREFIX + ip, VIOLATIONS_PREFIX + ip)
        return ips
