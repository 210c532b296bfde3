"""Credit ledger gate for generation calls.

Every generation call is checked against the caller's balance before the
provider is contacted, and a credit is consumed only after a successful
result has been merged. Consumption is a conditional decrement: it can fail
(returning False) but never drives a balance below zero.

Tier configuration:
- free: 5 credits/month, openai only, no segmented sets
- pro:  50 credits/month, openai/claude/gemini, segmented sets
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierConfig:
    """Entitlements attached to a subscription tier."""

    monthly_credits: int
    allowed_providers: tuple[str, ...]
    has_segmented_sets: bool


TIER_CONFIG: dict[str, TierConfig] = {
    "free": TierConfig(
        monthly_credits=5,
        allowed_providers=("openai",),
        has_segmented_sets=False,
    ),
    "pro": TierConfig(
        monthly_credits=50,
        allowed_providers=("openai", "claude", "gemini"),
        has_segmented_sets=True,
    ),
}


def tier_config(tier: str) -> TierConfig:
    if tier not in TIER_CONFIG:
        raise ValueError(f"Unknown tier '{tier}'. Available: {', '.join(TIER_CONFIG)}")
    return TIER_CONFIG[tier]


@dataclass(frozen=True)
class CheckResult:
    """Outcome of a pre-call credit check."""

    allowed: bool
    credits_remaining: int
    tier: str
    reason: str | None = None

    @property
    def config(self) -> TierConfig:
        return tier_config(self.tier)


@dataclass
class LedgerEntry:
    """One identity's balance."""

    tier: str
    credits_remaining: int
    reset_at: datetime


@dataclass(frozen=True)
class CreditTransaction:
    """Audit row for every change to a balance."""

    identity: str
    amount: int
    reason: str
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class CreditLedger(Protocol):
    """Interface the engine consults around every generation call."""

    def check(self, identity: str) -> CheckResult:
        """Read the balance and entitlements for ``identity``."""
        ...

    def consume(self, identity: str) -> bool:
        """Conditionally decrement by one; False if the balance was zero."""
        ...


class InMemoryCreditLedger:
    """Thread-safe ledger kept in process memory.

    Unknown identities are provisioned on first sight as free tier with
    the free monthly allowance. Persisting entries is left to the
    surrounding system.
    """

    RESET_PERIOD = timedelta(days=30)

    def __init__(self, default_tier: str = "free") -> None:
        tier_config(default_tier)
        self._default_tier = default_tier
        self._entries: dict[str, LedgerEntry] = {}
        self._transactions: list[CreditTransaction] = []
        self._lock = threading.Lock()

    def _entry(self, identity: str) -> LedgerEntry:
        """Get or create the entry. Caller must hold ``_lock``."""
        entry = self._entries.get(identity)
        if entry is None:
            config = tier_config(self._default_tier)
            entry = LedgerEntry(
                tier=self._default_tier,
                credits_remaining=config.monthly_credits,
                reset_at=datetime.now() + self.RESET_PERIOD,
            )
            self._entries[identity] = entry
            self._log(identity, config.monthly_credits, "initial", {"tier": self._default_tier})
        return entry

    def _log(self, identity: str, amount: int, reason: str, metadata: dict[str, Any] | None = None) -> None:
        self._transactions.append(
            CreditTransaction(
                identity=identity,
                amount=amount,
                reason=reason,
                created_at=datetime.now(),
                metadata=metadata or {},
            )
        )

    def provision(self, identity: str, tier: str, credits: int | None = None) -> LedgerEntry:
        """Create or overwrite an identity's entry."""
        config = tier_config(tier)
        if credits is not None and credits < 0:
            raise ValueError(f"Credits must be >= 0 (got {credits})")
        with self._lock:
            entry = LedgerEntry(
                tier=tier,
                credits_remaining=config.monthly_credits if credits is None else credits,
                reset_at=datetime.now() + self.RESET_PERIOD,
            )
            self._entries[identity] = entry
            self._log(identity, entry.credits_remaining, "provision", {"tier": tier})
            return entry

    def check(self, identity: str) -> CheckResult:
        with self._lock:
            entry = self._entry(identity)
            if entry.credits_remaining <= 0:
                return CheckResult(
                    allowed=False,
                    credits_remaining=0,
                    tier=entry.tier,
                    reason="no_credits",
                )
            return CheckResult(
                allowed=True,
                credits_remaining=entry.credits_remaining,
                tier=entry.tier,
            )

    def consume(self, identity: str) -> bool:
        with self._lock:
            entry = self._entry(identity)
            if entry.credits_remaining <= 0:
                logger.warning(f"Credit consumption refused for {identity}: balance is zero")
                return False
            entry.credits_remaining -= 1
            self._log(identity, -1, "generation")
            logger.info(f"Consumed 1 credit for {identity} ({entry.credits_remaining} left)")
            return True

    def add_credits(
        self,
        identity: str,
        amount: int,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Grant ``amount`` credits and return the new balance."""
        if amount <= 0:
            raise ValueError(f"Amount must be > 0 (got {amount})")
        with self._lock:
            entry = self._entry(identity)
            entry.credits_remaining += amount
            self._log(identity, amount, reason, metadata)
            return entry.credits_remaining

    def reset_monthly_credits(self, identity: str) -> int:
        """Restore the tier allowance (called on subscription renewal)."""
        with self._lock:
            entry = self._entry(identity)
            previous = entry.credits_remaining
            entry.credits_remaining = tier_config(entry.tier).monthly_credits
            entry.reset_at = datetime.now() + self.RESET_PERIOD
            self._log(
                identity,
                entry.credits_remaining,
                "monthly_reset",
                {"tier": entry.tier, "previous_credits": previous},
            )
            return entry.credits_remaining

    def set_tier(self, identity: str, tier: str) -> LedgerEntry:
        """Upgrade or downgrade an identity.

        Upgrading grants the new tier's full allowance. Downgrading keeps the
        remaining credits, capped at the new tier's allowance.
        """
        config = tier_config(tier)
        with self._lock:
            entry = self._entry(identity)
            previous = entry.credits_remaining
            upgrading = config.monthly_credits > tier_config(entry.tier).monthly_credits
            entry.tier = tier
            if upgrading:
                entry.credits_remaining = config.monthly_credits
                entry.reset_at = datetime.now() + self.RESET_PERIOD
                self._log(identity, config.monthly_credits, f"upgrade_to_{tier}")
            else:
                entry.credits_remaining = min(previous, config.monthly_credits)
                self._log(
                    identity,
                    0,
                    f"downgrade_to_{tier}",
                    {"previous_credits": previous, "capped_credits": entry.credits_remaining},
                )
            return entry

    def entry(self, identity: str) -> LedgerEntry:
        with self._lock:
            entry = self._entry(identity)
            return LedgerEntry(entry.tier, entry.credits_remaining, entry.reset_at)

    def history(self, identity: str, limit: int = 20) -> list[CreditTransaction]:
        """Most recent transactions first."""
        with self._lock:
            rows = [t for t in self._transactions if t.identity == identity]
        return list(reversed(rows))[:limit]


def _check_protocol() -> CreditLedger:
    return InMemoryCreditLedger()
