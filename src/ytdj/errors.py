"""Typed errors raised by the set engine.

Every recoverable failure is an ``EngineError`` subclass with a stable
``kind`` string so callers (HTTP layer, CLI) can map it without parsing
messages. Malformed index ranges are caller bugs and raise ``IndexError``
instead.
"""


class EngineError(Exception):
    """Base class for all recoverable engine failures."""

    kind = "engine_error"


class InsufficientCredits(EngineError):
    """Raised when the credit gate refuses a generation call."""

    kind = "insufficient_credits"

    def __init__(
        self,
        identity: str,
        credits_remaining: int = 0,
        tier: str | None = None,
        reason: str | None = "no_credits",
    ) -> None:
        super().__init__(f"No credits remaining for {identity}")
        self.identity = identity
        self.credits_remaining = credits_remaining
        self.tier = tier
        self.reason = reason

    def __str__(self) -> str:
        return (
            f"{self.args[0]} "
            f"(tier={self.tier}, remaining={self.credits_remaining}, reason={self.reason})"
        )


class ProviderError(EngineError):
    """Raised when the external track provider fails or times out.

    Never retried by the engine; ``provider`` names the collaborator that
    failed and the message carries the underlying error text.
    """

    kind = "provider_error"

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider

    def __str__(self) -> str:
        if self.provider:
            return f"{self.provider}: {self.args[0]}"
        return str(self.args[0])


class ProviderNotAllowed(EngineError):
    """Raised when the caller's tier may not use the configured provider."""

    kind = "provider_not_allowed"

    def __init__(self, provider: str, tier: str) -> None:
        super().__init__(f"Provider '{provider}' is not available on the {tier} tier")
        self.provider = provider
        self.tier = tier


class NotFound(EngineError):
    """Raised when a node or segment id does not exist."""

    kind = "not_found"

    def __init__(self, what: str, target_id: str) -> None:
        super().__init__(f"{what} '{target_id}' not found")
        self.what = what
        self.target_id = target_id


class NodeLocked(EngineError):
    """Raised when an operation targets a node whose lock forbids it."""

    kind = "node_locked"

    def __init__(self, node_id: str, locked_by: str | None = None) -> None:
        super().__init__(f"Node '{node_id}' is locked")
        self.node_id = node_id
        self.locked_by = locked_by


class NodeBusy(EngineError):
    """Raised when lock/unlock hits a node with a regeneration in flight."""

    kind = "node_busy"

    def __init__(self, node_id: str) -> None:
        super().__init__(f"Node '{node_id}' is being regenerated")
        self.node_id = node_id


class LockedNodeConflict(EngineError):
    """Raised when replace_range would overwrite locked nodes."""

    kind = "locked_node_conflict"

    def __init__(self, start_index: int, end_index: int, locked_ids: list[str]) -> None:
        super().__init__(
            f"Range [{start_index}, {end_index}] contains locked nodes: {', '.join(locked_ids)}"
        )
        self.start_index = start_index
        self.end_index = end_index
        self.locked_ids = locked_ids


class RegenerationInProgress(EngineError):
    """Raised when a regeneration for the same target is already pending."""

    kind = "regeneration_in_progress"

    def __init__(self, target_id: str) -> None:
        super().__init__(f"A regeneration for '{target_id}' is already in flight")
        self.target_id = target_id


class StructuralChangeBlocked(EngineError):
    """Raised when a structural change races an in-flight regeneration."""

    kind = "structural_change_blocked"

    def __init__(self, operation: str, pending: list[str]) -> None:
        super().__init__(
            f"Cannot {operation} while regenerations are pending: {', '.join(pending)}"
        )
        self.operation = operation
        self.pending = pending


class StaleTarget(EngineError):
    """Raised when a generation result can no longer be merged.

    The provider call succeeded, so the credit was consumed; the result is
    discarded and not refunded.
    """

    kind = "stale_target"

    def __init__(self, target_id: str, detail: str = "", credit_consumed: bool = True) -> None:
        message = f"Target '{target_id}' changed while its regeneration was in flight"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.target_id = target_id
        self.credit_consumed = credit_consumed


class LastSegmentError(EngineError):
    """Raised when removing the only remaining segment."""

    kind = "last_segment"

    def __init__(self, segment_id: str) -> None:
        super().__init__(f"Segment '{segment_id}' is the last segment and cannot be removed")
        self.segment_id = segment_id


class SegmentedSetsDisabled(EngineError):
    """Raised when the caller's tier is not entitled to segmented sets."""

    kind = "segmented_sets_disabled"

    def __init__(self, tier: str) -> None:
        super().__init__(f"Segmented sets are not available on the {tier} tier")
        self.tier = tier
