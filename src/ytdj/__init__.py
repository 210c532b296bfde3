"""AI-assisted DJ set engine: generate, segment and regenerate track sequences."""

from ytdj.credits import CheckResult, CreditLedger, InMemoryCreditLedger
from ytdj.errors import (
    EngineError,
    InsufficientCredits,
    LastSegmentError,
    LockedNodeConflict,
    NodeBusy,
    NodeLocked,
    NotFound,
    ProviderError,
    ProviderNotAllowed,
    RegenerationInProgress,
    SegmentedSetsDisabled,
    StaleTarget,
    StructuralChangeBlocked,
)
from ytdj.models import (
    AnchorTrack,
    Constraints,
    DurationMinutes,
    PlaylistNode,
    ReplacedRange,
    SegmentConstraints,
    SegmentRange,
    SetSegment,
    Track,
    TrackCount,
    TransitionQuality,
)
from ytdj.orchestrator import SetEngine
from ytdj.segments import SegmentManager
from ytdj.sequence import PlaylistSequence

__version__ = "0.1.0"

__all__ = [
    "AnchorTrack",
    "CheckResult",
    "Constraints",
    "CreditLedger",
    "DurationMinutes",
    "EngineError",
    "InMemoryCreditLedger",
    "InsufficientCredits",
    "LastSegmentError",
    "LockedNodeConflict",
    "NodeBusy",
    "NodeLocked",
    "NotFound",
    "PlaylistNode",
    "PlaylistSequence",
    "ProviderError",
    "ProviderNotAllowed",
    "RegenerationInProgress",
    "ReplacedRange",
    "SegmentConstraints",
    "SegmentManager",
    "SegmentRange",
    "SegmentedSetsDisabled",
    "SetEngine",
    "SetSegment",
    "StaleTarget",
    "StructuralChangeBlocked",
    "Track",
    "TrackCount",
    "TransitionQuality",
]
