"""Conflict resolution between local and remote copies of a record.

Resolution is a pure function of the two versioned payloads and the policy:
no clock, no randomness. Deletions and PHI ties are surfaced for manual
review rather than resolved destructively.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from omnicare_sync.models.sync import (
    ConflictResolution,
    ConflictType,
    DataClassification,
    ManualReview,
    ResolutionWinner,
    VersionedPayload,
)

# Fields owned by the server; a merge always keeps the remote value
SERVER_MANAGED_FIELDS = ("meta",)

ResolveOutcome = Union[ConflictResolution, ManualReview]


class ConflictStrategy(str, Enum):
    """Conflict resolution strategies."""

    LAST_WRITE_WINS = "last_write_wins"
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    MERGE = "merge"
    MANUAL = "manual"


class TieBreak(str, Enum):
    """What to do when last-writer-wins sees equal versions."""

    LOCAL = "local"
    REMOTE = "remote"
    MERGE = "merge"
    MANUAL = "manual"


def _default_tie_breaks() -> Dict[DataClassification, TieBreak]:
    return {
        DataClassification.PHI: TieBreak.MANUAL,
        DataClassification.SENSITIVE: TieBreak.REMOTE,
        DataClassification.GENERAL: TieBreak.REMOTE,
    }


@dataclass
class ConflictPolicy:
    """Configurable resolution policy."""

    strategy: ConflictStrategy = ConflictStrategy.LAST_WRITE_WINS
    tie_breaks: Dict[DataClassification, TieBreak] = field(default_factory=_default_tie_breaks)
    manual_on_delete: bool = True
    allow_phi_merge: bool = False


class ConflictResolver:
    """Decide which copy of a conflicted record wins."""

    def __init__(self, policy: Optional[ConflictPolicy] = None) -> None:
        self.policy = policy or ConflictPolicy()

    @staticmethod
    def classify(local: VersionedPayload, remote: VersionedPayload) -> ConflictType:
        """A conflict involving a deletion on either side is a delete conflict."""
        if local.deleted or remote.deleted:
            return ConflictType.DELETE
        return ConflictType.UPDATE

    def resolve(
        self,
        local: VersionedPayload,
        remote: VersionedPayload,
        policy: Optional[ConflictPolicy] = None,
    ) -> ResolveOutcome:
        """Resolve a conflict, or ask for manual review."""
        policy = policy or self.policy
        conflict_type = self.classify(local, remote)
        classification = _stricter(local.classification, remote.classification)

        if conflict_type == ConflictType.DELETE and policy.manual_on_delete:
            return ManualReview(
                conflict_type=conflict_type,
                reason="Deletion conflicts require manual resolution",
            )

        strategy = policy.strategy
        if strategy == ConflictStrategy.MANUAL:
            return ManualReview(conflict_type=conflict_type, reason="Manual strategy")
        if strategy == ConflictStrategy.LOCAL_WINS:
            return self._decide(ResolutionWinner.LOCAL, strategy, "Local changes take precedence")
        if strategy == ConflictStrategy.REMOTE_WINS:
            return self._decide(ResolutionWinner.REMOTE, strategy, "Remote changes take precedence")
        if strategy == ConflictStrategy.MERGE:
            return self._merge(local, remote, classification, policy, conflict_type)

        # Last writer wins by version number
        local_version = local.version or 0
        remote_version = remote.version or 0
        if local_version > remote_version:
            return self._decide(ResolutionWinner.LOCAL, strategy, "Local version is newer")
        if remote_version > local_version:
            return self._decide(ResolutionWinner.REMOTE, strategy, "Remote version is newer")

        tie_break = policy.tie_breaks.get(classification, TieBreak.MANUAL)
        if tie_break == TieBreak.LOCAL:
            return self._decide(ResolutionWinner.LOCAL, strategy, "Version tie, local preferred")
        if tie_break == TieBreak.REMOTE:
            return self._decide(ResolutionWinner.REMOTE, strategy, "Version tie, remote preferred")
        if tie_break == TieBreak.MERGE:
            return self._merge(local, remote, classification, policy, conflict_type)
        return ManualReview(
            conflict_type=conflict_type,
            reason=f"Version tie on {classification.value} data",
        )

    @staticmethod
    def _decide(winner: ResolutionWinner, strategy: ConflictStrategy, reason: str) -> ConflictResolution:
        return ConflictResolution(winner=winner, strategy=strategy.value, reason=reason)

    def _merge(
        self,
        local: VersionedPayload,
        remote: VersionedPayload,
        classification: DataClassification,
        policy: ConflictPolicy,
        conflict_type: ConflictType,
    ) -> ResolveOutcome:
        if classification == DataClassification.PHI and not policy.allow_phi_merge:
            return ManualReview(
                conflict_type=conflict_type,
                reason="Automatic merge of PHI is disabled",
            )
        if local.payload is None or remote.payload is None:
            return ManualReview(conflict_type=conflict_type, reason="Cannot merge a deletion")
        return ConflictResolution(
            winner=ResolutionWinner.MERGED,
            merged_payload=self.merge_payloads(local.payload, remote.payload),
            strategy=ConflictStrategy.MERGE.value,
            reason="Resources merged",
        )

    def merge_payloads(self, local: Dict[str, Any], remote: Dict[str, Any]) -> Dict[str, Any]:
        """Field-level merge: remote is the base, local fills gaps."""
        merged = copy.deepcopy(remote)
        for key, local_value in local.items():
            if key in SERVER_MANAGED_FIELDS:
                continue
            remote_value = merged.get(key)
            if remote_value is None:
                if local_value is not None:
                    merged[key] = copy.deepcopy(local_value)
            elif isinstance(remote_value, dict) and isinstance(local_value, dict):
                merged[key] = self.merge_payloads(local_value, remote_value)
            elif isinstance(remote_value, list) and isinstance(local_value, list):
                merged[key] = _union(remote_value, local_value)
        return merged


def _union(remote: List[Any], local: List[Any]) -> List[Any]:
    result = copy.deepcopy(remote)
    for element in local:
        if element not in result:
            result.append(copy.deepcopy(element))
    return result


_STRICTNESS = {
    DataClassification.PHI: 0,
    DataClassification.SENSITIVE: 1,
    DataClassification.GENERAL: 2,
}


def _stricter(a: DataClassification, b: DataClassification) -> DataClassification:
    return a if _STRICTNESS[a] <= _STRICTNESS[b] else b
