"""
Conflict resolution for mapped contacts whose fields have diverged.

The resolver is a pure decision: given both sides' update times and the
configured policy it names the winning side. It never looks at which
fields differ.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from crm_contact_sync.storage.models import ConflictPolicy, Side

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Resolution:
    """
    Outcome of resolving one divergent pair.

    Attributes:
        winner: Side whose values are kept
        reason: Human-readable explanation stored in the change log
        policy: Policy that produced the decision
    """

    winner: Side
    reason: str
    policy: ConflictPolicy

    @property
    def loser(self) -> Side:
        return Side.LOCAL if self.winner == Side.REMOTE else Side.REMOTE


def _as_utc(value: Optional[datetime]) -> datetime:
    """Missing timestamps sort as the epoch; naive ones are taken as UTC."""
    if value is None:
        return EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConflictResolver:
    """
    Picks the winning side of a divergent mapped pair.

    Usage:
        resolver = ConflictResolver(ConflictPolicy.NEWEST_WINS)
        resolution = resolver.resolve(remote.updated_at, local.updated_at)
        if resolution.winner == Side.REMOTE:
            # overwrite the local contact
            pass
    """

    def __init__(self, policy: ConflictPolicy = ConflictPolicy.NEWEST_WINS):
        self.policy = policy

    def resolve(
        self,
        remote_updated_at: Optional[datetime],
        local_updated_at: Optional[datetime],
    ) -> Resolution:
        if self.policy == ConflictPolicy.PROVIDER_WINS:
            return Resolution(
                Side.REMOTE, "Configured to always prefer the provider", self.policy
            )
        if self.policy == ConflictPolicy.LOCAL_WINS:
            return Resolution(
                Side.LOCAL, "Configured to always prefer the CRM", self.policy
            )
        return self._resolve_newest(remote_updated_at, local_updated_at)

    def _resolve_newest(
        self,
        remote_updated_at: Optional[datetime],
        local_updated_at: Optional[datetime],
    ) -> Resolution:
        remote_time = _as_utc(remote_updated_at)
        local_time = _as_utc(local_updated_at)

        if remote_time > local_time:
            return Resolution(
                Side.REMOTE,
                f"Provider updated more recently ({remote_time.isoformat()} > "
                f"{local_time.isoformat()})",
                self.policy,
            )
        if local_time > remote_time:
            return Resolution(
                Side.LOCAL,
                f"CRM updated more recently ({local_time.isoformat()} > "
                f"{remote_time.isoformat()})",
                self.policy,
            )
        # Exact tie goes to the CRM
        return Resolution(
            Side.LOCAL,
            f"Equal timestamps ({local_time.isoformat()}), defaulting to the CRM",
            self.policy,
        )

    def __repr__(self) -> str:
        return f"ConflictResolver(policy={self.policy.value})"


def resolve(
    remote_updated_at: Optional[datetime],
    local_updated_at: Optional[datetime],
    policy: ConflictPolicy,
) -> Resolution:
    """Functional shorthand for ConflictResolver(policy).resolve(...)."""
    return ConflictResolver(policy).resolve(remote_updated_at, local_updated_at)
