"""
Data records shared between the sync engine and its collaborators.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any

FEDERATED_PROVIDER_TYPE = 'idp'


@dataclass(frozen=True)
class AssignedGroup:
    """A group assignment reported by the source system."""
    name: str
    provider_type: str = ''
    id: str = ''

    @property
    def federated(self) -> bool:
        return (self.provider_type or '').lower() == FEDERATED_PROVIDER_TYPE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AssignedGroup':
        return cls(
            name=data.get('name') or '',
            provider_type=data.get('providerType') or '',
            id=data.get('id') or ''
        )


@dataclass(frozen=True)
class SourceUser:
    """A user reported by the source system with its group assignments."""
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    assigned_groups: tuple = ()
    status: str = ''

    @property
    def federated(self) -> bool:
        """True if any assignment originates from an external identity provider."""
        return any(group.federated for group in self.assigned_groups)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SourceUser':
        groups = tuple(
            AssignedGroup.from_dict(group)
            for group in (data.get('assignedGroups') or [])
            if isinstance(group, dict)
        )
        return cls(
            id=data.get('id') or '',
            email=data.get('email'),
            display_name=data.get('name'),
            assigned_groups=groups,
            status=data.get('status') or ''
        )


class SyncCounters:
    """Thread-safe per-cycle counters for membership operations."""

    def __init__(self):
        self._lock = threading.Lock()
        self.added = 0
        self.skipped = 0
        self.failed = 0
        self.removed = 0
        self.remove_failed = 0

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            return {
                'added': self.added,
                'skipped': self.skipped,
                'failed': self.failed,
                'removed': self.removed,
                'remove_failed': self.remove_failed
            }


@dataclass(frozen=True)
class MembershipSyncResult:
    """Outcome of ensuring one user's membership in a set of groups."""
    groups: int = 0
    added: int = 0
    skipped: int = 0
    failed: int = 0

    @classmethod
    def empty(cls) -> 'MembershipSyncResult':
        return cls()


@dataclass
class SyncSummary:
    """Outcome of one sync cycle, logged at the end of the cycle."""
    status: str = 'completed'
    users_found: int = 0
    groups_found: int = 0
    guests_cached: int = 0
    guests_created: int = 0
    guests_failed: int = 0
    added: int = 0
    skipped: int = 0
    failed: int = 0
    removed: int = 0
    remove_failed: int = 0
    degraded_phases: List[str] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def runtime_seconds(self) -> float:
        if not self.start_time or not self.end_time:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def apply_counters(self, counters: SyncCounters) -> None:
        for name, value in counters.as_dict().items():
            setattr(self, name, value)
