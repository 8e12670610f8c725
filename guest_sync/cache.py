"""
In-memory cache of directory state.

Holds guest user ids by email, group ids by display name and member ids by
group id. The cache is process-wide, never persisted, and is rebuilt by the
CacheRefresher on every cycle.
"""

import threading
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Set, FrozenSet, Optional, Iterable, Any

logger = logging.getLogger(__name__)

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Trim and lower-case an email; None if nothing usable remains."""
    if email is None:
        return None
    normalized = str(email).strip().lower()
    return normalized or None


def normalize_group_name(display_name: Optional[str]) -> Optional[str]:
    """Trim a group display name; None if nothing usable remains. Case is kept."""
    if display_name is None:
        return None
    normalized = str(display_name).strip()
    return normalized or None


@dataclass
class DirectorySnapshot:
    """A full copy of directory state, used for staging and inspection."""
    guest_id_by_email: Dict[str, str] = field(default_factory=dict)
    group_id_by_name: Dict[str, str] = field(default_factory=dict)
    member_ids_by_group: Dict[str, Set[str]] = field(default_factory=dict)
    last_refresh: datetime = EPOCH


class DirectoryCache:
    """
    Thread-safe store of directory ids.

    Every mutation is a single-key operation under one lock, so readers never
    observe a partially written entry. No method performs network I/O.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._guest_id_by_email: Dict[str, str] = {}
        self._group_id_by_name: Dict[str, str] = {}
        self._member_ids_by_group: Dict[str, Set[str]] = {}
        self._last_refresh = EPOCH

    # Guests

    def put_guest(self, email: Optional[str], user_id: Optional[str]) -> None:
        key = normalize_email(email)
        if key is None or not user_id:
            return
        with self._lock:
            self._guest_id_by_email[key] = user_id

    def get_guest_id(self, email: Optional[str]) -> Optional[str]:
        key = normalize_email(email)
        if key is None:
            return None
        with self._lock:
            return self._guest_id_by_email.get(key)

    # Groups

    def put_group_id(self, display_name: Optional[str], group_id: Optional[str]) -> None:
        key = normalize_group_name(display_name)
        if key is None or not group_id:
            return
        with self._lock:
            self._group_id_by_name[key] = group_id

    def get_group_id(self, display_name: Optional[str]) -> Optional[str]:
        key = normalize_group_name(display_name)
        if key is None:
            return None
        with self._lock:
            return self._group_id_by_name.get(key)

    # Memberships

    def set_group_members(self, group_id: Optional[str], member_ids: Iterable[str]) -> None:
        if not group_id or not str(group_id).strip():
            return
        with self._lock:
            self._member_ids_by_group[group_id] = {m for m in member_ids if m}

    def get_group_members(self, group_id: Optional[str]) -> Optional[FrozenSet[str]]:
        """Return a snapshot of the member ids, or None if the group is unknown."""
        if not group_id or not str(group_id).strip():
            return None
        with self._lock:
            members = self._member_ids_by_group.get(group_id)
            return frozenset(members) if members is not None else None

    def is_member(self, group_id: Optional[str], user_id: Optional[str]) -> bool:
        if not group_id or not user_id:
            return False
        with self._lock:
            members = self._member_ids_by_group.get(group_id)
            return members is not None and user_id in members

    def add_member(self, group_id: Optional[str], user_id: Optional[str]) -> None:
        if not group_id or not user_id or not str(group_id).strip() or not str(user_id).strip():
            return
        with self._lock:
            self._member_ids_by_group.setdefault(group_id, set()).add(user_id)

    def remove_member(self, group_id: Optional[str], user_id: Optional[str]) -> None:
        if not group_id or not user_id:
            return
        with self._lock:
            members = self._member_ids_by_group.get(group_id)
            if members is not None:
                members.discard(user_id)

    # Whole-cache operations

    def clear_all(self) -> None:
        with self._lock:
            self._guest_id_by_email.clear()
            self._group_id_by_name.clear()
            self._member_ids_by_group.clear()

    def load(self, snapshot: DirectorySnapshot) -> None:
        """Replace the whole cache content with ``snapshot`` in one step."""
        with self._lock:
            self.clear_all()
            for email, user_id in snapshot.guest_id_by_email.items():
                self.put_guest(email, user_id)
            for name, group_id in snapshot.group_id_by_name.items():
                self.put_group_id(name, group_id)
            for group_id, members in snapshot.member_ids_by_group.items():
                self.set_group_members(group_id, members)

    def mark_refreshed(self) -> None:
        with self._lock:
            self._last_refresh = datetime.now(timezone.utc)

    @property
    def last_refresh(self) -> datetime:
        with self._lock:
            return self._last_refresh

    def snapshot(self) -> DirectorySnapshot:
        """Return a deep copy of the current cache content."""
        with self._lock:
            return DirectorySnapshot(
                guest_id_by_email=dict(self._guest_id_by_email),
                group_id_by_name=dict(self._group_id_by_name),
                member_ids_by_group={g: set(m) for g, m in self._member_ids_by_group.items()},
                last_refresh=self._last_refresh
            )

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'guests': len(self._guest_id_by_email),
                'groups': len(self._group_id_by_name),
                'groups_with_members': len(self._member_ids_by_group),
                'memberships': sum(len(m) for m in self._member_ids_by_group.values()),
                'last_refresh': self._last_refresh.isoformat()
            }
