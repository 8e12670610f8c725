"""
In-memory collaborators shared by the test suites.

FakeDirectory and FakeSource record every call so tests can assert exact
remote-call counts without any network access.
"""

import threading
from typing import Dict, List, Optional

from guest_sync.models import SourceUser


def federated_user(user_id: str, email: Optional[str], *group_names: str,
                   display_name: Optional[str] = None) -> SourceUser:
    """Build a source user whose assignments all come from an external IdP."""
    return SourceUser.from_dict({
        'id': user_id,
        'email': email,
        'name': display_name or user_id,
        'assignedGroups': [{'name': name, 'providerType': 'idp'} for name in group_names]
    })


def local_user(user_id: str, email: str, *group_names: str) -> SourceUser:
    """Build a source user whose assignments are all local (not federated)."""
    return SourceUser.from_dict({
        'id': user_id,
        'email': email,
        'name': user_id,
        'assignedGroups': [{'name': name, 'providerType': 'default'} for name in group_names]
    })


class FakeDirectory:
    """
    Directory double.

    ``failures`` maps a method name to a list of exceptions; each call to that
    method pops and raises the next one until the list is empty.
    """

    def __init__(self, groups: Optional[Dict[str, str]] = None,
                 members: Optional[Dict[str, set]] = None,
                 guests: Optional[Dict[str, str]] = None):
        self.groups = dict(groups or {})
        self.members = {g: set(m) for g, m in (members or {}).items()}
        self.guests = dict(guests or {})
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: List[tuple] = []
        self._lock = threading.Lock()
        self._next_id = 0

    def _record(self, name: str, *args) -> None:
        with self._lock:
            self.calls.append((name,) + args)
            queue = self.failures.get(name)
            error = queue.pop(0) if queue else None
        if error is not None:
            raise error

    def calls_to(self, name: str) -> List[tuple]:
        with self._lock:
            return [call for call in self.calls if call[0] == name]

    def ensure_guest_user(self, email: str, display_name: Optional[str] = None) -> str:
        self._record('ensure_guest_user', email, display_name)
        with self._lock:
            if email not in self.guests:
                self._next_id += 1
                self.guests[email] = f'guest-{self._next_id}'
            return self.guests[email]

    def add_member(self, group_id: str, user_id: str) -> None:
        self._record('add_member', group_id, user_id)
        with self._lock:
            self.members.setdefault(group_id, set()).add(user_id)

    def remove_member(self, group_id: str, user_id: str) -> None:
        self._record('remove_member', group_id, user_id)
        with self._lock:
            self.members.get(group_id, set()).discard(user_id)

    def find_group_id(self, display_name: str) -> Optional[str]:
        self._record('find_group_id', display_name)
        return self.groups.get(display_name)

    def list_group_members(self, group_id: str) -> set:
        self._record('list_group_members', group_id)
        with self._lock:
            return set(self.members.get(group_id, set()))

    def list_guest_users(self):
        self._record('list_guest_users')
        with self._lock:
            return [{'id': user_id, 'mail': email, 'userType': 'Guest'}
                    for email, user_id in self.guests.items()]


class FakeSource:
    """Source double returning a fixed user list (None simulates a failed fetch)."""

    def __init__(self, users: Optional[List[SourceUser]]):
        self.users = users
        self.calls = 0

    def fetch_users(self) -> Optional[List[SourceUser]]:
        self.calls += 1
        return None if self.users is None else list(self.users)
