"""
Desired-state computation.

Turns the source-system user list into the directory groups each eligible
guest should belong to. Everything here is pure: no I/O and no shared state.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Set

from guest_sync.cache import normalize_email, normalize_group_name
from guest_sync.models import SourceUser

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DesiredState:
    """Target group memberships for one sync cycle."""
    groups_by_email: Mapping[str, FrozenSet[str]]
    display_name_by_email: Mapping[str, str]
    groups_in_scope: FrozenSet[str]

    @property
    def emails(self) -> FrozenSet[str]:
        return frozenset(self.groups_by_email)

    def display_name(self, email: str) -> str:
        return self.display_name_by_email.get(email, email)

    def desired_members_by_group_id(self, user_id_by_email: Mapping[str, str],
                                    group_id_by_name: Mapping[str, str]) -> Dict[str, Set[str]]:
        """Translate the email/name based state into user ids per group id."""
        result: Dict[str, Set[str]] = {}
        for email, group_names in self.groups_by_email.items():
            user_id = user_id_by_email.get(email)
            if not user_id:
                continue
            for group_name in group_names:
                group_id = group_id_by_name.get(group_name)
                if group_id:
                    result.setdefault(group_id, set()).add(user_id)
        return result


def managed_group_names(configured: Optional[Iterable[str]]) -> FrozenSet[str]:
    """Trimmed, non-blank configured group names."""
    if not configured:
        return frozenset()
    names = (normalize_group_name(name) for name in configured if name is not None)
    return frozenset(name for name in names if name)


def email_domain(email: str) -> Optional[str]:
    idx = email.rfind('@')
    if idx < 0 or idx == len(email) - 1:
        return None
    return email[idx + 1:].lower()


def is_excluded_domain(email: str, excluded_domains: Iterable[str]) -> bool:
    domain = email_domain(email)
    if domain is None:
        return False
    return any(d and d.strip().lower() == domain for d in excluded_domains)


def build_desired_state(users: Iterable[SourceUser],
                        resolve_groups: Callable[[SourceUser], Set[str]],
                        groups_in_scope: Optional[Iterable[str]] = None,
                        excluded_domains: Optional[Iterable[str]] = None) -> DesiredState:
    """
    Build the desired state for one cycle.

    Args:
        users: Source-system users
        resolve_groups: Maps a user to target directory group names
        groups_in_scope: Configured group names; empty means unconstrained
        excluded_domains: Email domains that are never synced

    Returns:
        DesiredState. ``groups_in_scope`` is the configured set when given,
        otherwise every group observed this cycle.
    """
    managed = managed_group_names(groups_in_scope)
    excluded = [d for d in (excluded_domains or []) if d]

    groups_by_email: Dict[str, Set[str]] = {}
    display_name_by_email: Dict[str, str] = {}
    observed: Set[str] = set()

    for user in users:
        if user is None or not user.federated:
            continue

        email = normalize_email(user.email)
        if email is None:
            continue
        if excluded and is_excluded_domain(email, excluded):
            continue

        targets = resolve_groups(user)
        if not targets:
            continue

        effective = set(targets) if not managed else {g for g in targets if g in managed}
        if not effective:
            continue

        observed.update(effective)
        groups_by_email.setdefault(email, set()).update(effective)

        if user.display_name and user.display_name.strip():
            display_name_by_email.setdefault(email, user.display_name)

    in_scope = managed if managed else frozenset(observed)
    if managed and not groups_by_email:
        # Configured scope stays authoritative: reconciliation may empty these groups
        logger.warning(f"No users resolved to any configured group; {len(managed)} configured groups remain in scope")

    return DesiredState(
        groups_by_email=MappingProxyType({e: frozenset(g) for e, g in groups_by_email.items()}),
        display_name_by_email=MappingProxyType(dict(display_name_by_email)),
        groups_in_scope=in_scope
    )
