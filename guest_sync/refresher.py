"""
Cache refresher.

Rebuilds the DirectoryCache from the directory: all guest users, the ids of
the configured groups and the members of each of those groups. The new state
is staged first and swapped in only when staging succeeded.
"""

import logging
from typing import List, Optional, Iterable

from guest_sync.cache import DirectoryCache, DirectorySnapshot, normalize_email, normalize_group_name

logger = logging.getLogger(__name__)


def normalized_group_names(group_names: Optional[Iterable[str]]) -> List[str]:
    """Trimmed, non-blank, de-duplicated names in configured order."""
    result = []
    seen = set()
    for name in group_names or []:
        if name is None:
            continue
        normalized = normalize_group_name(name)
        if normalized and normalized not in seen:
            seen.add(normalized)
            result.append(normalized)
    return result


def pick_email(user: dict) -> Optional[str]:
    """Prefer the mail attribute, fall back to the user principal name."""
    email = normalize_email(user.get('mail'))
    if email is None:
        email = normalize_email(user.get('userPrincipalName'))
    return email


class CacheRefresher:
    """
    Rebuilds the cache on every cycle.

    Args:
        directory: Directory client (list_guest_users, find_group_id, list_group_members)
        cache: The shared DirectoryCache
        group_names: Configured directory group display names
    """

    def __init__(self, directory, cache: DirectoryCache, group_names: Optional[Iterable[str]]):
        self.directory = directory
        self.cache = cache
        self.group_names = normalized_group_names(group_names)

    def refresh(self) -> bool:
        """
        Refresh the cache. Never raises.

        Returns:
            True if the cache was replaced, False if the existing cache was kept
        """
        logger.debug("Refreshing cache of directory objects (guests + groups with memberships) ...")

        try:
            snapshot = self._stage()
        except Exception as e:
            logger.error(f"Directory cache refresh FAILED. Keeping existing cache. Cause={e}", exc_info=True)
            return False

        self.cache.load(snapshot)
        self.cache.mark_refreshed()
        logger.info(f"Directory cache refreshed guests={len(snapshot.guest_id_by_email)} "
                    f"groups={len(snapshot.group_id_by_name)} "
                    f"groupsWithMembers={len(snapshot.member_ids_by_group)} "
                    f"lastRefresh={self.cache.last_refresh.isoformat(timespec='seconds')}")
        return True

    def _stage(self) -> DirectorySnapshot:
        snapshot = DirectorySnapshot()
        self._stage_guests(snapshot)

        if not self.group_names:
            logger.warning("No group mappings configured. Group membership refresh skipped.")
            return snapshot

        for group_name in self.group_names:
            try:
                group_id = self.directory.find_group_id(group_name)
            except Exception as e:
                logger.error(f"Failed resolving group id for groupName='{group_name}': {e}")
                continue
            if group_id:
                snapshot.group_id_by_name[group_name] = group_id
            else:
                logger.warning(f"Group '{group_name}' not found in directory - it will be skipped")

        for group_name, group_id in snapshot.group_id_by_name.items():
            try:
                members = self.directory.list_group_members(group_id)
            except Exception as e:
                logger.error(f"Failed refreshing members for groupName='{group_name}' groupId={group_id}: {e}")
                continue
            snapshot.member_ids_by_group[group_id] = set(members)
            logger.debug(f"Fetched members for groupName={group_name} groupId={group_id} members={len(members)}")

        return snapshot

    def _stage_guests(self, snapshot: DirectorySnapshot) -> None:
        logger.debug("Refreshing ALL guest users into cache...")
        count = 0
        for user in self.directory.list_guest_users():
            user_id = user.get('id')
            email = pick_email(user)
            if not user_id or email is None:
                continue
            snapshot.guest_id_by_email[email] = user_id
            count += 1
        logger.debug(f"Fetched {count} guest users")
