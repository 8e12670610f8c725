"""
Mapping from source-system group names to directory group display names.

Target groups are configured as ``<prefix><key>_<remainder>`` (for example
``Qlik-Sales_Readers``). A source group named ``Sales_anything`` maps to that
target because both share the key ``Sales_``.
"""

import logging
from typing import Dict, List, Optional, Set

from guest_sync.models import SourceUser

logger = logging.getLogger(__name__)

DEFAULT_GROUP_PREFIX = 'Qlik-'


def _key_of(name: str) -> Optional[str]:
    """Return the name up to and including the first underscore."""
    idx = name.find('_')
    if idx <= 0:
        return None
    return name[:idx + 1]


class GroupMapping:
    """Static prefix lookup table, built once at startup."""

    def __init__(self, target_group_names: Optional[List[str]], prefix: str = DEFAULT_GROUP_PREFIX):
        self.prefix = prefix or ''
        self.target_by_key: Dict[str, str] = {}

        if not target_group_names:
            logger.warning("No directory group mappings configured")
            return

        for target in target_group_names:
            if target is None:
                continue
            target = str(target).strip()
            idx = target.find('_')
            if idx <= 0:
                logger.warning(f"Group mapping '{target}' does not contain '_' - skipping")
                continue
            start = len(self.prefix) if self.prefix and target.startswith(self.prefix) else 0
            key = target[start:idx + 1]
            self.target_by_key[key] = target
            logger.debug(f"Configured mapping: prefix '{key}' -> directory group '{target}'")

    def resolve(self, user: SourceUser) -> Set[str]:
        """Return the directory group names the user's assignments map to."""
        result = set()
        for group in user.assigned_groups:
            if not group.name:
                continue
            key = _key_of(group.name)
            if key is None:
                continue
            target = self.target_by_key.get(key)
            if target is not None:
                result.add(target)

        if result:
            logger.debug(f"User {user.display_name} ({user.email}) will be mapped to directory groups: {sorted(result)}")
        return result

    __call__ = resolve

    def to_directory_group_name(self, name: Optional[str]) -> Optional[str]:
        """Add the configured prefix to a group name that does not carry it yet."""
        if name is None:
            return None
        name = name.strip()
        if not name or not self.prefix or name.startswith(self.prefix):
            return name
        return self.prefix + name
