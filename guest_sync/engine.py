"""
Reconciliation engine for Guest Sync.

This module contains the core synchronization logic: it turns the source-system
user list into a desired state, makes sure every eligible user exists as a
guest in the directory, adds the missing group memberships and optionally
removes memberships nobody asked for.
"""

import threading
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Set

from guest_sync.cache import DirectoryCache, normalize_group_name
from guest_sync.config import SyncSettings
from guest_sync.desired_state import DesiredState, build_desired_state
from guest_sync.dispatcher import BoundedDispatcher, DispatchHandle, PhaseResult
from guest_sync.mapping import GroupMapping
from guest_sync.models import MembershipSyncResult, SyncCounters, SyncSummary
from guest_sync.retry import RetryPolicy

logger = logging.getLogger(__name__)

INVITE = 'invite'
MEMBERSHIP = 'membership'


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class CycleGuard:
    """Single-slot guard: at most one refresh + sync cycle runs at a time."""

    def __init__(self):
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    @property
    def running(self) -> bool:
        return self._lock.locked()


def compute_removals(current_members: Iterable[str], desired_members: Iterable[str]) -> Set[str]:
    """Members present in the directory group but not wanted there."""
    return set(current_members) - set(desired_members)


class ReconciliationEngine:
    """
    Runs sync cycles against the source system and the directory.

    Args:
        source: Source client with ``fetch_users()``
        directory: Directory client (ensure_guest_user, add_member, remove_member)
        cache: Shared DirectoryCache
        mapping: GroupMapping resolving users to directory group names
        settings: SyncSettings
        dispatcher: BoundedDispatcher with ``invite`` and ``membership`` limiters
        retry_policy: RetryPolicy wrapping every remote call
        refresher: Optional CacheRefresher run at the start of each cycle
    """

    def __init__(self, source, directory, cache: DirectoryCache, mapping: GroupMapping,
                 settings: SyncSettings, dispatcher: Optional[BoundedDispatcher] = None,
                 retry_policy: Optional[RetryPolicy] = None, refresher=None,
                 guard: Optional[CycleGuard] = None):
        self.source = source
        self.directory = directory
        self.cache = cache
        self.mapping = mapping
        self.settings = settings
        self.dispatcher = dispatcher or BoundedDispatcher(
            max_workers=settings.max_workers,
            limits={INVITE: settings.invite_concurrency, MEMBERSHIP: settings.membership_concurrency},
            task_timeout=settings.operation_timeout
        )
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.refresher = refresher
        self.guard = guard or CycleGuard()

    def run_cycle(self) -> Optional[SyncSummary]:
        """
        Refresh the cache and run one sync, unless a cycle is already running.

        Returns:
            The cycle's SyncSummary, or None if the cycle was skipped
        """
        if not self.guard.try_acquire():
            logger.warning("Previous sync cycle still running - skipping this run")
            return None

        try:
            if self.refresher is not None:
                self.refresher.refresh()
            return self._sync()
        finally:
            self.guard.release()

    def _sync(self) -> SyncSummary:
        summary = SyncSummary(start_time=datetime.now())
        counters = SyncCounters()
        logger.info("Starting guest group sync")

        try:
            users = self.source.fetch_users()
        except Exception as e:
            logger.error(f"Fetching source users failed: {e}", exc_info=True)
            users = None

        if users is None:
            logger.warning("Source user fetch failed - sync cycle aborted, no directory changes made")
            summary.status = 'fetch_failed'
            return self._finish(summary, counters)

        desired = build_desired_state(users, self.mapping.resolve,
                                      self.settings.group_mappings,
                                      self.settings.excluded_email_domains)
        summary.users_found = len(desired.groups_by_email)
        summary.groups_found = len(desired.groups_in_scope)
        logger.info(f"Eligible users={summary.users_found} groupsInScope={summary.groups_found} "
                    f"(source users={len(users)})")

        if not desired.groups_by_email:
            logger.info(f"No users to sync after filters. usersFound=0 groupsFound={summary.groups_found}")
            return self._finish(summary, counters)

        group_id_by_name = self._resolve_group_ids(desired.groups_in_scope)
        user_id_by_email = self._ensure_guests(desired, summary)
        self._ensure_memberships(desired, user_id_by_email, group_id_by_name, counters, summary)

        if self.settings.remove_memberships:
            self._reconcile_groups(desired, user_id_by_email, group_id_by_name, counters, summary)
        else:
            logger.warning("Membership removal disabled by config. Set sync.remove_memberships to enable it")

        return self._finish(summary, counters)

    def _finish(self, summary: SyncSummary, counters: SyncCounters) -> SyncSummary:
        summary.apply_counters(counters)
        summary.end_time = datetime.now()
        if summary.degraded_phases and summary.status == 'completed':
            summary.status = 'degraded'
        self._log_summary(summary)
        return summary

    def _resolve_group_ids(self, group_names: Iterable[str]) -> Dict[str, str]:
        """Look up group ids in the cache; unresolved groups are left out."""
        resolved = {}
        for name in sorted(group_names):
            group_id = self.cache.get_group_id(name)
            if group_id:
                resolved[name] = group_id
            else:
                logger.warning(f"Group '{name}' not in cache - memberships for it will fail this cycle")
        return resolved

    # Guests

    def _ensure_guests(self, desired: DesiredState, summary: SyncSummary) -> Dict[str, str]:
        """Resolve a directory user id for every desired email, inviting as needed."""
        user_id_by_email: Dict[str, str] = {}
        handles: List[DispatchHandle] = []

        for email in sorted(desired.emails):
            cached = self.cache.get_guest_id(email)
            if cached:
                user_id_by_email[email] = cached
                summary.guests_cached += 1
                continue
            handles.append(self.dispatcher.submit(INVITE, email, self._ensure_guest,
                                                  email, desired.display_name(email)))

        if not handles:
            logger.debug(f"All {summary.guests_cached} guests found in cache")
            return user_id_by_email

        logger.info(f"Ensuring {len(handles)} guest users not found in cache")
        result = self.dispatcher.join(handles, self.settings.guest_phase_timeout)

        for outcome in result.outcomes:
            if outcome.ok:
                user_id_by_email[outcome.key] = outcome.value
                summary.guests_created += 1
            else:
                summary.guests_failed += 1
                logger.error(f"Could not ensure guest user email={outcome.key}: {outcome.error}")

        self._check_phase('guests', result, summary)
        return user_id_by_email

    def _ensure_guest(self, email: str, display_name: str) -> str:
        user_id = self.retry_policy.with_retry(
            'ensureGuest', email,
            lambda: self.directory.ensure_guest_user(email, display_name)
        )
        if not user_id:
            raise SyncError(f"No user id returned for guest {email}")
        self.cache.put_guest(email, user_id)
        return user_id

    # Memberships

    def _ensure_memberships(self, desired: DesiredState, user_id_by_email: Mapping[str, str],
                            group_id_by_name: Mapping[str, str], counters: SyncCounters,
                            summary: SyncSummary) -> None:
        """Add every missing (user, group) membership."""
        handles: List[DispatchHandle] = []

        for email in sorted(desired.groups_by_email):
            user_id = user_id_by_email.get(email)
            if not user_id:
                logger.warning(f"Skipping memberships for email={email} - no directory user id")
                counters.increment('failed')
                continue
            for group_name in sorted(desired.groups_by_email[email]):
                handle = self._dispatch_membership(user_id, group_name,
                                                   group_id_by_name.get(group_name), counters)
                if handle is not None:
                    handles.append(handle)

        if not handles:
            logger.debug("No membership changes needed")
            return

        logger.info(f"Adding {len(handles)} group memberships")
        result = self.dispatcher.join(handles, self.settings.membership_phase_timeout)
        self._collect_additions(result, counters)
        self._check_phase('memberships', result, summary)

    def _dispatch_membership(self, user_id: str, group_name: str, group_id: Optional[str],
                             counters: SyncCounters) -> Optional[DispatchHandle]:
        """Count skips and unresolvable groups; dispatch the rest."""
        if not group_id:
            counters.increment('failed')
            logger.warning(f"Group '{group_name}' could not be resolved - cannot add userId={user_id}")
            return None

        if self.cache.is_member(group_id, user_id):
            counters.increment('skipped')
            return None

        return self.dispatcher.submit(MEMBERSHIP, (user_id, group_name),
                                      self._add_membership, user_id, group_id, group_name)

    def _add_membership(self, user_id: str, group_id: str, group_name: str) -> None:
        self.retry_policy.with_retry(
            'ensureMembership', f"userId={user_id} group={group_name}",
            lambda: self.directory.add_member(group_id, user_id)
        )
        self.cache.add_member(group_id, user_id)
        logger.info(f"Added userId={user_id} to group '{group_name}'")

    def _collect_additions(self, result: PhaseResult, counters: SyncCounters) -> None:
        for outcome in result.outcomes:
            if outcome.ok:
                counters.increment('added')
            else:
                counters.increment('failed')
                user_id, group_name = outcome.key
                logger.error(f"Failed to add userId={user_id} to group '{group_name}': {outcome.error}")

    # Removals

    def _reconcile_groups(self, desired: DesiredState, user_id_by_email: Mapping[str, str],
                          group_id_by_name: Mapping[str, str], counters: SyncCounters,
                          summary: SyncSummary) -> None:
        """Remove members of in-scope groups that are not desired there."""
        # A desired user whose guest phase failed may still be known to the cache
        known_ids = dict(user_id_by_email)
        for email in desired.emails:
            if email not in known_ids:
                cached = self.cache.get_guest_id(email)
                if cached:
                    known_ids[email] = cached

        desired_by_group = desired.desired_members_by_group_id(known_ids, group_id_by_name)
        handles: List[DispatchHandle] = []

        for group_name in sorted(desired.groups_in_scope):
            group_id = group_id_by_name.get(group_name)
            if not group_id:
                continue
            current = self.cache.get_group_members(group_id) or frozenset()
            to_remove = compute_removals(current, desired_by_group.get(group_id, frozenset()))
            if to_remove:
                logger.info(f"Group '{group_name}': {len(to_remove)} members to remove")
            for user_id in sorted(to_remove):
                handles.append(self.dispatcher.submit(MEMBERSHIP, (user_id, group_name),
                                                      self._remove_membership, user_id, group_id, group_name))

        if not handles:
            logger.debug("No memberships to remove")
            return

        result = self.dispatcher.join(handles, self.settings.reconcile_phase_timeout)
        for outcome in result.outcomes:
            if outcome.ok:
                counters.increment('removed')
            else:
                counters.increment('remove_failed')
                user_id, group_name = outcome.key
                logger.error(f"Failed to remove userId={user_id} from group '{group_name}': {outcome.error}")
        self._check_phase('removals', result, summary)

    def _remove_membership(self, user_id: str, group_id: str, group_name: str) -> None:
        self.retry_policy.with_retry(
            'removeMembership', f"userId={user_id} group={group_name}",
            lambda: self.directory.remove_member(group_id, user_id)
        )
        self.cache.remove_member(group_id, user_id)
        logger.info(f"Removed userId={user_id} from group '{group_name}'")

    # Single user

    def ensure_user_in_groups(self, user_id: str, group_names: Optional[Iterable[str]]) -> MembershipSyncResult:
        """
        Make sure one directory user belongs to each of the named groups.

        Names without the configured prefix get it added. Groups are resolved
        from the cache only.

        Raises:
            ValueError: If user_id is blank
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id must not be blank")

        groups: List[str] = []
        for name in group_names or []:
            target = normalize_group_name(self.mapping.to_directory_group_name(name))
            if target and target not in groups:
                groups.append(target)

        if not groups:
            return MembershipSyncResult.empty()

        counters = SyncCounters()
        handles = []
        for group_name in groups:
            handle = self._dispatch_membership(user_id, group_name, self.cache.get_group_id(group_name), counters)
            if handle is not None:
                handles.append(handle)

        if handles:
            result = self.dispatcher.join(handles, self.settings.membership_phase_timeout)
            self._collect_additions(result, counters)
            if result.phase_timed_out:
                logger.warning(f"Membership phase timed out for userId={user_id}")

        totals = counters.as_dict()
        logger.info(f"Memberships for userId={user_id}: groups={len(groups)} added={totals['added']} "
                    f"skipped={totals['skipped']} failed={totals['failed']}")
        return MembershipSyncResult(groups=len(groups), added=totals['added'],
                                    skipped=totals['skipped'], failed=totals['failed'])

    def _check_phase(self, phase: str, result: PhaseResult, summary: SyncSummary) -> None:
        if result.phase_timed_out:
            pending = sum(1 for o in result.outcomes if not o.completed)
            summary.degraded_phases.append(phase)
            logger.warning(f"Phase '{phase}' timed out with {pending} units still pending - "
                           f"continuing with the results collected so far")

    def _log_summary(self, summary: SyncSummary) -> None:
        logger.info("=== Sync Summary ===")
        logger.info(f"Status: {summary.status}")
        logger.info(f"Total runtime: {summary.runtime_seconds:.2f} seconds")
        logger.info(f"Users found: {summary.users_found} | Groups found: {summary.groups_found}")
        logger.info(f"Guests cached: {summary.guests_cached} | created: {summary.guests_created} "
                    f"| failed: {summary.guests_failed}")
        logger.info(f"Memberships added: {summary.added} | skipped: {summary.skipped} "
                    f"| failed: {summary.failed}")
        if self.settings.remove_memberships:
            logger.info(f"Memberships removed: {summary.removed} | remove failed: {summary.remove_failed}")
        if summary.degraded_phases:
            logger.warning(f"Degraded phases: {', '.join(summary.degraded_phases)}")

    def close(self) -> None:
        """Shut down the worker pool."""
        self.dispatcher.shutdown()
