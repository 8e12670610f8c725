#!/usr/bin/env python3
"""
Unit tests for the reconciliation engine.

Covers the cycle stages end to end against in-memory collaborators:
fetch failure, empty desired state, guest creation, membership adds,
removals, the single-slot cycle guard and the per-user operation.
"""

import os
import sys
import threading
import unittest
from unittest.mock import Mock

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from guest_sync.cache import DirectoryCache
from guest_sync.clients.base import ApiError
from guest_sync.config import SyncSettings
from guest_sync.dispatcher import BoundedDispatcher
from guest_sync.engine import ReconciliationEngine, CycleGuard, compute_removals, INVITE, MEMBERSHIP
from guest_sync.mapping import GroupMapping
from guest_sync.retry import RetryPolicy, ErrorKind

from fakes import FakeDirectory, FakeSource, federated_user, local_user

SALES = 'Qlik-Sales_All'
MARKETING = 'Qlik-Marketing_All'


class EngineTestCase(unittest.TestCase):
    """Builds an engine wired to fakes; subclasses call make_engine."""

    def setUp(self):
        self.cache = DirectoryCache()
        self.sleeps = []
        self.engines = []

    def tearDown(self):
        for engine in self.engines:
            engine.close()

    def make_engine(self, users, directory, group_mappings=(SALES, MARKETING),
                    remove_memberships=False, refresher=None):
        settings = SyncSettings(group_mappings=list(group_mappings),
                                remove_memberships=remove_memberships,
                                guest_phase_timeout=30, membership_phase_timeout=30,
                                reconcile_phase_timeout=30)
        dispatcher = BoundedDispatcher(max_workers=4, limits={INVITE: 2, MEMBERSHIP: 3}, task_timeout=30)
        retry_policy = RetryPolicy(max_attempts=7, base_delay=0.5, max_delay=30.0,
                                   jitter=0.0, sleep=self.sleeps.append)
        engine = ReconciliationEngine(
            source=FakeSource(users),
            directory=directory,
            cache=self.cache,
            mapping=GroupMapping(list(group_mappings)),
            settings=settings,
            dispatcher=dispatcher,
            retry_policy=retry_policy,
            refresher=refresher
        )
        self.engines.append(engine)
        return engine


class TestSyncCycle(EngineTestCase):
    """Stage-by-stage behaviour of one cycle."""

    def test_fetch_failure_aborts_without_changes(self):
        directory = FakeDirectory()
        self.cache.put_group_id(SALES, 'g-sales')
        before = self.cache.snapshot()

        summary = self.make_engine(None, directory).run_cycle()

        self.assertEqual(summary.status, 'fetch_failed')
        self.assertEqual(directory.calls, [])
        self.assertEqual(self.cache.snapshot(), before)

    def test_fetch_exception_is_treated_as_failed_fetch(self):
        directory = FakeDirectory()
        engine = self.make_engine([], directory)
        engine.source = Mock()
        engine.source.fetch_users.side_effect = RuntimeError("boom")

        summary = engine.run_cycle()

        self.assertEqual(summary.status, 'fetch_failed')
        self.assertEqual(directory.calls, [])

    def test_no_eligible_users_ends_with_zero_counters(self):
        directory = FakeDirectory()
        users = [local_user('u1', 'a@example.com', 'Sales_Team')]

        summary = self.make_engine(users, directory, remove_memberships=True).run_cycle()

        self.assertEqual(summary.status, 'completed')
        self.assertEqual(summary.users_found, 0)
        self.assertEqual((summary.added, summary.skipped, summary.failed, summary.removed), (0, 0, 0, 0))
        self.assertEqual(directory.calls, [])

    def test_creates_missing_guest_and_adds_membership(self):
        directory = FakeDirectory()
        self.cache.put_group_id(SALES, 'g-sales')
        self.cache.set_group_members('g-sales', [])
        users = [federated_user('u1', ' New.User@Example.com ', 'Sales_Team', display_name='New User')]

        summary = self.make_engine(users, directory).run_cycle()

        self.assertEqual(directory.calls_to('ensure_guest_user'), [('ensure_guest_user', 'new.user@example.com', 'New User')])
        self.assertEqual(directory.calls_to('add_member'), [('add_member', 'g-sales', 'guest-1')])
        self.assertEqual(self.cache.get_guest_id('new.user@example.com'), 'guest-1')
        self.assertTrue(self.cache.is_member('g-sales', 'guest-1'))
        self.assertEqual(summary.guests_created, 1)
        self.assertEqual(summary.added, 1)
        self.assertEqual(summary.failed, 0)

    def test_cached_guest_is_not_invited(self):
        directory = FakeDirectory()
        self.cache.put_group_id(SALES, 'g-sales')
        self.cache.put_guest('known@example.com', 'u-known')
        users = [federated_user('u1', 'known@example.com', 'Sales_Team')]

        summary = self.make_engine(users, directory).run_cycle()

        self.assertEqual(directory.calls_to('ensure_guest_user'), [])
        self.assertEqual(summary.guests_cached, 1)
        self.assertEqual(summary.added, 1)

    def test_unresolved_guest_is_excluded_from_memberships(self):
        directory = FakeDirectory()
        directory.failures['ensure_guest_user'] = [
            ApiError("Could not resolve userId", kind=ErrorKind.CLIENT_ERROR)
        ]
        self.cache.put_group_id(SALES, 'g-sales')
        users = [federated_user('u1', 'broken@example.com', 'Sales_Team')]

        summary = self.make_engine(users, directory).run_cycle()

        self.assertEqual(len(directory.calls_to('ensure_guest_user')), 1)
        self.assertEqual(directory.calls_to('add_member'), [])
        self.assertEqual(summary.guests_failed, 1)
        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.added, 0)
        self.assertIsNone(self.cache.get_guest_id('broken@example.com'))

    def test_one_failing_membership_does_not_stop_others(self):
        directory = FakeDirectory()
        directory.failures['add_member'] = [ApiError("Bad request", kind=ErrorKind.CLIENT_ERROR, status_code=400)]
        self.cache.put_group_id(SALES, 'g-sales')
        self.cache.put_group_id(MARKETING, 'g-marketing')
        self.cache.put_guest('a@example.com', 'u-a')
        users = [federated_user('u1', 'a@example.com', 'Sales_Team', 'Marketing_Team')]

        summary = self.make_engine(users, directory).run_cycle()

        self.assertEqual(len(directory.calls_to('add_member')), 2)
        self.assertEqual(summary.added, 1)
        self.assertEqual(summary.failed, 1)

    def test_throttled_membership_is_retried(self):
        directory = FakeDirectory()
        directory.failures['add_member'] = [ApiError.from_status(429, "Too Many Requests") for _ in range(6)]
        self.cache.put_group_id(SALES, 'g-sales')
        self.cache.put_guest('a@example.com', 'u-a')
        users = [federated_user('u1', 'a@example.com', 'Sales_Team')]

        summary = self.make_engine(users, directory).run_cycle()

        self.assertEqual(len(directory.calls_to('add_member')), 7)
        self.assertEqual(len(self.sleeps), 6)
        self.assertEqual(summary.added, 1)
        self.assertTrue(self.cache.is_member('g-sales', 'u-a'))

    def test_membership_phase_is_idempotent(self):
        directory = FakeDirectory()
        self.cache.put_group_id(SALES, 'g-sales')
        self.cache.put_group_id(MARKETING, 'g-marketing')
        users = [
            federated_user('u1', 'a@example.com', 'Sales_Team', 'Marketing_Team'),
            federated_user('u2', 'b@example.com', 'Sales_Team'),
        ]
        engine = self.make_engine(users, directory)

        first = engine.run_cycle()
        calls_after_first = len(directory.calls)
        second = engine.run_cycle()

        self.assertEqual(first.added, 3)
        self.assertEqual(second.added, 0)
        self.assertEqual(second.skipped, 3)
        self.assertEqual(second.failed, 0)
        self.assertEqual(len(directory.calls), calls_after_first)

    def test_removal_disabled_never_removes(self):
        directory = FakeDirectory(members={'g-sales': {'u-old'}})
        self.cache.put_group_id(SALES, 'g-sales')
        self.cache.set_group_members('g-sales', ['u-old'])
        self.cache.put_guest('a@example.com', 'u-a')
        users = [federated_user('u1', 'a@example.com', 'Sales_Team')]

        summary = self.make_engine(users, directory, remove_memberships=False).run_cycle()

        self.assertEqual(directory.calls_to('remove_member'), [])
        self.assertEqual(summary.removed, 0)
        self.assertTrue(self.cache.is_member('g-sales', 'u-old'))

    def test_refresher_runs_before_sync(self):
        order = []
        refresher = Mock()
        refresher.refresh.side_effect = lambda: order.append('refresh')
        engine = self.make_engine([], FakeDirectory(), refresher=refresher)
        engine.source = Mock()
        engine.source.fetch_users.side_effect = lambda: order.append('fetch') or []

        engine.run_cycle()

        self.assertEqual(order, ['refresh', 'fetch'])


class TestScenarios(EngineTestCase):
    """End-to-end scenarios with exact remote-call counts."""

    def test_scenario_b_reconcile_removes_and_adds(self):
        directory = FakeDirectory(members={'g-sales': {'u1', 'u2'}})
        self.cache.put_group_id(SALES, 'g-sales')
        self.cache.set_group_members('g-sales', ['u1', 'u2'])
        self.cache.put_guest('two@example.com', 'u2')
        self.cache.put_guest('three@example.com', 'u3')
        users = [
            federated_user('s2', 'two@example.com', 'Sales_Team'),
            federated_user('s3', 'three@example.com', 'Sales_Team'),
        ]

        summary = self.make_engine(users, directory, group_mappings=(SALES,), remove_memberships=True).run_cycle()

        self.assertEqual(directory.calls_to('add_member'), [('add_member', 'g-sales', 'u3')])
        self.assertEqual(directory.calls_to('remove_member'), [('remove_member', 'g-sales', 'u1')])
        self.assertEqual(directory.calls_to('ensure_guest_user'), [])
        for call in directory.calls:
            self.assertNotIn('u2', call)
        self.assertEqual(self.cache.get_group_members('g-sales'), frozenset({'u2', 'u3'}))
        self.assertEqual((summary.added, summary.skipped, summary.removed), (1, 1, 1))

    def test_scenario_c_unresolved_group_fails_without_remote_call(self):
        directory = FakeDirectory()
        self.cache.put_guest('a@example.com', 'u-a')
        users = [federated_user('u1', 'a@example.com', 'Marketing_Team')]

        summary = self.make_engine(users, directory).run_cycle()

        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.added, 0)
        self.assertEqual(directory.calls, [])

    def test_scenario_d_busy_guard_skips_cycle(self):
        directory = FakeDirectory()
        self.cache.put_group_id(SALES, 'g-sales')
        users = [federated_user('u1', 'a@example.com', 'Sales_Team')]
        refresher = Mock()
        engine = self.make_engine(users, directory, refresher=refresher)
        before = self.cache.snapshot()

        self.assertTrue(engine.guard.try_acquire())
        try:
            result = engine.run_cycle()
        finally:
            engine.guard.release()

        self.assertIsNone(result)
        self.assertEqual(engine.source.calls, 0)
        refresher.refresh.assert_not_called()
        self.assertEqual(directory.calls, [])
        self.assertEqual(self.cache.snapshot(), before)

    def test_guard_is_released_after_failure(self):
        engine = self.make_engine([], FakeDirectory())
        engine.source = Mock()
        engine.source.fetch_users.return_value = None
        engine.refresher = Mock()
        engine.refresher.refresh.side_effect = RuntimeError("unexpected")

        with self.assertRaises(RuntimeError):
            engine.run_cycle()

        self.assertFalse(engine.guard.running)

    def test_reconcile_keeps_desired_user_whose_invite_failed(self):
        directory = FakeDirectory(members={'g-sales': {'u-a'}})
        self.cache.put_group_id(SALES, 'g-sales')
        self.cache.set_group_members('g-sales', ['u-a'])
        users = [federated_user('u1', 'a@example.com', 'Sales_Team')]
        engine = self.make_engine(users, directory, group_mappings=(SALES,), remove_memberships=True)
        cache = self.cache

        def invite_then_fail(email, display_name):
            # The guest reaches the cache even though this invite fails
            cache.put_guest(email, 'u-a')
            raise ApiError("conflict", kind=ErrorKind.CLIENT_ERROR, status_code=409)

        engine.directory = Mock(wraps=directory)
        engine.directory.ensure_guest_user.side_effect = invite_then_fail

        engine.run_cycle()

        engine.directory.remove_member.assert_not_called()


class TestConcurrentCycles(EngineTestCase):
    """Only one cycle runs at a time."""

    def test_second_trigger_during_cycle_is_discarded(self):
        started = threading.Event()
        release = threading.Event()
        engine = self.make_engine([], FakeDirectory())
        engine.source = Mock()

        def slow_fetch():
            started.set()
            release.wait(5)
            return []

        engine.source.fetch_users.side_effect = slow_fetch
        results = []
        worker = threading.Thread(target=lambda: results.append(engine.run_cycle()))
        worker.start()
        self.assertTrue(started.wait(5))

        self.assertIsNone(engine.run_cycle())

        release.set()
        worker.join(5)
        self.assertEqual(engine.source.fetch_users.call_count, 1)
        self.assertIsNotNone(results[0])


class TestEnsureUserInGroups(EngineTestCase):
    """Per-user membership operation."""

    def test_prefixes_dedupes_and_counts(self):
        directory = FakeDirectory()
        self.cache.put_group_id(SALES, 'g-sales')
        self.cache.put_group_id(MARKETING, 'g-marketing')
        self.cache.set_group_members('g-marketing', ['u-x'])
        engine = self.make_engine([], directory)

        result = engine.ensure_user_in_groups('u-x', ['Sales_All', SALES, 'Marketing_All', 'Finance_All', ' '])

        self.assertEqual(result.groups, 3)
        self.assertEqual(result.added, 1)
        self.assertEqual(result.skipped, 1)
        self.assertEqual(result.failed, 1)
        self.assertEqual(directory.calls_to('add_member'), [('add_member', 'g-sales', 'u-x')])

    def test_no_groups_returns_empty_result(self):
        engine = self.make_engine([], FakeDirectory())
        result = engine.ensure_user_in_groups('u-x', [])
        self.assertEqual((result.groups, result.added, result.skipped, result.failed), (0, 0, 0, 0))

    def test_blank_user_id_raises(self):
        engine = self.make_engine([], FakeDirectory())
        with self.assertRaises(ValueError):
            engine.ensure_user_in_groups('  ', [SALES])


class TestComputeRemovals(unittest.TestCase):
    """Removal set never intersects the desired set."""

    def test_removals_exclude_desired(self):
        cases = [
            ({'u1', 'u2'}, {'u2', 'u3'}),
            (set(), {'u1'}),
            ({'u1'}, set()),
            ({'a', 'b', 'c'}, {'a', 'b', 'c'}),
        ]
        for current, desired in cases:
            removals = compute_removals(current, desired)
            self.assertEqual(removals & desired, set())
            self.assertTrue(removals <= current)

    def test_scenario_b_set_difference(self):
        self.assertEqual(compute_removals({'u1', 'u2'}, {'u2', 'u3'}), {'u1'})


class TestCycleGuard(unittest.TestCase):

    def test_single_slot(self):
        guard = CycleGuard()
        self.assertTrue(guard.try_acquire())
        self.assertTrue(guard.running)
        self.assertFalse(guard.try_acquire())
        guard.release()
        self.assertFalse(guard.running)
        self.assertTrue(guard.try_acquire())
        guard.release()


if __name__ == '__main__':
    unittest.main()
