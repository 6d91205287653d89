#!/usr/bin/env python3
"""
Tests for the reconciliation engine.

The engine runs against a real persistence gateway on in-memory SQLite and
in-memory fakes of the directory and the room service, so every scenario
checks the state that ends up stored and in the rooms.
"""

import os
import sys
import json
import threading
import unittest
from datetime import datetime, timedelta

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from projectroom_sync.ldap_client import DirectoryUser, DirectoryUnavailable, DirectoryQueryError
from projectroom_sync.reconcile import ReconciliationEngine, RoomStatus, TickSummary
from projectroom_sync.rooms.base import (
    RoomHandle,
    RoomServiceError,
    RoomServiceUnavailable,
    MembershipChangeError,
)
from projectroom_sync.storage import Storage, PersistenceError


SERVER = 'example.com'
T0 = datetime(2026, 1, 1, 0, 0, 0)


def uid(username):
    return f'@{username}:{SERVER}'


class FakeDirectory:
    """In-memory directory: username -> (display name, privilege or exception to raise)."""

    def __init__(self, users=None):
        self.users = dict(users or {})
        self.fetch_error = None
        self.privilege_checks = []
        self.on_privilege_check = None

    def fetch_directory_users(self):
        if self.fetch_error:
            raise self.fetch_error
        return {DirectoryUser(name, display) for name, (display, _) in self.users.items()}

    def has_write_privilege(self, username):
        self.privilege_checks.append(username)
        if self.on_privilege_check:
            self.on_privilege_check(username)
        privilege = self.users[username][1]
        if isinstance(privilege, Exception):
            raise privilege
        return privilege


class FakeRooms:
    """In-memory room service with the same contract as the Matrix client."""

    def __init__(self):
        self.rooms = {}
        self.aliases = {}
        self.fail_invites = set()
        self.unavailable_projects = set()
        self.invites = []
        self.removals = []
        self.created = []

    def user_id_for(self, username):
        return uid(username.lower())

    def is_managed_user_id(self, user_id, known_usernames):
        localpart, _, server = user_id[1:].partition(':')
        return server == SERVER and localpart in {name.lower() for name in known_usernames}

    def add_room(self, project_id, members):
        room_id = f'!room{project_id}:{SERVER}'
        self.rooms[room_id] = set(members)
        self.aliases[project_id] = room_id
        return room_id

    def ensure_room(self, project, initial_members=()):
        if project.project_id in self.unavailable_projects:
            raise RoomServiceUnavailable('homeserver unreachable')
        if project.room_id in self.rooms:
            return RoomHandle(project.room_id)
        if project.project_id in self.aliases:
            return RoomHandle(self.aliases[project.project_id])

        room_id = self.add_room(project.project_id, initial_members)
        self.created.append(project.project_id)
        return RoomHandle(room_id, created=True)

    def list_room_members(self, room):
        return set(self.rooms[room.room_id])

    def invite(self, room, user_id):
        if user_id in self.fail_invites:
            raise MembershipChangeError('invite', user_id, room.room_id,
                                        RoomServiceError('forbidden', status_code=403))
        self.invites.append(user_id)
        members = self.rooms[room.room_id]
        if user_id in members:
            return False
        members.add(user_id)
        return True

    def remove(self, room, user_id):
        self.removals.append(user_id)
        members = self.rooms[room.room_id]
        if user_id not in members:
            return False
        members.discard(user_id)
        return True


class Clock:
    def __init__(self):
        self.now = T0

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


def make_storage():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    storage = Storage(engine)
    storage.create_schema()
    return storage


class EngineTestCase(unittest.TestCase):

    def setUp(self):
        self.directory = FakeDirectory()
        self.rooms = FakeRooms()
        self.storage = make_storage()
        self.clock = Clock()
        self.cancel_event = threading.Event()
        self.engine = ReconciliationEngine(
            self.directory, self.rooms, self.storage,
            cancel_event=self.cancel_event, clock=self.clock
        )

    def people(self):
        return {person.person_name: person for person in self.storage.list_people()}

    def add_person(self, username, privilege=False, synced_at=T0):
        return self.storage.upsert_person(username, username.title(), privilege, synced_at).person

    def add_project(self, name, usernames, room_id=None):
        project = self.storage.create_project(name, room_id=room_id)
        people = self.people()
        for username in usernames:
            self.storage.set_membership(people[username].person_id, project.project_id)
        return project

    def project(self, project_id):
        return {p.project_id: p for p in self.storage.list_projects()}[project_id]


class TestDirectoryPass(EngineTestCase):

    def test_scenario_new_users_and_privileges(self):
        """alice matches the write access filter, bob does not."""
        self.directory.users = {'alice': ('Alice', True), 'bob': ('Bob', False)}

        summary = self.engine.run_tick()

        people = self.people()
        self.assertEqual(set(people), {'alice', 'bob'})
        self.assertTrue(people['alice'].has_write_privilege)
        self.assertFalse(people['bob'].has_write_privilege)
        self.assertEqual(people['alice'].display_name, 'Alice')
        self.assertEqual(summary.users_seen, 2)
        self.assertEqual(summary.users_created, 2)
        self.assertEqual(summary.users_upserted, 2)
        self.assertTrue(summary.ok)

    def test_scenario_directory_lost_mid_tick(self):
        """Nothing is written when the directory goes away during the privilege checks."""
        self.add_person('alice', privilege=True)
        self.add_person('bob', privilege=False)
        self.directory.users = {
            'alice': ('Alice Renamed', False),
            'bob': ('Bob', DirectoryUnavailable('connection reset')),
            'carol': ('Carol', True),
        }

        summary = self.engine.run_tick()

        people = self.people()
        self.assertEqual(set(people), {'alice', 'bob'})
        self.assertEqual(people['alice'].last_sync, T0)
        self.assertEqual(people['alice'].display_name, 'Alice')
        self.assertTrue(people['alice'].has_write_privilege)
        self.assertEqual(people['bob'].last_sync, T0)
        self.assertEqual(summary.users_upserted, 0)
        self.assertEqual(len(summary.errors_of('DirectoryUnavailable')), 1)
        self.assertEqual(len(summary.errors), 1)
        self.assertFalse(summary.ok)

    def test_directory_unreachable_at_start_of_tick(self):
        self.add_person('alice', privilege=True)
        self.directory.fetch_error = DirectoryUnavailable('bind failed')

        summary = self.engine.run_tick()

        self.assertEqual(self.people()['alice'].last_sync, T0)
        self.assertEqual([e.kind for e in summary.errors], ['DirectoryUnavailable'])
        self.assertEqual(self.directory.privilege_checks, [])

    def test_scenario_ambiguous_privilege(self):
        """An ambiguous privilege result means no privilege for that user only."""
        self.add_person('mallory', privilege=True)
        self.directory.users = {
            'alice': ('Alice', True),
            'mallory': ('Mallory', DirectoryQueryError('Write access filter matched 2 entries')),
            'zoe': ('Zoe', False),
        }

        summary = self.engine.run_tick()

        people = self.people()
        self.assertFalse(people['mallory'].has_write_privilege)
        self.assertTrue(people['alice'].has_write_privilege)
        self.assertFalse(people['zoe'].has_write_privilege)
        self.assertEqual(summary.users_upserted, 3)
        [error] = summary.errors
        self.assertEqual(error.kind, 'DirectoryQueryError')
        self.assertIn('mallory', error.entity)

    def test_privileges_checked_in_username_order(self):
        self.directory.users = {name: (name, False) for name in ('zoe', 'alice', 'mallory', 'bob')}

        self.engine.run_tick()

        self.assertEqual(self.directory.privilege_checks, ['alice', 'bob', 'mallory', 'zoe'])

    def test_repeated_tick_only_refreshes_timestamps(self):
        self.directory.users = {'alice': ('Alice', True), 'bob': ('Bob', False)}
        self.engine.run_tick()
        before = self.people()

        summary = self.engine.run_tick()

        after = self.people()
        self.assertEqual(summary.users_created, 0)
        self.assertEqual(summary.privilege_changes, 0)
        for name in ('alice', 'bob'):
            self.assertEqual(after[name].person_id, before[name].person_id)
            self.assertEqual(after[name].display_name, before[name].display_name)
            self.assertEqual(after[name].has_write_privilege, before[name].has_write_privilege)
            self.assertGreater(after[name].last_sync, before[name].last_sync)

    def test_privilege_revocation_applied_within_one_tick(self):
        self.add_person('alice', privilege=True)
        self.directory.users = {'alice': ('Alice', False)}

        summary = self.engine.run_tick()

        self.assertFalse(self.people()['alice'].has_write_privilege)
        self.assertEqual(summary.privilege_changes, 1)

    def test_people_missing_from_directory_left_unchanged(self):
        self.add_person('olduser', privilege=True)
        self.directory.users = {'alice': ('Alice', False)}

        summary = self.engine.run_tick()

        olduser = self.people()['olduser']
        self.assertTrue(olduser.has_write_privilege)
        self.assertEqual(olduser.last_sync, T0)
        self.assertEqual(summary.stale_people, 1)
        self.assertNotIn('olduser', self.directory.privilege_checks)

    def test_failed_upsert_does_not_stop_others(self):
        self.directory.users = {'alice': ('Alice', True), 'bob': ('Bob', False)}
        original = self.storage.upsert_person

        def flaky_upsert(username, *args, **kwargs):
            if username == 'alice':
                raise PersistenceError('database is locked')
            return original(username, *args, **kwargs)

        self.storage.upsert_person = flaky_upsert

        summary = self.engine.run_tick()

        self.assertEqual(set(self.people()), {'bob'})
        self.assertEqual(summary.users_upserted, 1)
        self.assertEqual([e.kind for e in summary.errors], ['PersistenceError'])


class TestRoomPass(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.directory.users = {
            'alice': ('Alice', True),
            'bob': ('Bob', False),
            'dave': ('Dave', False),
        }
        for username in self.directory.users:
            self.add_person(username)

    def test_scenario_unmanaged_member_left_alone(self):
        """carol is not a known person, so the room keeps her."""
        room_id = self.rooms.add_room(1, {uid('carol')})
        project = self.add_project('Atlas', ['alice', 'bob'], room_id=room_id)

        summary = self.engine.run_tick()

        self.assertEqual(self.rooms.rooms[room_id], {uid('alice'), uid('bob'), uid('carol')})
        self.assertEqual(self.rooms.removals, [])
        self.assertEqual(summary.members_invited, 2)
        self.assertEqual(summary.room_states[project.project_id], RoomStatus.SYNCED)

    def test_managed_member_without_membership_removed(self):
        room_id = self.rooms.add_room(1, {uid('alice'), uid('dave')})
        self.add_project('Atlas', ['alice'], room_id=room_id)

        summary = self.engine.run_tick()

        self.assertEqual(self.rooms.rooms[room_id], {uid('alice')})
        self.assertEqual(summary.members_removed, 1)
        self.assertEqual(summary.members_invited, 0)

    def test_full_sync_advances_room_timestamp(self):
        room_id = self.rooms.add_room(1, {uid('dave')})
        project = self.add_project('Atlas', ['alice', 'bob'], room_id=room_id)

        summary = self.engine.run_tick()

        self.assertEqual(self.rooms.rooms[room_id], {uid('alice'), uid('bob')})
        self.assertIsNotNone(self.project(project.project_id).room_last_sync)
        self.assertEqual(summary.projects_synced, 1)
        self.assertTrue(summary.ok)

    def test_room_provisioned_for_new_project(self):
        project = self.add_project('Atlas', ['alice', 'bob'])

        summary = self.engine.run_tick()

        stored = self.project(project.project_id)
        self.assertIsNotNone(stored.room_id)
        self.assertEqual(self.rooms.rooms[stored.room_id], {uid('alice'), uid('bob')})
        self.assertEqual(summary.rooms_provisioned, 1)
        # Initial members go out with the room, nothing left to invite
        self.assertEqual(self.rooms.invites, [])

        second = self.engine.run_tick()

        self.assertEqual(second.rooms_provisioned, 0)
        self.assertEqual(self.rooms.created, [project.project_id])

    def test_partial_failure_retries_only_outstanding_invite(self):
        room_id = self.rooms.add_room(1, set())
        project = self.add_project('Atlas', ['alice', 'bob'], room_id=room_id)
        self.rooms.fail_invites = {uid('bob')}

        first = self.engine.run_tick()

        self.assertEqual(self.rooms.rooms[room_id], {uid('alice')})
        self.assertIsNone(self.project(project.project_id).room_last_sync)
        self.assertEqual(first.room_states[project.project_id], RoomStatus.DRIFTING)
        self.assertEqual([e.kind for e in first.errors], ['MembershipChangeError'])
        self.assertEqual(first.projects_failed, 1)

        self.rooms.fail_invites = set()
        self.rooms.invites = []

        second = self.engine.run_tick()

        self.assertEqual(self.rooms.invites, [uid('bob')])
        self.assertEqual(self.rooms.rooms[room_id], {uid('alice'), uid('bob')})
        self.assertIsNotNone(self.project(project.project_id).room_last_sync)
        self.assertEqual(second.room_states[project.project_id], RoomStatus.SYNCED)

    def test_failed_invite_does_not_block_other_changes(self):
        room_id = self.rooms.add_room(1, {uid('dave')})
        self.add_project('Atlas', ['alice', 'bob'], room_id=room_id)
        self.rooms.fail_invites = {uid('alice')}

        summary = self.engine.run_tick()

        self.assertEqual(self.rooms.rooms[room_id], {uid('bob')})
        self.assertEqual(summary.members_invited, 1)
        self.assertEqual(summary.members_removed, 1)

    def test_membership_change_between_ticks(self):
        room_id = self.rooms.add_room(1, set())
        project = self.add_project('Atlas', ['alice', 'bob'], room_id=room_id)
        self.engine.run_tick()

        bob = self.people()['bob']
        self.storage.clear_membership(bob.person_id, project.project_id)
        summary = self.engine.run_tick()

        self.assertEqual(self.rooms.rooms[room_id], {uid('alice')})
        self.assertEqual(summary.members_removed, 1)

    def test_projects_isolated_from_each_other(self):
        first = self.add_project('Atlas', ['alice'])
        second = self.add_project('Borealis', ['bob'])
        self.rooms.unavailable_projects = {first.project_id}

        summary = self.engine.run_tick()

        self.assertEqual(summary.room_states[first.project_id], RoomStatus.UNPROVISIONED)
        self.assertEqual(summary.room_states[second.project_id], RoomStatus.SYNCED)
        self.assertEqual(summary.projects_failed, 1)
        self.assertEqual(summary.projects_synced, 1)
        [error] = summary.errors
        self.assertEqual(error.kind, 'RoomServiceUnavailable')
        self.assertIn('Atlas', error.entity)

    def test_unavailable_room_of_provisioned_project_is_drifting(self):
        room_id = self.rooms.add_room(1, set())
        project = self.add_project('Atlas', ['alice'], room_id=room_id)
        self.rooms.unavailable_projects = {project.project_id}

        summary = self.engine.run_tick()

        self.assertEqual(summary.room_states[project.project_id], RoomStatus.DRIFTING)

    def test_room_pass_sees_people_written_by_directory_pass(self):
        """A person new in the directory this tick is already managed in the room pass."""
        self.directory.users['erin'] = ('Erin', False)
        room_id = self.rooms.add_room(1, {uid('erin')})
        self.add_project('Atlas', [], room_id=room_id)

        self.engine.run_tick()

        self.assertEqual(self.rooms.rooms[room_id], set())


class TestCancellationAndSummary(EngineTestCase):

    def test_cancelled_before_start(self):
        self.directory.users = {'alice': ('Alice', True)}
        self.cancel_event.set()

        summary = self.engine.run_tick()

        self.assertTrue(summary.cancelled)
        self.assertFalse(summary.ok)
        self.assertEqual(self.people(), {})
        self.assertEqual(self.directory.privilege_checks, [])

    def test_cancelled_during_directory_pass(self):
        self.directory.users = {'alice': ('Alice', True), 'bob': ('Bob', False)}
        self.directory.on_privilege_check = lambda username: self.cancel_event.set()

        summary = self.engine.run_tick()

        self.assertTrue(summary.cancelled)
        self.assertEqual(self.directory.privilege_checks, ['alice'])
        self.assertEqual(self.people(), {})
        self.assertEqual(summary.room_states, {})

    def test_summary_is_json_serialisable(self):
        self.directory.users = {
            'alice': ('Alice', True),
            'mallory': ('Mallory', DirectoryQueryError('ambiguous')),
        }
        self.add_person('alice')
        self.add_project('Atlas', ['alice'])

        summary = self.engine.run_tick()
        data = json.loads(json.dumps(summary.to_dict()))

        self.assertEqual(data['users_seen'], 2)
        self.assertEqual(data['rooms_provisioned'], 1)
        self.assertEqual(data['room_states'], {'1': 'synced'})
        self.assertEqual(data['errors'][0]['kind'], 'DirectoryQueryError')
        self.assertFalse(data['ok'])
        self.assertIsNotNone(data['finished_at'])

    def test_clean_summary_is_ok(self):
        summary = TickSummary(started_at=T0, finished_at=T0 + timedelta(seconds=3))

        self.assertTrue(summary.ok)
        self.assertEqual(summary.runtime_seconds, 3.0)


if __name__ == '__main__':
    unittest.main()
