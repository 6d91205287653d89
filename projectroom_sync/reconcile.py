"""
Reconciliation engine.

One tick runs two passes back to back:

* the directory pass brings Person rows in line with the directory
  (existence, display name, write privilege);
* the room pass brings each project's room membership in line with the
  PersonProjectMap rows for that project.

Nothing is cached between ticks; every tick re-reads local state so manual
edits made in between are respected. All writes go through the persistence
gateway one transaction at a time and are safe to redo, so a failed or
cancelled tick simply leaves its outstanding work to the next one.
"""

import json
import logging
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from projectroom_sync.ldap_client import DirectoryError, DirectoryQueryError, DirectoryUnavailable
from projectroom_sync.logging_setup import audit_logger
from projectroom_sync.rooms.base import RoomServiceError, MembershipChangeError
from projectroom_sync.storage import PersistenceError, utcnow

logger = logging.getLogger(__name__)


class TickCancelled(Exception):
    """Raised inside a tick once shutdown has been requested."""
    pass


class RoomStatus(str, Enum):
    UNPROVISIONED = 'unprovisioned'
    DRIFTING = 'drifting'
    SYNCED = 'synced'


@dataclass
class TickError:
    kind: str
    entity: str
    message: str


@dataclass
class TickSummary:
    """Counters and errors of one tick."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    users_seen: int = 0
    users_upserted: int = 0
    users_created: int = 0
    privilege_changes: int = 0
    stale_people: int = 0
    rooms_provisioned: int = 0
    members_invited: int = 0
    members_removed: int = 0
    projects_synced: int = 0
    projects_failed: int = 0
    room_states: Dict[int, RoomStatus] = field(default_factory=dict)
    errors: List[TickError] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors and not self.cancelled

    @property
    def runtime_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def record_error(self, entity: str, error: Exception):
        self.errors.append(TickError(kind=type(error).__name__, entity=entity, message=str(error)))

    def errors_of(self, kind: str) -> List[TickError]:
        return [error for error in self.errors if error.kind == kind]

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['started_at'] = self.started_at.isoformat()
        data['finished_at'] = self.finished_at.isoformat() if self.finished_at else None
        data['room_states'] = {str(project_id): status.value
                               for project_id, status in sorted(self.room_states.items())}
        data['ok'] = self.ok
        return data


class ReconciliationEngine:
    """
    Applies directory and room-service truth to local storage and rooms.

    Args:
        directory: DirectoryClient (or anything with the same contract)
        rooms: RoomServiceBase implementation
        storage: Persistence gateway
        cancel_event: Set to abort the running tick before its next network call
        clock: Returns the current naive-UTC time
    """

    def __init__(self, directory, rooms, storage,
                 cancel_event: Optional[threading.Event] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.directory = directory
        self.rooms = rooms
        self.storage = storage
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock

    def run_tick(self) -> TickSummary:
        """Run the directory pass and then the room pass."""
        summary = TickSummary(started_at=self.clock())
        logger.info("Starting reconciliation tick")

        try:
            self.directory_pass(summary)
            self.room_pass(summary)
        except TickCancelled:
            summary.cancelled = True
            logger.warning("Tick cancelled by shutdown request, remaining work left for the next tick")

        summary.finished_at = self.clock()
        self._log_summary(summary)
        return summary

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise TickCancelled()

    # Pass A

    def directory_pass(self, summary: TickSummary):
        """
        Sync Person rows from the directory.

        Every directory read happens before the first write, so losing the
        directory part way through leaves all rows as they were.
        """
        self._check_cancelled()
        logger.info("Directory pass: fetching directory users")

        try:
            directory_users = self.directory.fetch_directory_users()
        except DirectoryError as e:
            logger.error(f"Directory pass aborted, cannot list directory users: {e}")
            summary.record_error('directory', e)
            return

        try:
            known_usernames = {person.person_name for person in self.storage.list_people()}
        except PersistenceError as e:
            logger.error(f"Directory pass aborted, cannot read people: {e}")
            summary.record_error('storage', e)
            return

        users_by_name = {}
        for user in sorted(directory_users, key=lambda u: (u.username, u.display_name)):
            if user.username in users_by_name:
                logger.warning(f"Directory returned {user.username} more than once, keeping the first entry")
                continue
            users_by_name[user.username] = user
        usernames = sorted(users_by_name)
        summary.users_seen = len(usernames)

        privileges = {}
        for username in usernames:
            self._check_cancelled()
            try:
                privileges[username] = self.directory.has_write_privilege(username)
            except DirectoryQueryError as e:
                logger.warning(f"Privilege check for {username} failed, assuming no write privilege: {e}")
                summary.record_error(f"person {username}", e)
                privileges[username] = False
            except DirectoryUnavailable as e:
                logger.error(f"Directory pass aborted during privilege check of {username}, "
                             f"no people were updated: {e}")
                summary.record_error('directory', e)
                return

        synced_at = self.clock()
        for username in usernames:
            user = users_by_name[username]
            try:
                change = self.storage.upsert_person(
                    username,
                    user.display_name,
                    privileges[username],
                    synced_at,
                    firstname=user.firstname,
                    surname=user.surname,
                )
            except PersistenceError as e:
                logger.error(f"Failed to store person {username}: {e}")
                summary.record_error(f"person {username}", e)
                continue

            summary.users_upserted += 1
            if change.created:
                summary.users_created += 1
            audit_logger.log_person_upsert(username, change.created, privileges[username])
            if change.privilege_changed:
                summary.privilege_changes += 1
                audit_logger.log_privilege_change(username, privileges[username])

        stale = sorted(known_usernames - set(usernames))
        summary.stale_people = len(stale)
        if stale:
            logger.info(f"{len(stale)} people are no longer in the directory and were left unchanged: "
                        f"{', '.join(stale)}")

    # Pass B

    def room_pass(self, summary: TickSummary):
        """Sync each project's room membership, one project at a time."""
        self._check_cancelled()
        logger.info("Room pass: reconciling project rooms")

        try:
            projects = self.storage.list_projects()
            known_usernames = {person.person_name for person in self.storage.list_people()}
        except PersistenceError as e:
            logger.error(f"Room pass aborted, cannot read projects: {e}")
            summary.record_error('storage', e)
            return

        for project in projects:
            self._check_cancelled()
            status = self._reconcile_project(project, known_usernames, summary)
            summary.room_states[project.project_id] = status
            if status is RoomStatus.SYNCED:
                summary.projects_synced += 1
            else:
                summary.projects_failed += 1

    def _reconcile_project(self, project, known_usernames: Set[str], summary: TickSummary) -> RoomStatus:
        entity = f"project {project.project_id} ({project.project_name})"
        room_id = project.room_id

        try:
            memberships = self.storage.list_memberships(project.project_id)
            desired = {self.rooms.user_id_for(m.person.person_name) for m in memberships}

            self._check_cancelled()
            room = self.rooms.ensure_room(project, sorted(desired))
            if room.created:
                summary.rooms_provisioned += 1
                audit_logger.log_room_provisioned(project.project_name, room.room_id)
            if room.room_id != project.room_id:
                self.storage.set_room_id(project.project_id, room.room_id)
            room_id = room.room_id

            self._check_cancelled()
            actual = self.rooms.list_room_members(room)

            to_invite = sorted(desired - actual)
            extra = actual - desired
            to_remove = sorted(user_id for user_id in extra
                               if self.rooms.is_managed_user_id(user_id, known_usernames))
            unmanaged = sorted(extra - set(to_remove))
            if unmanaged:
                logger.debug(f"Leaving unmanaged members of {entity} untouched: {', '.join(unmanaged)}")

            failures = 0
            for user_id in to_invite:
                failures += self._apply_change('invite', room, user_id, entity, summary)
            for user_id in to_remove:
                failures += self._apply_change('remove', room, user_id, entity, summary)

            if failures:
                logger.warning(f"{failures} membership changes failed for {entity}, "
                               f"room sync time not advanced")
                return RoomStatus.DRIFTING

            self.storage.touch_room_sync(project.project_id, self.clock())

        except (RoomServiceError, PersistenceError) as e:
            logger.error(f"Room sync of {entity} failed: {e}")
            summary.record_error(entity, e)
            return RoomStatus.DRIFTING if room_id else RoomStatus.UNPROVISIONED

        logger.info(f"{entity} is in sync ({len(desired)} members)")
        return RoomStatus.SYNCED

    def _apply_change(self, operation: str, room, user_id: str, entity: str, summary: TickSummary) -> int:
        """Apply one invite or removal. Returns the number of failures (0 or 1)."""
        self._check_cancelled()
        action = self.rooms.invite if operation == 'invite' else self.rooms.remove

        try:
            changed = action(room, user_id)
        except MembershipChangeError as e:
            logger.error(f"{operation} of {user_id} in {entity} failed: {e.cause}")
            summary.record_error(entity, e)
            audit_logger.log_membership_change(operation, user_id, room.room_id, False)
            return 1

        if changed:
            if operation == 'invite':
                summary.members_invited += 1
            else:
                summary.members_removed += 1
            audit_logger.log_membership_change(operation, user_id, room.room_id, True)
        return 0

    # Reporting

    def _log_summary(self, summary: TickSummary):
        logger.info(f"Tick summary: {json.dumps(summary.to_dict(), sort_keys=True)}")

        logger.info("=== Tick Summary ===")
        logger.info(f"Runtime: {summary.runtime_seconds:.2f} seconds")
        logger.info(f"Directory users seen: {summary.users_seen}")
        logger.info(f"People upserted: {summary.users_upserted} ({summary.users_created} new)")
        logger.info(f"Privilege changes: {summary.privilege_changes}")
        logger.info(f"People missing from directory: {summary.stale_people}")
        logger.info(f"Rooms provisioned: {summary.rooms_provisioned}")
        logger.info(f"Members invited: {summary.members_invited}")
        logger.info(f"Members removed: {summary.members_removed}")
        logger.info(f"Projects synced: {summary.projects_synced}")
        logger.info(f"Projects failed: {summary.projects_failed}")
        logger.info(f"Total errors: {len(summary.errors)}")

        for error in summary.errors:
            logger.info(f"  {error.kind} [{error.entity}]: {error.message}")
        if summary.cancelled:
            logger.info("Tick was cancelled before completion")
