"""
Persistence gateway for people, projects and their memberships.

Every public method runs in its own transaction: it commits on success and
rolls back on any failure, so a failed call never leaves partial writes.
Returned rows are detached from their session and safe to read after the
call returns.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import create_engine, event, select, func, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, joinedload

from projectroom_sync.models import Base, Person, Project, PersonProjectMap

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when a storage operation fails."""
    pass


def utcnow() -> datetime:
    """Current time as naive UTC, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class PersonChange:
    """Outcome of one person upsert."""

    person: Person
    created: bool = False
    privilege_changed: bool = False
    renamed: bool = False


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE rules unless asked per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Storage:
    """SQLAlchemy implementation of the persistence gateway."""

    def __init__(self, engine: Engine):
        self.engine = engine
        if engine.dialect.name == 'sqlite':
            event.listen(engine, 'connect', _enable_sqlite_foreign_keys)
        self._session_factory = sessionmaker(
            bind=engine, autoflush=False, expire_on_commit=False
        )

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> 'Storage':
        """
        Create a gateway for a database URL.

        Args:
            url: SQLAlchemy database URL
            echo: Log every SQL statement

        Returns:
            Storage bound to a new engine
        """
        try:
            engine = create_engine(url, echo=echo, pool_pre_ping=True)
        except (SQLAlchemyError, ImportError) as e:
            raise PersistenceError(f"Cannot create database engine: {e}") from e
        return cls(engine)

    @contextmanager
    def session_scope(self):
        """Provide a transactional scope around a series of operations."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self):
        """Create all tables that do not exist yet."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Schema creation failed: {e}") from e
        logger.info("Database schema is up to date")

    def check_connection(self) -> bool:
        """
        Test database connectivity.

        Returns:
            True if a trivial query succeeds
        """
        try:
            with self.session_scope() as session:
                session.execute(text('SELECT 1'))
            return True
        except PersistenceError as e:
            logger.error(f"Database connection test failed: {e}")
            return False

    # People

    def upsert_person(self, username: str, display_name: str, has_write_privilege: bool,
                      synced_at: datetime, firstname: Optional[str] = None,
                      surname: Optional[str] = None) -> PersonChange:
        """
        Create or update the person with directory username ``username``.

        Args:
            username: Directory username (unique key)
            display_name: Display name observed in the directory
            has_write_privilege: Privilege observed in the directory
            synced_at: Tick timestamp written to ``last_sync``
            firstname: Given name, if the directory has one
            surname: Surname, if the directory has one

        Returns:
            PersonChange describing what changed
        """
        with self.session_scope() as session:
            person = session.execute(
                select(Person).where(Person.person_name == username)
            ).scalar_one_or_none()

            if person is None:
                person = Person(
                    person_name=username,
                    display_name=display_name,
                    firstname=firstname,
                    surname=surname,
                    last_sync=synced_at,
                    has_write_privilege=has_write_privilege,
                )
                session.add(person)
                session.flush()
                return PersonChange(person=person, created=True)

            change = PersonChange(
                person=person,
                privilege_changed=person.has_write_privilege != has_write_privilege,
                renamed=person.display_name != display_name,
            )
            person.display_name = display_name
            person.firstname = firstname
            person.surname = surname
            person.has_write_privilege = has_write_privilege
            person.last_sync = synced_at
            return change

    def list_people(self) -> List[Person]:
        with self.session_scope() as session:
            return list(session.execute(select(Person).order_by(Person.person_name)).scalars())

    def delete_person(self, person_id: int) -> bool:
        """Delete a person; their project memberships go with them."""
        with self.session_scope() as session:
            person = session.get(Person, person_id)
            if person is None:
                return False
            session.delete(person)
        logger.info(f"Deleted person {person_id}")
        return True

    def person_for_user(self, user_name: str) -> Optional[Person]:
        """Person backing the web-login user ``user_name`` (same directory username)."""
        with self.session_scope() as session:
            return session.execute(
                select(Person).where(Person.person_name == user_name)
            ).scalar_one_or_none()

    # Projects

    def create_project(self, project_name: str, room_id: Optional[str] = None) -> Project:
        with self.session_scope() as session:
            project = Project(project_name=project_name, room_id=room_id)
            session.add(project)
            session.flush()
            return project

    def list_projects(self) -> List[Project]:
        """All projects in ascending id order."""
        with self.session_scope() as session:
            return list(session.execute(select(Project).order_by(Project.project_id)).scalars())

    def delete_project(self, project_id: int) -> bool:
        """
        Delete a project.

        Raises:
            PersistenceError: While people are still assigned to the project
        """
        with self.session_scope() as session:
            project = session.get(Project, project_id)
            if project is None:
                return False

            member_count = session.execute(
                select(func.count()).select_from(PersonProjectMap)
                .where(PersonProjectMap.project_id == project_id)
            ).scalar_one()
            if member_count:
                raise PersistenceError(
                    f"Project {project_id} still has {member_count} assigned people"
                )
            session.delete(project)
        logger.info(f"Deleted project {project_id}")
        return True

    def set_room_id(self, project_id: int, room_id: str):
        with self.session_scope() as session:
            project = self._get_project(session, project_id)
            project.room_id = room_id

    def touch_room_sync(self, project_id: int, synced_at: datetime):
        """Record a fully successful membership sync of the project's room."""
        with self.session_scope() as session:
            project = self._get_project(session, project_id)
            project.room_last_sync = synced_at

    @staticmethod
    def _get_project(session, project_id: int) -> Project:
        project = session.get(Project, project_id)
        if project is None:
            raise PersistenceError(f"Project {project_id} does not exist")
        return project

    # Memberships

    def list_memberships(self, project_id: int) -> List[PersonProjectMap]:
        """Membership rows of a project, each with its ``person`` loaded."""
        with self.session_scope() as session:
            return list(session.execute(
                select(PersonProjectMap)
                .options(joinedload(PersonProjectMap.person))
                .where(PersonProjectMap.project_id == project_id)
                .order_by(PersonProjectMap.person_id)
            ).scalars())

    def set_membership(self, person_id: int, project_id: int, is_admin: bool = False) -> PersonProjectMap:
        """Assign a person to a project, or update the admin flag of an existing assignment."""
        with self.session_scope() as session:
            membership = session.get(PersonProjectMap, (person_id, project_id))
            if membership is None:
                membership = PersonProjectMap(
                    person_id=person_id, project_id=project_id, is_project_admin=is_admin
                )
                session.add(membership)
            else:
                membership.is_project_admin = is_admin
            session.flush()
            return membership

    def clear_membership(self, person_id: int, project_id: int) -> bool:
        """Remove an assignment. Returns False if there was none."""
        with self.session_scope() as session:
            membership = session.get(PersonProjectMap, (person_id, project_id))
            if membership is None:
                return False
            session.delete(membership)
            return True
