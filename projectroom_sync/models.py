"""SQLAlchemy database models."""
from sqlalchemy import (
    Column,
    String,
    Text,
    Integer,
    DateTime,
    Boolean,
    ForeignKey,
)
from sqlalchemy.orm import declarative_base, relationship

# Base class for all models
Base = declarative_base()


class Person(Base):
    """A directory user as last seen by the reconciliation engine."""

    __tablename__ = 'person'

    person_id = Column(Integer, primary_key=True, autoincrement=True)
    # Directory username
    person_name = Column(String(255), nullable=False, unique=True, index=True)
    display_name = Column(String(255), nullable=False, default='')
    firstname = Column(String(255), nullable=True)
    surname = Column(String(255), nullable=True)
    # UTC; when this person was last confirmed in the directory
    last_sync = Column(DateTime, nullable=False)
    has_write_privilege = Column(Boolean, nullable=False, default=False)

    memberships = relationship(
        'PersonProjectMap',
        back_populates='person',
        cascade='all, delete-orphan',
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<Person {self.person_id} {self.person_name!r}>"


class Project(Base):
    __tablename__ = 'project'

    project_id = Column(Integer, primary_key=True, autoincrement=True)
    project_name = Column(String(255), nullable=False)
    # Remote room bound to this project, set once provisioned
    room_id = Column(String(255), nullable=True)
    # UTC; last fully successful membership sync of the room
    room_last_sync = Column(DateTime, nullable=True)

    memberships = relationship(
        'PersonProjectMap',
        back_populates='project',
        passive_deletes='all',
    )

    def __repr__(self):
        return f"<Project {self.project_id} {self.project_name!r}>"


class PersonProjectMap(Base):
    """Assignment of a person to a project."""

    __tablename__ = 'person_project_map'

    person_id = Column(Integer, ForeignKey('person.person_id', ondelete='CASCADE'), primary_key=True)
    project_id = Column(Integer, ForeignKey('project.project_id', ondelete='RESTRICT'), primary_key=True, index=True)
    is_project_admin = Column(Boolean, nullable=False, default=False)

    person = relationship('Person', back_populates='memberships')
    project = relationship('Project', back_populates='memberships')


class User(Base):
    """Web login identity. Maps to the Person with the same directory username."""

    __tablename__ = 'users'

    user_id = Column(Integer, primary_key=True, autoincrement=True)
    user_name = Column(String(255), nullable=False, unique=True, index=True)
    last_sync = Column(DateTime, nullable=False)
    has_write_privilege = Column(Boolean, nullable=False, default=False)

    api_tokens = relationship('ApiToken', back_populates='user')


class ApiToken(Base):
    __tablename__ = 'api_token'

    api_token_id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.user_id'), nullable=False, index=True)
    token_hash = Column(Text, nullable=False)

    user = relationship('User', back_populates='api_tokens')
