"""
Matrix homeserver integration.

This module implements the RoomServiceBase interface on top of the Matrix
client-server API (v3). Each project gets one private room whose alias is
derived from the project id, and directory users map to Matrix users on the
configured server.
"""

import logging
import threading
from typing import Dict, Any, Iterable, Optional, Set
from urllib.parse import quote

from .base import RoomServiceBase, RoomServiceError, RoomHandle, MembershipChangeError

logger = logging.getLogger(__name__)

CLIENT_API = '/_matrix/client/v3'

# Membership states that count as "in the room"
MEMBER_STATES = ('join', 'invite')
BANNED = 'ban'


def _quote(value: str) -> str:
    return quote(value, safe='')


class MatrixRoomService(RoomServiceBase):
    """
    Matrix client-server API implementation.

    Logs in with a password-based service account and manages one room per
    project through room aliases of the form ``#<prefix><project id>:<servername>``.
    """

    def __init__(self, config: Dict[str, Any], cancel_event: Optional[threading.Event] = None):
        """
        Initialize Matrix room service client.

        Args:
            config: ``room_service`` configuration dictionary
            cancel_event: Ends retry waits early once set
        """
        super().__init__(config, cancel_event)

        self.servername = config['servername']
        self.username = config['username']
        self.password = config['password']
        self.alias_prefix = config.get('room_alias_prefix', 'project-')
        self.kick_reason = config.get('kick_reason', 'Project Room Sync')
        self.device_id = None

        logger.info(f"Initialized Matrix room service client for {self.servername}")

    @property
    def service_user_id(self) -> str:
        return self.user_id_for(self.username)

    def authenticate(self) -> bool:
        """Log in with ``m.login.password`` and keep the access token."""
        body = {
            'type': 'm.login.password',
            'identifier': {'type': 'm.id.user', 'user': self.username},
            'password': self.password,
            'initial_device_display_name': 'projectroom-sync'
        }
        if self.device_id:
            body['device_id'] = self.device_id

        try:
            response = self._request_with_retry('POST', f'{CLIENT_API}/login', body, None, False)
        except RoomServiceError as e:
            logger.error(f"Matrix login as {self.username} failed: {e}")
            return False

        token = response.get('access_token')
        if not token:
            logger.error(f"Matrix login response for {self.username} has no access_token")
            return False

        self.set_access_token(token)
        self.device_id = response.get('device_id', self.device_id)
        logger.info(f"Logged in to {self.servername} as {response.get('user_id', self.username)}")
        return True

    def user_id_for(self, username: str) -> str:
        if username.startswith('@'):
            return username
        return f"@{username.lower()}:{self.servername}"

    def is_managed_user_id(self, user_id: str, known_usernames: Set[str]) -> bool:
        if user_id == self.service_user_id:
            return False
        if not user_id.startswith('@') or ':' not in user_id:
            return False

        localpart, server = user_id[1:].split(':', 1)
        if server != self.servername:
            return False
        return localpart in {name.lower() for name in known_usernames}

    def room_alias_localpart(self, project) -> str:
        return f"{self.alias_prefix}{project.project_id}"

    def room_alias(self, project) -> str:
        return f"#{self.room_alias_localpart(project)}:{self.servername}"

    def ensure_room(self, project, initial_members: Iterable[str] = ()) -> RoomHandle:
        """
        Find the project's room by stored id, then by alias, and create it if neither resolves.
        """
        alias = self.room_alias(project)

        if project.room_id and project.room_id in self._joined_rooms():
            return RoomHandle(room_id=project.room_id, alias=alias)

        room_id = self._resolve_alias(alias)
        if room_id:
            if project.room_id:
                logger.warning(f"Stored room {project.room_id} of project {project.project_name} "
                               f"does not resolve, using {room_id} from alias {alias}")
            return RoomHandle(room_id=room_id, alias=alias)

        invites = sorted(set(initial_members) - {self.service_user_id})
        body = {
            'room_alias_name': self.room_alias_localpart(project),
            'name': project.project_name,
            'preset': 'private_chat',
            'invite': invites
        }

        try:
            response = self.request('POST', f'{CLIENT_API}/createRoom', body)
        except RoomServiceError as e:
            # Another creator claimed the alias since we resolved it
            if e.errcode == 'M_ROOM_IN_USE':
                room_id = self._resolve_alias(alias)
                if room_id:
                    return RoomHandle(room_id=room_id, alias=alias)
            raise

        room_id = response.get('room_id')
        if not room_id:
            raise RoomServiceError(f"createRoom for {alias} returned no room_id")

        logger.info(f"Created room {room_id} ({alias}) for project {project.project_name} "
                    f"with {len(invites)} initial invites")
        return RoomHandle(room_id=room_id, alias=alias, created=True)

    def _joined_rooms(self) -> Set[str]:
        response = self.request('GET', f'{CLIENT_API}/joined_rooms')
        return set(response.get('joined_rooms', []))

    def _resolve_alias(self, alias: str) -> Optional[str]:
        try:
            response = self.request('GET', f'{CLIENT_API}/directory/room/{_quote(alias)}')
        except RoomServiceError as e:
            if e.status_code == 404:
                return None
            raise
        return response.get('room_id')

    def list_room_members(self, room: RoomHandle) -> Set[str]:
        response = self.request('GET', f'{CLIENT_API}/rooms/{_quote(room.room_id)}/members')

        members = set()
        for event in response.get('chunk', []):
            membership = (event.get('content') or {}).get('membership')
            if membership in MEMBER_STATES and event.get('state_key'):
                members.add(event['state_key'])

        logger.debug(f"Room {room.room_id} has {len(members)} joined or invited members")
        return members

    def _membership_of(self, room_id: str, user_id: str) -> Optional[str]:
        path = f'{CLIENT_API}/rooms/{_quote(room_id)}/state/m.room.member/{_quote(user_id)}'
        try:
            response = self.request('GET', path)
        except RoomServiceError as e:
            if e.status_code == 404:
                return None
            raise
        return response.get('membership')

    def invite(self, room: RoomHandle, user_id: str) -> bool:
        try:
            membership = self._membership_of(room.room_id, user_id)
            if membership in MEMBER_STATES:
                logger.debug(f"{user_id} is already {membership} in {room.room_id}")
                return False
            if membership == BANNED:
                # Lifting a ban is left to the room moderators
                logger.warning(f"{user_id} is banned from {room.room_id}, not inviting")
                return False

            self.request('POST', f'{CLIENT_API}/rooms/{_quote(room.room_id)}/invite', {'user_id': user_id})
        except RoomServiceError as e:
            raise MembershipChangeError('invite', user_id, room.room_id, e)

        logger.info(f"Invited {user_id} to room {room.room_id}")
        return True

    def remove(self, room: RoomHandle, user_id: str) -> bool:
        try:
            membership = self._membership_of(room.room_id, user_id)
            if membership not in MEMBER_STATES:
                logger.debug(f"{user_id} is not in {room.room_id}, nothing to remove")
                return False

            # Kicking also retracts a pending invite
            self.request('POST', f'{CLIENT_API}/rooms/{_quote(room.room_id)}/kick',
                         {'user_id': user_id, 'reason': self.kick_reason})
        except RoomServiceError as e:
            raise MembershipChangeError('remove', user_id, room.room_id, e)

        logger.info(f"Removed {user_id} from room {room.room_id}")
        return True
