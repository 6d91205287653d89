"""
Room service integrations.

Each module in this package implements :class:`~projectroom_sync.rooms.base.RoomServiceBase`
for one chat platform; the module to use is chosen by ``room_service.module``.
"""

from projectroom_sync.rooms.base import (
    RoomHandle,
    RoomServiceBase,
    RoomServiceError,
    RoomServiceUnavailable,
    MembershipChangeError,
)

__all__ = [
    'RoomHandle',
    'RoomServiceBase',
    'RoomServiceError',
    'RoomServiceUnavailable',
    'MembershipChangeError',
]
