"""Best-effort "board changed" notifications.

Polling is the delivery path clients rely on; a notifier only shortens the
wait. ``publish_safely`` therefore logs and swallows every failure.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .errors import BroadcastError

logger = logging.getLogger(__name__)

DEFAULT_EVENT = 'board_state_updated'
AUDIENCE_GM = 'gm'
AUDIENCE_PLAYERS = 'players'


@dataclass
class BoardEvent:
    payload: Dict[str, Any] = field(default_factory=dict)
    # transport id of the originating client, so it can skip its own echo
    socket_id: Optional[str] = None
    name: str = DEFAULT_EVENT
    audience: str = AUDIENCE_GM


class Notifier:
    def publish(self, event):
        raise NotImplementedError


class NullNotifier(Notifier):
    def publish(self, event):
        return None


def audience_room(channel, audience):
    return f'{channel}-{audience}'


class SocketIONotifier(Notifier):
    """Emits board events to the Socket.IO room of their audience, skipping the author's socket.

    GM sockets join ``<channel>-gm`` and everyone else ``<channel>-players``
    (see ``server.on_connect``), so a player never receives a GM-only delta.
    """

    def __init__(self, socketio, channel='campaign'):
        self.socketio = socketio
        self.channel = channel

    def publish(self, event):
        try:
            self.socketio.emit(
                event.name,
                event.payload,
                room=audience_room(self.channel, event.audience),
                skip_sid=event.socket_id,
            )
        except Exception as e:
            raise BroadcastError(f'Socket.IO emit failed: {e}') from e


def build_broadcast_payload(version, author_id, author_role, updates, timestamp_ms=None):
    payload = {
        'version': version,
        'timestamp': timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
        'authorId': author_id,
        'authorRole': author_role,
        'changedFields': sorted(updates),
    }
    payload.update(updates)
    return payload


def publish_safely(notifier, event):
    if notifier is None:
        return False
    try:
        notifier.publish(event)
        return True
    except Exception as e:
        logger.warning('Board state broadcast failed (clients will catch up by polling): %s', e)
        return False
