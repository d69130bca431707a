"""Client side of board sync: local optimistic state, the save queue and the poller.

A client keeps its own copy of the board, applies edits to it immediately and
queues them for the server. The poller fetches the authoritative snapshot on
an interval, but never while a local save is queued or in flight.
"""
import copy
import logging
import threading
import time

import requests

from .combat import merge_combat_state
from .errors import BoardStateError
from .fields import extract_identifier
from .merge import merge_by_timestamp, merge_pings, merge_scene_keyed, replace_scene_keyed
from .normalize import (
    SCENE_COLLECTIONS,
    board_signature,
    normalize_board_state,
    normalize_metadata,
    sanitize_board_state_updates,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 15
POLL_INTERVAL = 2.0
SAVE_DEBOUNCE = 0.25
STATE_PATH = '/api/vtt/state'
POSITION_KEYS = ('column', 'row')

# snapshot decisions
APPLY = 'applied'
POSITIONS = 'positions'
SKIP = 'skipped'

# poll outcomes besides the decisions above
BLOCKED = 'blocked'
STALE = 'stale'
UNCHANGED = 'unchanged'

IDLE = 'idle'
FETCHING = 'fetching'
MERGING = 'merging'


class HttpBoardTransport:
    """GET/POST against the board state endpoint over a ``requests`` session."""

    def __init__(self, base_url, session=None, timeout=REQUEST_TIMEOUT, state_path=STATE_PATH):
        self.url = base_url.rstrip('/') + state_path
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch_state(self):
        return self._unwrap(self.session.get(self.url, timeout=self.timeout))

    def save_state(self, board_state):
        return self._unwrap(self.session.post(self.url, json={'boardState': board_state}, timeout=self.timeout))

    @staticmethod
    def _unwrap(response):
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if response.status_code >= 400 or not body.get('success'):
            message = body.get('error') or f'Board state request failed with HTTP {response.status_code}'
            raise BoardStateError(message, status_code=response.status_code)
        data = body.get('data')
        return data if isinstance(data, dict) else {}


def combine_updates(base, updates, delta_only=True):
    """Fold ``updates`` into ``base`` (a queued payload or a whole document)."""
    combined = copy.deepcopy(base)
    for field, value in updates.items():
        if field in SCENE_COLLECTIONS:
            if delta_only:
                combined[field] = merge_scene_keyed(combined.get(field), value, merge_by_timestamp)
            else:
                combined[field] = replace_scene_keyed(combined.get(field), value)
        elif field == 'sceneState':
            scenes = combined.setdefault('sceneState', {})
            for scene_id, config in value.items():
                scene = dict(scenes.get(scene_id) or {})
                for section, section_value in config.items():
                    if section == 'combat':
                        scene['combat'] = merge_combat_state(scene.get('combat'), section_value)
                    else:
                        scene[section] = copy.deepcopy(section_value)
                scenes[scene_id] = scene
        elif field == 'pings':
            combined['pings'] = merge_pings(combined.get('pings'), value)
        else:
            combined[field] = copy.deepcopy(value)
    return combined


def should_apply_snapshot(local, remote, viewer_is_gm):
    """Decide how a remote snapshot is taken into a local board.

    Players take every snapshot, as does a GM for GM-authored ones. A GM takes
    a player-authored snapshot only when it is newer than the local copy; when
    it carries the same timestamp or signature, only token positions are
    reconciled.
    """
    remote_meta = normalize_metadata(remote.get('metadata'))
    if not viewer_is_gm or remote_meta['authorIsGm'] or remote_meta['authorRole'] == 'gm':
        return APPLY

    local_meta = normalize_metadata(local.get('metadata'))
    if remote_meta['updatedAt'] > local_meta['updatedAt']:
        return APPLY
    same_signature = remote_meta['signature'] is not None and remote_meta['signature'] == local_meta['signature']
    if remote_meta['updatedAt'] == local_meta['updatedAt'] or same_signature:
        return POSITIONS
    return SKIP


def reconcile_positions(local, remote):
    """Copy of ``local`` with token positions taken from ``remote`` where they differ."""
    merged = copy.deepcopy(local)
    for scene_id, remote_entries in (remote.get('placements') or {}).items():
        remote_by_id = {
            extract_identifier(entry): entry for entry in remote_entries
            if isinstance(entry, dict) and extract_identifier(entry) is not None
        }
        for entry in merged.get('placements', {}).get(scene_id, []):
            source = remote_by_id.get(extract_identifier(entry))
            if source is None:
                continue
            for key in POSITION_KEYS:
                if key in source and source[key] != entry.get(key):
                    entry[key] = source[key]
    return merged


def merge_board_state_snapshot(local, remote, viewer_is_gm, scene_replace=False):
    """Merge a server snapshot or broadcast delta into the local board.

    ``_fullSync`` snapshots replace each collection outright, so entries
    deleted on the server disappear locally. Broadcast deltas carry complete
    lists for the scenes they touch (``scene_replace``). Anything else is
    merged per entry by timestamp. Returns ``(state, decision)``.
    """
    decision = should_apply_snapshot(local, remote, viewer_is_gm)
    if decision == SKIP:
        return copy.deepcopy(local), decision
    if decision == POSITIONS:
        return reconcile_positions(local, remote), decision

    full_sync = bool(remote.get('_fullSync'))
    merged = copy.deepcopy(local)
    for key in ('activeSceneId', 'mapUrl', 'overlay'):
        if key in remote:
            merged[key] = copy.deepcopy(remote[key])

    for field in SCENE_COLLECTIONS:
        if field not in remote:
            continue
        if full_sync:
            merged[field] = copy.deepcopy(remote[field] or {})
        elif scene_replace:
            merged[field] = replace_scene_keyed(merged.get(field), remote[field])
        else:
            merged[field] = merge_scene_keyed(merged.get(field), remote[field], merge_by_timestamp)

    if 'sceneState' in remote:
        scenes = {} if full_sync else merged.get('sceneState', {})
        local_scenes = local.get('sceneState') or {}
        for scene_id, config in (remote['sceneState'] or {}).items():
            scene = copy.deepcopy(config)
            local_combat = (local_scenes.get(scene_id) or {}).get('combat')
            if local_combat and scene.get('combat'):
                scene['combat'] = merge_combat_state(local_combat, scene['combat'])
            scenes[scene_id] = scene
        merged['sceneState'] = scenes

    if 'pings' in remote:
        merged['pings'] = merge_pings(local.get('pings'), remote['pings'])
    if 'metadata' in remote:
        merged['metadata'] = normalize_metadata(remote['metadata'])

    for key in ('_fullSync', '_version'):
        merged.pop(key, None)
    return merged, decision


class LocalBoard:
    """The client's working copy of the board and the last server version it saw."""

    def __init__(self, state=None, viewer_is_gm=False, viewer_id=None):
        self.state = normalize_board_state(state)
        self.version = 0
        self.viewer_is_gm = viewer_is_gm
        self.viewer_id = viewer_id
        # set when the server rejected a local edit the board already shows
        self.needs_resync = False
        self._listeners = []
        self._lock = threading.RLock()

    def subscribe(self, listener):
        self._listeners.append(listener)

    def _notify(self):
        for listener in list(self._listeners):
            listener(self.state)

    def replace(self, state, version=None):
        with self._lock:
            self.state = state
            if isinstance(version, int) and version > self.version:
                self.version = version
        self._notify()

    def apply_local(self, updates, delta_only=True):
        with self._lock:
            self.state = combine_updates(self.state, updates, delta_only)
        self._notify()

    def acknowledge(self, response):
        """Record the version and metadata of a successful save."""
        with self._lock:
            version = response.get('_version')
            if isinstance(version, int) and version > self.version:
                self.version = version
            if isinstance(response.get('metadata'), dict):
                self.state['metadata'] = normalize_metadata(response['metadata'])


class SaveQueue:
    """Debounced queue of local edits waiting to be posted.

    Delta and full-collection edits are kept in separate batches, posted in
    the order they were queued, since one request carries only one mode.
    While anything is queued or in flight the queue reports ``is_pending``
    and the poller leaves the local board alone. A batch that fails on the
    network or with a server error is put back and retried with the next
    flush; one the server rejects (4xx) is dropped and the board is marked
    for a resync.
    """

    def __init__(self, transport, board=None, debounce=SAVE_DEBOUNCE, clock=time.monotonic, socket_id=None):
        self.transport = transport
        self.board = board
        self.debounce = debounce
        self.clock = clock
        self.socket_id = socket_id
        self.in_flight = False
        self.last_error = None
        self._batches = []
        self._changed_at = None
        self._lock = threading.RLock()

    @property
    def dirty(self):
        return bool(self._batches)

    @property
    def is_pending(self):
        return self.dirty or self.in_flight

    def queue(self, updates, delta_only=True):
        """Normalize and queue ``updates``, applying them to the local board right away."""
        updates = sanitize_board_state_updates(updates)
        if not updates:
            return False
        with self._lock:
            if self._batches and self._batches[-1][0] == delta_only:
                self._batches[-1][1] = combine_updates(self._batches[-1][1], updates, delta_only)
            else:
                self._batches.append([delta_only, combine_updates({}, updates, delta_only)])
            self._changed_at = self.clock()
        if self.board is not None:
            self.board.apply_local(updates, delta_only)
        return True

    def tick(self):
        if not self.dirty or self.in_flight:
            return False
        if self.clock() - self._changed_at < self.debounce:
            return False
        return self.flush()

    def flush(self):
        """Post every queued batch in order; True when all of them were saved."""
        with self._lock:
            if not self.dirty or self.in_flight:
                return False
            batches, self._batches = self._batches, []
            self.in_flight = True

        saved = True
        try:
            for index, (delta_only, payload) in enumerate(batches):
                try:
                    self._send(payload, delta_only)
                except (requests.RequestException, BoardStateError) as e:
                    self.last_error = e
                    if isinstance(e, BoardStateError) and e.status_code < 500:
                        logger.warning('Board save rejected, dropping edits: %s', e)
                        saved = False
                        if self.board is not None:
                            self.board.needs_resync = True
                        continue
                    logger.warning('Board save failed, keeping edits queued: %s', e)
                    with self._lock:
                        self._batches = [list(batch) for batch in batches[index:]] + self._batches
                    return False
        finally:
            with self._lock:
                self.in_flight = False
        if saved:
            self.last_error = None
        return saved

    def _send(self, payload, delta_only):
        body = dict(payload)
        if delta_only:
            body['_deltaOnly'] = True
        if self.socket_id:
            body['_socketId'] = self.socket_id
        response = self.transport.save_state(body)
        if self.board is not None:
            self.board.acknowledge(response)

    def on_visibility_change(self, visibility):
        """Flush straight away when the client is hidden, but only with unsaved edits."""
        if visibility == 'hidden' and self.dirty:
            return self.flush()
        return False


class BoardStatePoller:
    """Fetches the authoritative snapshot and merges it into the local board.

    One tick goes idle, fetching, then blocked or merging, then idle again.
    A fetch that returns while a save is pending is discarded; the next tick
    after the save lands picks up the server's result.
    """

    def __init__(self, transport, board, save_queue=None, interval=POLL_INTERVAL):
        self.transport = transport
        self.board = board
        self.save_queue = save_queue
        self.interval = interval
        self.phase = IDLE
        self._last_signature = None
        self._stop = threading.Event()
        self._thread = None

    def _save_pending(self):
        return self.save_queue is not None and self.save_queue.is_pending

    def poll(self):
        self.phase = FETCHING
        try:
            data = self.transport.fetch_state()
        finally:
            self.phase = IDLE

        if self._save_pending():
            logger.debug('Discarding fetched board state while a save is pending')
            return BLOCKED

        snapshot = data.get('boardState')
        if not isinstance(snapshot, dict):
            return SKIP

        version = snapshot.get('_version')
        if isinstance(version, int) and version < self.board.version:
            return STALE
        signature = board_signature(snapshot)
        resync = self.board.needs_resync
        if version == self.board.version and signature == self._last_signature and not resync:
            return UNCHANGED

        self.phase = MERGING
        try:
            # after a rejected save the server copy wins, whoever authored it
            merged, decision = merge_board_state_snapshot(
                self.board.state, snapshot, self.board.viewer_is_gm and not resync,
            )
            if decision != SKIP:
                self.board.replace(merged, version)
                self.board.needs_resync = False
            self._last_signature = signature
        finally:
            self.phase = IDLE
        return decision

    def apply_broadcast(self, payload):
        """Merge a realtime ``board_state_updated`` delta into the local board."""
        if not isinstance(payload, dict) or self._save_pending():
            return BLOCKED
        version = payload.get('version')
        if isinstance(version, int) and version <= self.board.version:
            return STALE

        remote = {field: payload[field] for field in payload.get('changedFields', []) if field in payload}
        role = payload.get('authorRole')
        remote['metadata'] = {
            'updatedAt': payload.get('timestamp'),
            'authorId': payload.get('authorId'),
            'authorRole': role,
            'authorIsGm': role == 'gm',
        }
        merged, decision = merge_board_state_snapshot(
            self.board.state, remote, self.board.viewer_is_gm, scene_replace=True,
        )
        if decision != SKIP:
            self.board.replace(merged, version)
        return decision

    def tick(self):
        if self.save_queue is not None:
            self.save_queue.tick()
        try:
            return self.poll()
        except (requests.RequestException, BoardStateError) as e:
            logger.warning('Board state poll failed: %s', e)
            return None

    def run(self):
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(self.interval)

    def start(self):
        if self._thread is None or not self._thread.is_alive():
            self._stop.clear()
            self._thread = threading.Thread(target=self.run, name='board-state-poller', daemon=True)
            self._thread.start()
        return self._thread

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None
