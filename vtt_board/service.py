"""Board state request handling: role policy, merging, persistence and broadcast."""
import copy
import logging
from dataclasses import dataclass
from typing import Optional

from .broadcast import AUDIENCE_GM, AUDIENCE_PLAYERS, BoardEvent, build_broadcast_payload, publish_safely
from .combat import merge_combat_state
from .errors import AuthorizationError, ValidationError
from .fields import interpret_truthy
from .merge import (
    merge_by_timestamp,
    merge_pings,
    merge_preserving_gm_authored,
    merge_scene_keyed,
    replace_scene_keyed,
    stamp_authorship,
    strip_gm_markers,
)
from .normalize import (
    SCENE_COLLECTIONS,
    board_signature,
    extract_combat_updates,
    normalize_grid,
    now_ms,
    sanitize_board_state_updates,
)
from .overlay import normalize_overlay
from .projection import project, restrict_placements

logger = logging.getLogger(__name__)

GM_ROLES = ('gm', 'dm')
GM_EXCLUSIVE_FIELDS = ('activeSceneId', 'mapUrl', 'overlay')
PLAYER_FIELDS = SCENE_COLLECTIONS + ('pings',)
CONTROL_KEYS = ('_version', '_socketId', '_deltaOnly', '_fullSync')


@dataclass
class UserContext:
    user_id: Optional[str] = None
    username: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_logged_in(self):
        return self.user_id is not None

    @property
    def is_gm(self):
        return (self.role or '').lower() in GM_ROLES

    @property
    def author_role(self):
        return 'gm' if self.is_gm else 'player'

    @classmethod
    def from_session(cls, session):
        user_id = session.get('user_id')
        return cls(
            user_id=str(user_id) if user_id is not None else None,
            username=session.get('username'),
            role=session.get('role'),
        )


def split_request_payload(payload):
    """Separate the board fields of a request body from its transport controls."""
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object.')
    body = payload.get('boardState', payload)
    if not isinstance(body, dict):
        raise ValidationError('Board state payload must be an object.')

    controls = {key: body.get(key, payload.get(key)) for key in CONTROL_KEYS}
    fields = {key: value for key, value in body.items() if key not in CONTROL_KEYS}
    return fields, controls


def apply_scene_config(existing, incoming, raw_combat=None):
    """Per-section update of one scene's config; combat goes through the sequence merge."""
    if isinstance(existing, dict):
        merged = copy.deepcopy(existing)
    else:
        merged = {'grid': normalize_grid(None), 'overlay': normalize_overlay(None)}
    for section in ('grid', 'overlay', 'fogOfWar'):
        if section in incoming:
            merged[section] = copy.deepcopy(incoming[section])
    if raw_combat is not None or 'combat' in incoming:
        merged['combat'] = merge_combat_state(merged.get('combat'), raw_combat)
    return merged


class BoardStateService:
    """Turns authenticated requests into store writes and broadcasts.

    The stored document is authoritative. Every response and every broadcast
    that reaches a non-GM viewer goes through ``project`` first.
    """

    def __init__(self, store, notifier=None, config=None, clock=None):
        self.store = store
        self.notifier = notifier
        self.config = config
        self.clock = clock or now_ms

    def realtime_info(self):
        enabled = bool(self.config and self.config.REALTIME_ENABLED and self.notifier is not None)
        return {
            'enabled': enabled,
            'channel': self.config.REALTIME_CHANNEL if self.config else None,
            'event': self.config.REALTIME_EVENT if self.config else None,
        }

    def get_state(self, user):
        if not user.is_logged_in:
            raise AuthorizationError.not_authenticated()
        snapshot = project(self.store.snapshot(), user.is_gm)
        return {
            'scenes': self.store.load_scenes(),
            'tokens': self.store.load_tokens(),
            'boardState': snapshot,
            'pusher': self.realtime_info(),
        }

    def snapshot_for(self, user):
        return project(self.store.snapshot(), user.is_gm)

    def restrict_for_player(self, updates, raw_fields):
        """Subset of ``updates`` a non-GM caller may write, plus raw combat payloads."""
        allowed = {key: value for key, value in updates.items() if key in PLAYER_FIELDS}
        combat = extract_combat_updates(raw_fields.get('sceneState'))

        if not allowed and not combat:
            attempted = [key for key in GM_EXCLUSIVE_FIELDS if key in updates]
            if attempted:
                raise AuthorizationError(
                    'Only the GM can change ' + ', '.join(attempted) + '.'
                )
            raise ValidationError('No board state changes were provided.')
        return allowed, combat

    def update_state(self, user, payload):
        if not user.is_logged_in:
            raise AuthorizationError.not_authenticated()

        raw_fields, controls = split_request_payload(payload)
        current_ms = self.clock()
        updates = sanitize_board_state_updates(raw_fields, current_ms)
        if not updates:
            raise ValidationError('No board state changes were provided.')

        delta_only = interpret_truthy(controls.get('_deltaOnly'))
        combat_updates = extract_combat_updates(raw_fields.get('sceneState'))
        if not user.is_gm:
            updates, combat_updates = self.restrict_for_player(updates, raw_fields)

        def mutator(state):
            if user.is_gm:
                self._apply_gm_updates(state, updates, combat_updates, delta_only)
            else:
                self._apply_player_updates(state, updates, combat_updates, delta_only)
            if 'pings' in updates:
                state['pings'] = merge_pings(state.get('pings'), updates['pings'], current_ms)
            state['metadata'] = {
                'updatedAt': current_ms,
                'authorId': user.user_id,
                'authorRole': user.author_role,
                'authorIsGm': user.is_gm,
                'signature': board_signature(state),
            }
            return state

        state, version = self.store.write_atomic(mutator)
        logger.info(
            'Board state v%s written by %s (%s): %s',
            version, user.username or user.user_id, user.author_role, ', '.join(sorted(updates)) or 'combat',
        )

        self._broadcast(user, state, updates, combat_updates, version, controls.get('_socketId'), current_ms)

        response = project(state, user.is_gm)
        response['_version'] = version
        return response

    def _apply_gm_updates(self, state, updates, combat_updates, delta_only):
        for key in GM_EXCLUSIVE_FIELDS:
            if key in updates:
                state[key] = copy.deepcopy(updates[key])

        for field in SCENE_COLLECTIONS:
            if field not in updates:
                continue
            incoming = stamp_authorship(state.get(field), updates[field], author_is_gm=True)
            if delta_only:
                state[field] = merge_scene_keyed(state.get(field), incoming, merge_by_timestamp)
            else:
                state[field] = replace_scene_keyed(state.get(field), incoming)

        scene_updates = updates.get('sceneState', {})
        scene_state = state.setdefault('sceneState', {})
        for scene_id in set(scene_updates) | set(combat_updates):
            scene_state[scene_id] = apply_scene_config(
                scene_state.get(scene_id), scene_updates.get(scene_id, {}), combat_updates.get(scene_id),
            )

    def _apply_player_updates(self, state, updates, combat_updates, delta_only):
        for field in SCENE_COLLECTIONS:
            if field not in updates:
                continue
            if delta_only:
                incoming = {
                    scene_id: [strip_gm_markers(entry) for entry in entries]
                    for scene_id, entries in updates[field].items()
                }
                incoming = stamp_authorship(state.get(field), incoming, author_is_gm=False)
                state[field] = merge_scene_keyed(state.get(field), incoming, merge_by_timestamp)
            else:
                incoming = stamp_authorship(state.get(field), updates[field], author_is_gm=False)
                state[field] = merge_scene_keyed(state.get(field), incoming, merge_preserving_gm_authored)

        scene_state = state.setdefault('sceneState', {})
        for scene_id, raw_combat in combat_updates.items():
            scene_state[scene_id] = apply_scene_config(scene_state.get(scene_id), {}, raw_combat)

    def _broadcast(self, user, state, updates, combat_updates, version, socket_id, current_ms):
        # the delta carries the merged result for every touched scene, not the raw request
        changed = {}
        for field in GM_EXCLUSIVE_FIELDS + ('pings',):
            if field in updates:
                changed[field] = copy.deepcopy(state.get(field))
        for field in SCENE_COLLECTIONS:
            if field in updates:
                changed[field] = {scene_id: copy.deepcopy(state[field].get(scene_id, [])) for scene_id in updates[field]}
        touched_scenes = set(updates.get('sceneState', {})) | set(combat_updates)
        if touched_scenes:
            changed['sceneState'] = {
                scene_id: copy.deepcopy(state['sceneState'][scene_id])
                for scene_id in touched_scenes if scene_id in state['sceneState']
            }

        event_name = self.config.REALTIME_EVENT if self.config else 'board_state_updated'
        gm_payload = build_broadcast_payload(version, user.user_id, user.author_role, changed, current_ms)
        publish_safely(self.notifier, BoardEvent(gm_payload, socket_id, event_name, AUDIENCE_GM))

        player_changes = dict(changed)
        if 'placements' in player_changes:
            player_changes['placements'] = restrict_placements(player_changes['placements'])
        player_payload = build_broadcast_payload(version, user.user_id, user.author_role, player_changes, current_ms)
        publish_safely(self.notifier, BoardEvent(player_payload, socket_id, event_name, AUDIENCE_PLAYERS))
