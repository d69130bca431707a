"""Canonicalization of board state documents and client-submitted fragments.

Individual malformed entries are dropped, never raised. Only top-level shape
errors in an update payload (say ``templates`` arriving as a string) raise
``ValidationError``.
"""
import hashlib
import json
import logging
import time

from .combat import normalize_combat_state
from .errors import ValidationError
from .fields import (
    HIDDEN_KEYS,
    TEAM_KEYS,
    clean_string,
    coerce_float,
    coerce_int,
    extract_identifier,
    extract_timestamp,
    first_present,
    interpret_truthy,
    resolve_combat_team,
    resolve_hidden,
)
from .fog import normalize_fog_of_war
from .overlay import normalize_overlay
from .templates import normalize_template_entry, sanitize_color

logger = logging.getLogger(__name__)

GRID_DEFAULT_SIZE = 64
GRID_MIN_SIZE = 8
GRID_MAX_SIZE = 320
AURA_MIN_RADIUS = 1
AURA_MAX_RADIUS = 20
DRAWING_MAX_POINTS = 10000
DRAWING_MIN_STROKE = 1
DRAWING_MAX_STROKE = 50
DRAWING_DEFAULT_STROKE = 3
DRAWING_DEFAULT_COLOR = '#ff0000'
PING_RETENTION_MS = 10000
PING_MAX_ENTRIES = 8
PING_TYPES = ('ping', 'focus')

TIMESTAMP_ALIASES = ('lastModified', 'updatedAt')
HP_CURRENT_KEYS = ('current', 'value', 'hp', 'currentHp')
HP_MAX_KEYS = ('max', 'total', 'maxHp')

SCENE_COLLECTIONS = ('placements', 'templates', 'drawings')


def now_ms():
    return int(time.time() * 1000)


def _hp_text(value):
    if value is None or isinstance(value, bool):
        return ''
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def normalize_hp(entry):
    raw = entry.get('hp')
    if raw is None and ('stamina' in entry or 'staminaMax' in entry):
        raw = {'current': entry.get('stamina'), 'max': entry.get('staminaMax', entry.get('stamina'))}
    if isinstance(raw, dict):
        current = _hp_text(first_present(raw, HP_CURRENT_KEYS))
        maximum = _hp_text(first_present(raw, HP_MAX_KEYS))
        return {'current': current, 'max': maximum}
    text = _hp_text(raw)
    return {'current': text, 'max': text}


def normalize_aura(raw):
    if not isinstance(raw, dict):
        return None
    return {
        'enabled': interpret_truthy(raw.get('enabled', False)),
        'radius': coerce_int(raw.get('radius'), AURA_MIN_RADIUS, minimum=AURA_MIN_RADIUS, maximum=AURA_MAX_RADIUS),
        'color': sanitize_color(raw.get('color')),
    }


def normalize_size_override(raw):
    if isinstance(raw, dict):
        width = coerce_int(raw.get('width'), minimum=1)
        height = coerce_int(raw.get('height'), minimum=1)
        if width is None or height is None:
            return None
        return {'width': width, 'height': height}
    return clean_string(raw)


def _has_hidden_flag(entry):
    if any(key in entry for key in HIDDEN_KEYS):
        return True
    return isinstance(entry.get('flags'), dict) and 'hidden' in entry['flags']


def normalize_placement(entry, partial=False):
    """Canonical placement dict, or None when the entry has no stable id.

    Legacy aliases (``isHidden``, ``flags.hidden``, ``team``,
    ``lastModified``, ``updatedAt``, ``stamina``) are folded into their
    canonical field here and removed. With ``partial`` (client deltas) only
    the fields the entry carries are canonicalized; no defaults are filled in.
    """
    if not isinstance(entry, dict):
        return None
    placement_id = extract_identifier(entry)
    if placement_id is None:
        return None

    placement = dict(entry)
    placement['id'] = placement_id

    if not partial or _has_hidden_flag(entry):
        placement['hidden'] = resolve_hidden(entry)
    for key in HIDDEN_KEYS[1:]:
        placement.pop(key, None)
    if isinstance(entry.get('flags'), dict) and 'hidden' in entry['flags']:
        flags = dict(entry['flags'])
        flags.pop('hidden')
        placement['flags'] = flags

    team = resolve_combat_team(entry)
    for key in TEAM_KEYS:
        placement.pop(key, None)
    if team is not None:
        placement['combatTeam'] = team

    timestamp = extract_timestamp(entry)
    for key in TIMESTAMP_ALIASES:
        placement.pop(key, None)
    if timestamp > 0:
        placement['_lastModified'] = timestamp

    placement.pop('col', None)
    if not partial or 'column' in entry or 'col' in entry:
        placement['column'] = coerce_int(entry.get('column', entry.get('col')), 0, minimum=0)
    if not partial or 'row' in entry:
        placement['row'] = coerce_int(entry.get('row'), 0, minimum=0)
    for key in ('width', 'height'):
        if not partial or key in entry:
            placement[key] = coerce_int(entry.get(key), 1, minimum=1)

    if 'sizeOverride' in entry:
        size_override = normalize_size_override(entry['sizeOverride'])
        if size_override is None:
            placement.pop('sizeOverride')
        else:
            placement['sizeOverride'] = size_override

    if 'aura' in entry:
        aura = normalize_aura(entry['aura'])
        if aura is None:
            placement.pop('aura')
        else:
            placement['aura'] = aura

    if not partial or any(key in entry for key in ('hp', 'stamina', 'staminaMax')):
        placement['hp'] = normalize_hp(entry)
    placement.pop('stamina', None)
    placement.pop('staminaMax', None)
    return placement


def normalize_placement_delta(entry):
    return normalize_placement(entry, partial=True)


def _normalize_point(raw):
    if not isinstance(raw, dict):
        return None
    column = coerce_float(raw.get('column', raw.get('x')))
    row = coerce_float(raw.get('row', raw.get('y')))
    if column is None or row is None:
        return None
    return {'column': column, 'row': row}


def normalize_drawing(entry):
    if not isinstance(entry, dict):
        return None
    drawing_id = extract_identifier(entry)
    raw_points = entry.get('points')
    if drawing_id is None or not isinstance(raw_points, list):
        return None

    points = []
    for raw_point in raw_points:
        point = _normalize_point(raw_point)
        if point is not None:
            points.append(point)
        if len(points) >= DRAWING_MAX_POINTS:
            break
    if len(points) < 2:
        return None

    drawing = {
        key: value for key, value in entry.items()
        if key not in ('points', 'color', 'strokeWidth', 'authorId')
    }
    drawing.update({
        'id': drawing_id,
        'points': points,
        'color': sanitize_color(entry.get('color')) or DRAWING_DEFAULT_COLOR,
        'strokeWidth': coerce_int(
            entry.get('strokeWidth'), DRAWING_DEFAULT_STROKE, minimum=DRAWING_MIN_STROKE, maximum=DRAWING_MAX_STROKE,
        ),
    })
    author = clean_string(entry.get('authorId'))
    if author:
        drawing['authorId'] = author
    return drawing


def normalize_ping(entry, current_ms):
    if not isinstance(entry, dict):
        return None
    ping_id = extract_identifier(entry)
    x = coerce_float(entry.get('x'))
    y = coerce_float(entry.get('y'))
    if ping_id is None or x is None or y is None:
        return None
    kind = clean_string(entry.get('type'))
    ping = {
        'id': ping_id,
        'sceneId': clean_string(entry.get('sceneId')),
        'x': min(1.0, max(0.0, x)),
        'y': min(1.0, max(0.0, y)),
        'type': kind.lower() if kind and kind.lower() in PING_TYPES else 'ping',
        'createdAt': coerce_int(entry.get('createdAt'), current_ms, minimum=0),
    }
    author = clean_string(entry.get('authorId'))
    if author:
        ping['authorId'] = author
    return ping


def normalize_pings(raw, current_ms=None):
    """Drop expired pings and keep only the newest ``PING_MAX_ENTRIES``."""
    current_ms = now_ms() if current_ms is None else current_ms
    pings = []
    seen = set()
    for entry in raw if isinstance(raw, list) else []:
        ping = normalize_ping(entry, current_ms)
        if ping is None or ping['id'] in seen:
            continue
        if current_ms - ping['createdAt'] > PING_RETENTION_MS:
            continue
        seen.add(ping['id'])
        pings.append(ping)
    pings.sort(key=lambda ping: ping['createdAt'])
    return pings[-PING_MAX_ENTRIES:]


def normalize_grid(raw):
    grid = {'size': GRID_DEFAULT_SIZE, 'locked': False, 'visible': True}
    if not isinstance(raw, dict):
        return grid
    grid['size'] = coerce_int(raw.get('size'), GRID_DEFAULT_SIZE, minimum=GRID_MIN_SIZE, maximum=GRID_MAX_SIZE)
    if 'locked' in raw:
        grid['locked'] = interpret_truthy(raw['locked'])
    if 'visible' in raw:
        grid['visible'] = interpret_truthy(raw['visible'])
    return grid


def normalize_scene_config(config, partial=False):
    """Canonical per-scene config.

    With ``partial`` only the sections present in ``config`` are returned, so
    an update touching the grid does not reset the scene's fog or combat.
    """
    if not isinstance(config, dict):
        return None
    entry = {}
    grid_keys = ('size', 'locked', 'visible')
    if not partial or 'grid' in config or any(key in config for key in grid_keys):
        entry['grid'] = normalize_grid(config.get('grid', config))
    if not partial or 'overlay' in config:
        entry['overlay'] = normalize_overlay(config.get('overlay'))
    if 'combat' in config:
        entry['combat'] = normalize_combat_state(config['combat'])
    if 'fogOfWar' in config:
        entry['fogOfWar'] = normalize_fog_of_war(config['fogOfWar'])
    return entry


def _scene_key(scene_id):
    if isinstance(scene_id, str):
        return scene_id.strip() or None
    return str(scene_id)


def _as_scene_map(raw, field, strict):
    if raw is None:
        return {}
    if isinstance(raw, list) and not raw:
        # an empty map that went through a list-producing encoder
        return {}
    if not isinstance(raw, dict):
        if strict:
            raise ValidationError(f'{field} must be an object keyed by scene id.')
        return {}
    return raw


def normalize_scene_collection(raw, normalize_entry, field='placements', strict=False):
    normalized = {}
    for scene_id, entries in _as_scene_map(raw, field, strict).items():
        key = _scene_key(scene_id)
        if key is None or not isinstance(entries, list):
            continue
        kept = []
        for entry in entries:
            value = normalize_entry(entry)
            if value is None:
                logger.debug('Dropping malformed %s entry in scene %s', field, key)
                continue
            kept.append(value)
        normalized[key] = kept
    return normalized


def normalize_scene_state(raw, partial=False, strict=False):
    normalized = {}
    for scene_id, config in _as_scene_map(raw, 'sceneState', strict).items():
        key = _scene_key(scene_id)
        entry = normalize_scene_config(config, partial=partial)
        if key is None or entry is None:
            continue
        normalized[key] = entry
    return normalized


def normalize_metadata(raw):
    raw = raw if isinstance(raw, dict) else {}
    role = clean_string(raw.get('authorRole'))
    return {
        'updatedAt': coerce_int(raw.get('updatedAt'), 0, minimum=0),
        'authorId': clean_string(raw.get('authorId')),
        'authorRole': role.lower() if role else None,
        'authorIsGm': interpret_truthy(raw.get('authorIsGm', False)),
        'signature': clean_string(raw.get('signature')),
    }


def board_signature(state):
    """Stable hash of a document's content, ignoring metadata and transport markers."""
    content = {key: value for key, value in state.items() if key != 'metadata' and not key.startswith('_')}
    encoded = json.dumps(content, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha1(encoded.encode('utf-8')).hexdigest()


def create_empty_board_state():
    return {
        'activeSceneId': None,
        'mapUrl': None,
        'placements': {},
        'templates': {},
        'drawings': {},
        'sceneState': {},
        'overlay': normalize_overlay(None),
        'pings': [],
        'metadata': normalize_metadata(None),
    }


def normalize_board_state(raw, current_ms=None):
    """Canonical document from whatever was persisted; never raises."""
    state = create_empty_board_state()
    if not isinstance(raw, dict):
        return state

    for key in ('activeSceneId', 'mapUrl'):
        state[key] = clean_string(raw.get(key))

    state['placements'] = normalize_scene_collection(raw.get('placements'), normalize_placement, 'placements')
    state['templates'] = normalize_scene_collection(raw.get('templates'), normalize_template_entry, 'templates')
    state['drawings'] = normalize_scene_collection(raw.get('drawings'), normalize_drawing, 'drawings')
    state['sceneState'] = normalize_scene_state(raw.get('sceneState'))
    state['overlay'] = normalize_overlay(raw.get('overlay'))
    state['pings'] = normalize_pings(raw.get('pings'), current_ms)
    state['metadata'] = normalize_metadata(raw.get('metadata'))
    return state


def _nullable_string(raw, key, label):
    value = raw[key]
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    raise ValidationError(f'{label} must be a string or null.')


def sanitize_board_state_updates(raw, current_ms=None):
    """Normalized subset of the fields an update payload provides.

    Raises ``ValidationError`` when a provided field has the wrong top-level type.
    """
    if not isinstance(raw, dict):
        raise ValidationError('Board state payload must be an object.')

    updates = {}
    if 'activeSceneId' in raw:
        updates['activeSceneId'] = _nullable_string(raw, 'activeSceneId', 'Active scene id')
    if 'mapUrl' in raw:
        updates['mapUrl'] = _nullable_string(raw, 'mapUrl', 'Map URL')

    if 'placements' in raw:
        updates['placements'] = normalize_scene_collection(
            raw['placements'], normalize_placement_delta, 'placements', strict=True,
        )
    if 'templates' in raw:
        updates['templates'] = normalize_scene_collection(
            raw['templates'], normalize_template_entry, 'templates', strict=True,
        )
    if 'drawings' in raw:
        updates['drawings'] = normalize_scene_collection(
            raw['drawings'], normalize_drawing, 'drawings', strict=True,
        )
    if 'sceneState' in raw:
        updates['sceneState'] = normalize_scene_state(raw['sceneState'], partial=True, strict=True)

    if 'overlay' in raw:
        if raw['overlay'] is not None and not isinstance(raw['overlay'], dict):
            raise ValidationError('Overlay must be an object.')
        updates['overlay'] = normalize_overlay(raw['overlay'])

    if 'pings' in raw:
        if raw['pings'] is not None and not isinstance(raw['pings'], list):
            raise ValidationError('Pings must be a list.')
        updates['pings'] = normalize_pings(raw['pings'], current_ms)

    return updates


def extract_combat_updates(raw_scene_state):
    """Raw combat payloads per scene id from a ``sceneState`` update.

    The raw form is kept so the combat merge can tell which fields the client set.
    """
    updates = {}
    if not isinstance(raw_scene_state, dict):
        return updates
    for scene_id, config in raw_scene_state.items():
        key = _scene_key(scene_id)
        if key is None or not isinstance(config, dict) or 'combat' not in config:
            continue
        updates[key] = config['combat']
    return updates
