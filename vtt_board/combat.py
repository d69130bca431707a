"""Combat tracker state: normalization and the field-level merge.

Turn events are ordered by ``sequence`` rather than wall-clock time, since
every client stamps its own ``updatedAt`` and clocks drift between browsers.
"""
import time

from .fields import clean_string, coerce_int, first_present, interpret_truthy, normalize_team

TURN_PHASES = ('idle', 'pick', 'active')

# canonical field -> accepted keys, canonical first
COMBAT_ALIASES = {
    'active': ('active', 'isActive'),
    'round': ('round',),
    'activeCombatantId': ('activeCombatantId',),
    'completedCombatantIds': ('completedCombatantIds',),
    'startingTeam': ('startingTeam', 'initialTeam'),
    'currentTeam': ('currentTeam', 'activeTeam'),
    'lastTeam': ('lastTeam', 'previousTeam'),
    'turnPhase': ('turnPhase',),
    'roundTurnCount': ('roundTurnCount',),
    'malice': ('malice', 'maliceCount'),
    'sequence': ('sequence',),
    'updatedAt': ('updatedAt',),
    'turnLock': ('turnLock',),
    'groups': ('groups', 'groupings', 'combatGroups', 'combatantGroups'),
    'lastEffect': ('lastEffect', 'lastEvent'),
}


def _now_ms():
    return int(time.time() * 1000)


def _unique_ids(values):
    ids = []
    for candidate in values if isinstance(values, (list, tuple)) else []:
        value = clean_string(candidate)
        if value is not None and value not in ids:
            ids.append(value)
    return ids


def normalize_turn_lock(raw, now_ms=None):
    if not isinstance(raw, dict):
        return None
    holder_id = clean_string(raw.get('holderId'))
    if holder_id is None:
        return None
    holder_id = holder_id.lower()
    return {
        'holderId': holder_id,
        'holderName': clean_string(raw.get('holderName')) or holder_id,
        'combatantId': clean_string(raw.get('combatantId')),
        'lockedAt': coerce_int(raw.get('lockedAt'), now_ms if now_ms is not None else _now_ms(), minimum=0),
    }


def normalize_last_effect(raw, now_ms=None):
    if not isinstance(raw, dict):
        return None
    effect_type = clean_string(raw.get('type'))
    if effect_type is None:
        return None
    effect = {
        'type': effect_type,
        'combatantId': clean_string(raw.get('combatantId')),
        'triggeredAt': coerce_int(raw.get('triggeredAt'), now_ms if now_ms is not None else _now_ms(), minimum=0),
        'initiatorId': clean_string(first_present(raw, ('initiatorId', 'initiator'))),
    }
    if isinstance(raw.get('payload'), dict):
        effect['payload'] = dict(raw['payload'])
    return effect


def normalize_groups(raw):
    if isinstance(raw, dict):
        entries = [{'representativeId': key, 'memberIds': value} for key, value in raw.items()]
    elif isinstance(raw, list):
        entries = raw
    else:
        return []

    groups = []
    claimed = set()
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        representative = clean_string(first_present(entry, ('representativeId', 'id')))
        if representative is None or representative in claimed:
            continue
        members = _unique_ids(entry.get('memberIds'))
        if representative not in members:
            members.insert(0, representative)
        if len(members) < 2:
            continue
        claimed.add(representative)
        groups.append({'representativeId': representative, 'memberIds': members})
    return groups


def derive_turn_phase(active, active_combatant_id):
    if not active:
        return 'idle'
    return 'active' if active_combatant_id else 'pick'


def normalize_combat_state(raw, now_ms=None):
    """Canonical combat state, or None when the payload carries nothing meaningful."""
    if not isinstance(raw, dict):
        return None

    def pick(field):
        return first_present(raw, COMBAT_ALIASES[field])

    active = interpret_truthy(raw.get('active')) or interpret_truthy(raw.get('isActive'))
    active_combatant = clean_string(pick('activeCombatantId'))
    phase = clean_string(pick('turnPhase'))
    phase = phase.lower() if phase else None

    state = {
        'active': active,
        'round': coerce_int(pick('round'), 0, minimum=0),
        'activeCombatantId': active_combatant,
        'completedCombatantIds': _unique_ids(pick('completedCombatantIds')),
        'startingTeam': normalize_team(pick('startingTeam')),
        'currentTeam': normalize_team(pick('currentTeam')),
        'lastTeam': normalize_team(pick('lastTeam')),
        'turnPhase': phase if phase in TURN_PHASES else derive_turn_phase(active, active_combatant),
        'roundTurnCount': coerce_int(pick('roundTurnCount'), 0, minimum=0),
        'malice': coerce_int(pick('malice'), 0, minimum=0),
        'sequence': coerce_int(pick('sequence'), 0, minimum=0),
        'updatedAt': coerce_int(pick('updatedAt'), None, minimum=0),
        'turnLock': normalize_turn_lock(pick('turnLock'), now_ms),
        'groups': normalize_groups(pick('groups')),
        'lastEffect': normalize_last_effect(pick('lastEffect'), now_ms),
    }

    meaningful = (
        state['active']
        or state['round'] > 0
        or state['activeCombatantId']
        or state['completedCombatantIds']
        or state['startingTeam'] or state['currentTeam'] or state['lastTeam']
        or state['roundTurnCount'] > 0
        or state['malice'] > 0
        or state['sequence'] > 0
        or state['updatedAt'] is not None
        or state['turnLock'] or state['groups'] or state['lastEffect']
    )
    if not meaningful:
        return None

    if state['updatedAt'] is None:
        state['updatedAt'] = now_ms if now_ms is not None else _now_ms()
    return state


def present_combat_fields(raw):
    """Canonical names of the combat fields ``raw`` actually sets."""
    if not isinstance(raw, dict):
        return set()
    return {field for field, keys in COMBAT_ALIASES.items() if any(key in raw for key in keys)}


def _order_key(state):
    return state.get('sequence', 0), state.get('updatedAt') or 0


def merge_combat_state(existing, incoming_raw, now_ms=None):
    """Field-level merge of a raw incoming combat payload into a normalized existing state.

    An incoming payload ordered before the existing state (lower sequence, or
    equal sequence and older timestamp) is discarded. Otherwise only the
    fields the payload sets are taken from it; the rest stay as they were.
    """
    if existing is not None and not isinstance(existing, dict):
        existing = None
    if existing is not None:
        existing = normalize_combat_state(existing, now_ms)

    if incoming_raw is None:
        return existing

    incoming = normalize_combat_state(incoming_raw, now_ms)
    if existing is None:
        return incoming
    if incoming is None:
        # an explicit reset such as {"active": false} still clears the tracker
        fields = present_combat_fields(incoming_raw)
        if not fields:
            return existing
        incoming = normalize_combat_state(dict(incoming_raw, updatedAt=now_ms or _now_ms()), now_ms)

    if _order_key(incoming) < _order_key(existing):
        return existing

    merged = dict(existing)
    fields = present_combat_fields(incoming_raw)
    for field in fields:
        merged[field] = incoming[field]

    if 'turnPhase' not in fields:
        merged['turnPhase'] = derive_turn_phase(merged['active'], merged['activeCombatantId'])
    merged['sequence'] = max(existing['sequence'], incoming['sequence'])
    merged['updatedAt'] = max(existing['updatedAt'] or 0, incoming['updatedAt'] or 0)
    return merged
