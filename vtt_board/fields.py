"""Value coercion and legacy-alias resolution shared by the normalizer, merge engine and projector.

Every alias list lives here so it is consulted in exactly one place.
"""
import math

IDENTIFIER_KEYS = ('id', 'uuid', 'uid', 'key', 'tokenId', 'token_id', 'templateId', 'template_id')
TIMESTAMP_KEYS = ('_lastModified', 'lastModified', 'updatedAt', 'timestamp', 'modifiedAt')
HIDDEN_KEYS = ('hidden', 'isHidden')
TEAM_KEYS = ('combatTeam', 'team')

GM_BOOLEAN_KEYS = ('authorIsGm', 'gm', 'isGm', 'gmOnly', 'gm_only', 'gmAuthored', 'gm_authored')
GM_ROLE_KEYS = ('authorRole', 'role', 'createdByRole', 'source', 'ownerRole')
GM_NESTED_KEYS = ('metadata', 'meta', 'flags')
GM_DETECTION_DEPTH = 3

TRUTHY_STRINGS = ('1', 'true', 'yes', 'on')
COMBAT_TEAMS = ('ally', 'enemy')


def is_numeric(value):
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    if isinstance(value, str):
        try:
            return math.isfinite(float(value.strip()))
        except ValueError:
            return False
    return False


def coerce_float(value, fallback=None, precision=4):
    if not is_numeric(value):
        return fallback
    return round(float(value), precision)


def coerce_int(value, fallback=None, minimum=None, maximum=None):
    if not is_numeric(value):
        return fallback
    number = int(round(float(value)))
    if minimum is not None:
        number = max(minimum, number)
    if maximum is not None:
        number = min(maximum, number)
    return number


def clean_string(value):
    """Trimmed string, or None for non-strings and blanks."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def interpret_truthy(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_STRINGS
    return False


def first_present(source, keys, default=None):
    """Value of the first key in ``keys`` present in ``source``."""
    if not isinstance(source, dict):
        return default
    for key in keys:
        if key in source:
            return source[key]
    return default


def extract_identifier(entry):
    if not isinstance(entry, dict):
        return None
    for key in IDENTIFIER_KEYS:
        if key not in entry:
            continue
        raw = entry[key]
        if isinstance(raw, bool):
            continue
        if isinstance(raw, str):
            candidate = raw.strip()
        elif isinstance(raw, int):
            candidate = str(raw)
        elif isinstance(raw, float):
            candidate = str(int(raw)) if raw.is_integer() else str(raw)
        else:
            continue
        if candidate:
            return candidate
    return None


def extract_timestamp(entry):
    """Write timestamp in epoch ms; 0 when the entry carries none."""
    if not isinstance(entry, dict):
        return 0
    for key in TIMESTAMP_KEYS:
        if key in entry and is_numeric(entry[key]):
            return int(float(entry[key]))
    return 0


def resolve_hidden(entry):
    # hidden -> isHidden -> flags.hidden; the first location present decides
    if not isinstance(entry, dict):
        return False
    for key in HIDDEN_KEYS:
        if key in entry:
            return interpret_truthy(entry[key])
    flags = entry.get('flags')
    if isinstance(flags, dict) and 'hidden' in flags:
        return interpret_truthy(flags['hidden'])
    return False


def normalize_team(value):
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized if normalized in COMBAT_TEAMS else None


def resolve_combat_team(entry):
    if not isinstance(entry, dict):
        return None
    for key in TEAM_KEYS:
        team = normalize_team(entry.get(key))
        if team is not None:
            return team
    return None


def is_gm_authored(entry):
    if not isinstance(entry, dict):
        return False
    return _contains_gm_marker(entry, 0)


def _contains_gm_marker(entry, depth):
    if depth > GM_DETECTION_DEPTH:
        return False

    for key in GM_BOOLEAN_KEYS:
        if key in entry and interpret_truthy(entry[key]):
            return True

    for key in GM_ROLE_KEYS:
        value = entry.get(key)
        if isinstance(value, str) and value.strip().lower() == 'gm':
            return True

    for key in GM_NESTED_KEYS:
        nested = entry.get(key)
        if isinstance(nested, dict) and _contains_gm_marker(nested, depth + 1):
            return True

    return False
