"""Merge policies for board collections.

* ``replace_value`` / ``replace_scene_keyed``: the incoming value wins outright.
* ``merge_by_timestamp``: delta merge; newer-or-equal ``_lastModified`` wins
  per entry, untouched entries are preserved.
* ``merge_pings``: union by id, then expiry and the size cap.
* ``merge_preserving_gm_authored``: a player's full collection; entries it
  omits are deleted unless a GM authored them.
* ``stamp_authorship``: marks the entries of a write with the writer's role,
  which is what the two merges above key on.

All functions are pure: inputs are never mutated.
"""
import copy

from .fields import (
    GM_BOOLEAN_KEYS,
    GM_NESTED_KEYS,
    GM_ROLE_KEYS,
    extract_identifier,
    extract_timestamp,
    is_gm_authored,
)
from .normalize import normalize_pings

RESTORE_DEPTH = 5
RESTORED_KEYS = GM_BOOLEAN_KEYS + ('hidden',) + GM_ROLE_KEYS


def replace_value(existing, incoming):
    return copy.deepcopy(incoming)


def deep_merge(base, override):
    """Recursive dict merge; values in ``override`` win, nested dicts are merged."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def restore_gm_markers(gm_source, merged, depth=0):
    """Reassert the authorship markers (and hidden flag) of ``gm_source`` onto ``merged``."""
    if depth > RESTORE_DEPTH:
        return merged

    for key in RESTORED_KEYS:
        if key in gm_source:
            merged[key] = copy.deepcopy(gm_source[key])

    for key in GM_NESTED_KEYS:
        source = gm_source.get(key)
        if not isinstance(source, dict):
            continue
        target = merged.get(key) if isinstance(merged.get(key), dict) else {}
        merged[key] = restore_gm_markers(source, deep_merge(source, target), depth + 1)

    return merged


def merge_gm_authored_entry(existing, incoming):
    return restore_gm_markers(existing, deep_merge(existing, incoming))


def strip_gm_markers(entry, depth=0):
    """Copy of ``entry`` without any authorship claim."""
    stripped = {}
    for key, value in entry.items():
        if key in GM_BOOLEAN_KEYS:
            continue
        if key in GM_ROLE_KEYS and isinstance(value, str) and value.strip().lower() == 'gm':
            continue
        if key in GM_NESTED_KEYS and isinstance(value, dict) and depth < RESTORE_DEPTH:
            value = strip_gm_markers(value, depth + 1)
        stripped[key] = copy.deepcopy(value)
    return stripped


def merge_by_timestamp(existing, incoming):
    existing_by_id = {}
    without_id = []
    for entry in existing or []:
        if not isinstance(entry, dict):
            continue
        identifier = extract_identifier(entry)
        if identifier is None:
            without_id.append(copy.deepcopy(entry))
        else:
            existing_by_id[identifier] = copy.deepcopy(entry)

    for entry in incoming or []:
        if not isinstance(entry, dict):
            continue
        identifier = extract_identifier(entry)
        if identifier is None:
            without_id.append(copy.deepcopy(entry))
            continue

        current = existing_by_id.get(identifier)
        if current is None:
            existing_by_id[identifier] = copy.deepcopy(entry)
            continue
        if extract_timestamp(entry) < extract_timestamp(current):
            continue

        if is_gm_authored(current) and not is_gm_authored(entry):
            existing_by_id[identifier] = merge_gm_authored_entry(current, entry)
        else:
            existing_by_id[identifier] = copy.deepcopy(entry)

    return list(existing_by_id.values()) + without_id


def merge_preserving_gm_authored(existing, incoming):
    existing_entries = [entry for entry in existing or [] if isinstance(entry, dict)]
    gm_ids = {
        extract_identifier(entry) for entry in existing_entries
        if is_gm_authored(entry) and extract_identifier(entry) is not None
    }

    incoming_by_id = {}
    incoming_without_id = []
    for entry in incoming or []:
        if not isinstance(entry, dict):
            continue
        identifier = extract_identifier(entry)
        if is_gm_authored(entry) and identifier not in gm_ids:
            # a player payload cannot create GM-authored content
            continue
        if identifier is None:
            incoming_without_id.append(entry)
        else:
            incoming_by_id[identifier] = entry

    merged = []
    for entry in existing_entries:
        identifier = extract_identifier(entry)
        if identifier in gm_ids:
            update = incoming_by_id.pop(identifier, None)
            merged.append(merge_gm_authored_entry(entry, update) if update else copy.deepcopy(entry))
        elif identifier is None:
            merged.append(copy.deepcopy(entry))
        elif identifier in incoming_by_id:
            merged.append(copy.deepcopy(incoming_by_id.pop(identifier)))
        # otherwise the player's payload dropped it: deleted

    merged.extend(copy.deepcopy(entry) for entry in incoming_by_id.values())
    merged.extend(copy.deepcopy(entry) for entry in incoming_without_id)
    return merged


def merge_scene_keyed(existing, incoming, policy):
    """Apply ``policy`` per scene id; scenes absent from ``incoming`` are untouched."""
    merged = copy.deepcopy(existing) if isinstance(existing, dict) else {}
    for scene_id, entries in (incoming or {}).items():
        merged[scene_id] = policy(merged.get(scene_id, []), entries)
    return merged


def replace_scene_keyed(existing, incoming):
    return merge_scene_keyed(existing, incoming, replace_value)


def merge_pings(existing, incoming, current_ms=None):
    """Union by id, the incoming copy winning, then expire and cap."""
    by_id = {}
    for ping in list(existing or []) + list(incoming or []):
        if isinstance(ping, dict) and ping.get('id') is not None:
            by_id[ping['id']] = ping
    return normalize_pings(list(by_id.values()), current_ms)


def _declared_role(entry):
    role = entry.get('authorRole')
    if isinstance(role, str) and role.strip():
        return role.strip().lower()
    return None


def stamp_authorship(existing, incoming, author_is_gm):
    """Copy of a scene-keyed update with each entry marked with its author.

    GM writes mark entries GM-authored unless the entry, or the stored entry
    it updates, names another author role. Player writes only fill in a
    missing ``authorRole``; they never inherit the stored one.
    """
    stamped = {}
    for scene_id, entries in (incoming or {}).items():
        stored_roles = {
            extract_identifier(entry): _declared_role(entry)
            for entry in (existing or {}).get(scene_id, []) if isinstance(entry, dict)
        }
        scene_entries = []
        for entry in entries:
            entry = copy.deepcopy(entry)
            declared = _declared_role(entry)
            if author_is_gm:
                role = declared or stored_roles.get(extract_identifier(entry))
                if role in (None, 'gm'):
                    entry['authorIsGm'] = True
                    entry['authorRole'] = 'gm'
                elif declared is None:
                    entry['authorRole'] = role
            elif declared is None:
                entry['authorRole'] = 'player'
            scene_entries.append(entry)
        stamped[scene_id] = scene_entries
    return stamped
