"""Player view of a board state.

``project`` is the only route from the stored document to a non-GM viewer:
hidden placements are removed and non-ally stat blocks are stripped.
"""
import copy

from .fields import resolve_combat_team, resolve_hidden

PRIVILEGED_KEYS = ('monster', 'monsterId')


def strip_stat_block(placement):
    stripped = {key: value for key, value in placement.items() if key not in PRIVILEGED_KEYS}
    metadata = placement.get('metadata')
    if isinstance(metadata, dict):
        stripped['metadata'] = {key: value for key, value in metadata.items() if key not in PRIVILEGED_KEYS}
    return stripped


def restrict_placements(placements):
    """Placements map with hidden entries dropped and enemy stats removed."""
    restricted = {}
    for scene_id, entries in (placements or {}).items():
        if not isinstance(entries, list):
            continue
        visible = []
        for entry in entries:
            if not isinstance(entry, dict) or resolve_hidden(entry):
                continue
            if resolve_combat_team(entry) != 'ally':
                entry = strip_stat_block(entry)
            visible.append(entry)
        restricted[scene_id] = visible
    return restricted


def project(board_state, viewer_is_gm):
    if viewer_is_gm:
        return board_state
    projected = copy.deepcopy(board_state)
    projected['placements'] = restrict_placements(projected.get('placements'))
    return projected
