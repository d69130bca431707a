"""Fog of war: an enabled flag plus a keyed map of revealed ``"col,row"`` cells.

Revealed cells are held in ``RevealedCells`` (a dict subclass) so the
document always serializes them as a JSON object, even when empty; a list
representation would lose every non-sequential key on the way through.
"""
import logging

from .fields import coerce_int, interpret_truthy

logger = logging.getLogger(__name__)


def cell_key(column, row):
    return f'{column},{row}'


def parse_cell_key(key):
    if not isinstance(key, str):
        return None
    parts = key.split(',')
    if len(parts) != 2:
        return None
    column = coerce_int(parts[0])
    row = coerce_int(parts[1])
    if column is None or row is None or column < 0 or row < 0:
        return None
    return column, row


class RevealedCells(dict):
    """Map of ``"col,row"`` -> True."""

    @classmethod
    def from_payload(cls, raw):
        cells = cls()
        if isinstance(raw, dict):
            items = [key for key, value in raw.items() if interpret_truthy(value)]
        elif isinstance(raw, (list, tuple)):
            # a sparse map that was serialized as a list: either keys or {column,row} objects
            items = raw
        else:
            items = []

        for item in items:
            if isinstance(item, dict):
                column = coerce_int(item.get('column'))
                row = coerce_int(item.get('row'))
                parsed = (column, row) if column is not None and row is not None else None
                if parsed and (column < 0 or row < 0):
                    parsed = None
            else:
                parsed = parse_cell_key(item if isinstance(item, str) else None)
            if parsed is None:
                continue
            cells.reveal(*parsed)
        return cells

    def reveal(self, column, row):
        self[cell_key(column, row)] = True

    def conceal(self, column, row):
        self.pop(cell_key(column, row), None)

    def is_revealed(self, column, row):
        return self.get(cell_key(column, row), False) is True


def normalize_fog_of_war(raw):
    """Canonical ``{'enabled', 'revealedCells'}``; None when there is nothing to keep."""
    if raw is None:
        return None
    if not isinstance(raw, dict):
        logger.debug('Dropping malformed fog of war payload of type %s', type(raw).__name__)
        return None
    return {
        'enabled': interpret_truthy(raw.get('enabled', False)),
        'revealedCells': RevealedCells.from_payload(raw.get('revealedCells')),
    }
