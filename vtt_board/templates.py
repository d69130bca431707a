"""Area-of-effect templates as a tagged union keyed on ``type``."""
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .fields import clean_string, coerce_float, coerce_int

COLOR_HEX = re.compile(r'^#([0-9a-f]{3,8})$', re.IGNORECASE)
COLOR_FUNCTION = re.compile(r'^(rgba?|hsla?)\(', re.IGNORECASE)
MAX_COLOR_LENGTH = 64


def sanitize_color(value):
    color = clean_string(value)
    if color is None or len(color) > MAX_COLOR_LENGTH:
        return None
    if COLOR_HEX.match(color) or COLOR_FUNCTION.match(color):
        return color
    return None


def _point(raw, minimum=None):
    raw = raw if isinstance(raw, dict) else {}
    column = coerce_float(raw.get('column'), 0.0)
    row = coerce_float(raw.get('row'), 0.0)
    if minimum is not None:
        column, row = max(minimum, column), max(minimum, row)
    return column, row


@dataclass
class CircleTemplate:
    id: str
    center: Tuple[float, float] = (0.0, 0.0)
    radius: float = 0.5
    color: Optional[str] = None
    type: str = field(default='circle', init=False)

    @classmethod
    def from_payload(cls, template_id, entry, color):
        radius = max(0.5, coerce_float(entry.get('radius'), 0.5))
        return cls(id=template_id, center=_point(entry.get('center')), radius=radius, color=color)

    def to_dict(self):
        payload = {
            'id': self.id,
            'type': self.type,
            'center': {'column': self.center[0], 'row': self.center[1]},
            'radius': self.radius,
        }
        if self.color is not None:
            payload['color'] = self.color
        return payload


@dataclass
class RectangleTemplate:
    id: str
    start: Tuple[float, float] = (0.0, 0.0)
    length: float = 1.0
    width: float = 1.0
    rotation: float = 0.0
    anchor: Optional[Tuple[float, float]] = None
    orientation: Optional[Tuple[int, int]] = None
    color: Optional[str] = None
    type: str = field(default='rectangle', init=False)

    @classmethod
    def from_payload(cls, template_id, entry, color):
        anchor = None
        raw_anchor = entry.get('anchor')
        if isinstance(raw_anchor, dict):
            anchor_column = coerce_float(raw_anchor.get('column'))
            anchor_row = coerce_float(raw_anchor.get('row'))
            if anchor_column is not None and anchor_row is not None:
                anchor = (max(0.0, anchor_column), max(0.0, anchor_row))

        orientation = None
        raw_orientation = entry.get('orientation')
        if isinstance(raw_orientation, dict):
            orientation = (
                -1 if coerce_float(raw_orientation.get('x'), 0.0) < 0 else 1,
                -1 if coerce_float(raw_orientation.get('y'), 0.0) < 0 else 1,
            )

        return cls(
            id=template_id,
            start=_point(entry.get('start'), minimum=0.0),
            length=max(1.0, coerce_float(entry.get('length'), 1.0)),
            width=max(1.0, coerce_float(entry.get('width'), 1.0)),
            rotation=coerce_float(entry.get('rotation'), 0.0, precision=2),
            anchor=anchor,
            orientation=orientation,
            color=color,
        )

    def to_dict(self):
        payload = {
            'id': self.id,
            'type': self.type,
            'start': {'column': self.start[0], 'row': self.start[1]},
            'length': self.length,
            'width': self.width,
            'rotation': self.rotation,
        }
        if self.color is not None:
            payload['color'] = self.color
        if self.anchor is not None:
            payload['anchor'] = {'column': self.anchor[0], 'row': self.anchor[1]}
        if self.orientation is not None:
            payload['orientation'] = {'x': self.orientation[0], 'y': self.orientation[1]}
        return payload


@dataclass
class WallTemplate:
    id: str
    squares: List[Tuple[int, int]] = field(default_factory=list)
    color: Optional[str] = None
    type: str = field(default='wall', init=False)

    @classmethod
    def from_payload(cls, template_id, entry, color):
        squares = []
        raw_squares = entry.get('squares')
        for square in raw_squares if isinstance(raw_squares, list) else []:
            if not isinstance(square, dict):
                continue
            column = coerce_int(square.get('column'), minimum=0)
            row = coerce_int(square.get('row'), minimum=0)
            if column is None or row is None:
                continue
            squares.append((column, row))
        return cls(id=template_id, squares=squares, color=color)

    def to_dict(self):
        payload = {
            'id': self.id,
            'type': self.type,
            'squares': [{'column': column, 'row': row} for column, row in self.squares],
        }
        if self.color is not None:
            payload['color'] = self.color
        return payload


_SHAPE_KEYS = frozenset((
    'center', 'radius', 'start', 'length', 'width', 'rotation', 'anchor', 'orientation', 'squares', 'color',
))

TEMPLATE_TYPES = {
    'circle': CircleTemplate,
    'rectangle': RectangleTemplate,
    'wall': WallTemplate,
}


def parse_template(entry):
    """Build the template variant named by ``entry['type']``; None when the entry is unusable."""
    if not isinstance(entry, dict):
        return None
    template_id = clean_string(entry.get('id'))
    kind = clean_string(entry.get('type'))
    variant = TEMPLATE_TYPES.get(kind.lower()) if kind else None
    if template_id is None or variant is None:
        return None
    return variant.from_payload(template_id, entry, sanitize_color(entry.get('color')))


def normalize_template_entry(entry):
    template = parse_template(entry)
    if template is None:
        return None
    normalized = template.to_dict()
    # ownership markers and write timestamps ride along with the shape
    for key, value in entry.items():
        if key not in normalized and key not in _SHAPE_KEYS:
            normalized[key] = value
    return normalized
