"""Overlay layers and masks.

The top-level ``mask`` of an overlay is never authored directly: it is the
union of every visible layer's polygons and is rebuilt on each normalization.
"""
from .fields import clean_string, coerce_float, interpret_truthy

MIN_POLYGON_POINTS = 3
DEFAULT_LAYER_NAME = 'Overlay {index}'


def create_empty_mask():
    return {'visible': True, 'polygons': []}


def normalize_mask_point(point):
    if not isinstance(point, dict):
        return None
    column = coerce_float(point.get('column', point.get('x')))
    row = coerce_float(point.get('row', point.get('y')))
    if column is None or row is None:
        return None
    return {'column': column, 'row': row}


def _polygon_points(polygon):
    if isinstance(polygon, dict) and isinstance(polygon.get('points'), list):
        return polygon['points']
    if isinstance(polygon, list):
        return polygon
    return None


def normalize_mask(raw):
    mask = create_empty_mask()
    if not isinstance(raw, dict):
        return mask

    if 'visible' in raw:
        mask['visible'] = interpret_truthy(raw['visible'])

    url = clean_string(raw.get('url'))
    if url:
        mask['url'] = url

    polygons = raw.get('polygons')
    for polygon in polygons if isinstance(polygons, list) else []:
        source = _polygon_points(polygon)
        if source is None:
            continue
        points = [p for p in (normalize_mask_point(point) for point in source) if p is not None]
        if len(points) >= MIN_POLYGON_POINTS:
            mask['polygons'].append({'points': points})

    return mask


def normalize_layer(raw, index):
    if not isinstance(raw, dict):
        return None
    layer_id = clean_string(raw.get('id')) or f'overlay-layer-{index}'
    return {
        'id': layer_id,
        'name': clean_string(raw.get('name')) or DEFAULT_LAYER_NAME.format(index=index),
        'visible': interpret_truthy(raw.get('visible', True)),
        'mapUrl': clean_string(raw.get('mapUrl')),
        'mask': normalize_mask(raw.get('mask')),
    }


def build_aggregate_mask(layers):
    """Union of the polygons of every visible layer."""
    if not layers:
        return create_empty_mask()
    polygons = []
    visible = False
    for layer in layers:
        if not layer.get('visible'):
            continue
        visible = True
        mask = layer.get('mask') or {}
        if mask.get('visible', True):
            polygons.extend(mask.get('polygons', []))
    return {'visible': visible, 'polygons': polygons}


def normalize_overlay(raw):
    overlay = {
        'mapUrl': None,
        'layers': [],
        'activeLayerId': None,
        'mask': create_empty_mask(),
    }
    if not isinstance(raw, dict):
        return overlay

    overlay['mapUrl'] = clean_string(raw.get('mapUrl'))

    layers = []
    seen = set()
    raw_layers = raw.get('layers')
    for raw_layer in raw_layers if isinstance(raw_layers, list) else []:
        layer = normalize_layer(raw_layer, len(layers) + 1)
        if layer is None or layer['id'] in seen:
            continue
        seen.add(layer['id'])
        layers.append(layer)

    if not layers and isinstance(raw.get('mask'), dict):
        # legacy single-mask overlays become one layer
        legacy = normalize_mask(raw['mask'])
        if legacy['polygons'] or overlay['mapUrl']:
            layers.append({
                'id': 'overlay-layer-1',
                'name': DEFAULT_LAYER_NAME.format(index=1),
                'visible': legacy['visible'],
                'mapUrl': overlay['mapUrl'],
                'mask': legacy,
            })

    layer_ids = [layer['id'] for layer in layers]
    active = clean_string(raw.get('activeLayerId'))
    if active not in layer_ids:
        active = layer_ids[0] if layer_ids else None

    overlay['layers'] = layers
    overlay['activeLayerId'] = active
    overlay['mask'] = build_aggregate_mask(layers)
    return overlay
