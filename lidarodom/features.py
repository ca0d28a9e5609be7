"""Edge and surface feature extraction from multi-line lidar scans."""

from __future__ import annotations

import numpy as np

_HALF_WINDOW = 5
_MIN_LINE_POINTS = 131
_NUM_SECTORS = 6
_EDGE_CURVATURE = 0.1
_MAX_EDGES_PER_SECTOR = 20
_NEIGHBOUR_GAP_SQ = 0.05
_KERNEL = np.array([1.0] * _HALF_WINDOW + [-2.0 * _HALF_WINDOW] + [1.0] * _HALF_WINDOW)


def curvatures(line_points):
    """Curvature ``(index, value)`` of each point with five neighbours on both sides."""
    pts = np.asarray(line_points, dtype=float).reshape(-1, 3)
    if len(pts) <= 2 * _HALF_WINDOW:
        return []
    diff = np.stack([np.convolve(pts[:, axis], _KERNEL, mode="valid") for axis in range(3)], axis=1)
    values = np.einsum("ni,ni->n", diff, diff)
    return [(idx, float(v)) for idx, v in enumerate(values, start=_HALF_WINDOW)]


def _spread(points, ind, step, picked):
    """Mark neighbours of ``ind`` in one direction while they stay close together."""
    for k in range(1, _HALF_WINDOW + 1):
        cur = ind + step * k
        prev = cur - step
        d = points[cur] - points[prev]
        if float(d @ d) > _NEIGHBOUR_GAP_SQ:
            break
        picked.add(cur)


def extract_from_sector(points, sector):
    """Split one sector of ``(index, curvature)`` pairs into edge and surface points."""
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    ordered = sorted(sector, key=lambda item: item[1])
    picked = set()
    edges = []
    for ind, value in reversed(ordered):
        if ind in picked:
            continue
        if value <= _EDGE_CURVATURE:
            break
        picked.add(ind)
        if len(edges) >= _MAX_EDGES_PER_SECTOR:
            break
        edges.append(pts[ind])
        _spread(pts, ind, 1, picked)
        _spread(pts, ind, -1, picked)
    surfs = [pts[ind] for ind, _ in ordered if ind not in picked]
    return _stack(edges), _stack(surfs)


def _stack(rows):
    return np.array(rows, dtype=float).reshape(-1, 3)


def extract(cloud, num_scans=16):
    """Edge and surface points of a cloud whose points carry their scan ring."""
    rings = np.asarray(cloud.ring)
    if len(rings) and (rings.min() < 0 or rings.max() >= num_scans):
        raise ValueError(f"ring index outside 0..{num_scans - 1}")
    edges, surfs = [], []
    for ring in range(num_scans):
        line = cloud.points[rings == ring]
        if len(line) < _MIN_LINE_POINTS:
            continue
        curv = curvatures(line)
        total = len(line) - 2 * _HALF_WINDOW
        length = total // _NUM_SECTORS
        for j in range(_NUM_SECTORS):
            start = length * j
            end = total - 1 if j == _NUM_SECTORS - 1 else length * (j + 1) - 1
            edge, surf = extract_from_sector(line, curv[start:end])
            edges.append(edge)
            surfs.append(surf)
    return _stack_all(edges), _stack_all(surfs)


def _stack_all(parts):
    if not parts:
        return np.zeros((0, 3))
    return np.concatenate(parts, axis=0)