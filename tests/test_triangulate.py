import numpy as np
import pytest

from usdrealize.triangulate import newell_normal, triangulate_faces, triangulate_polygon


def _area(points, tris):
    pts = np.asarray(points, dtype=np.float64)
    total = 0.0
    for a, b, c in tris:
        total += 0.5 * np.linalg.norm(np.cross(pts[b] - pts[a], pts[c] - pts[a]))
    return total


def _assert_wound_like(points, tris):
    pts = np.asarray(points, dtype=np.float64)
    normal = newell_normal(pts)
    for a, b, c in tris:
        assert np.dot(np.cross(pts[b] - pts[a], pts[c] - pts[a]), normal) > 0.0


@pytest.mark.parametrize("sides", [3, 4, 5, 8, 12])
def test_convex_ngon_gives_n_minus_two_triangles(sides):
    angles = np.linspace(0.0, 2.0 * np.pi, sides, endpoint=False)
    points = np.stack([np.cos(angles), np.sin(angles), np.zeros(sides)], axis=1)
    tris = triangulate_polygon(points)
    assert len(tris) == sides - 2
    _assert_wound_like(points, tris)


def test_concave_polygon_keeps_area_and_winding():
    # L shape, area 3
    points = [(0, 0, 0), (2, 0, 0), (2, 1, 0), (1, 1, 0), (1, 2, 0), (0, 2, 0)]
    tris = triangulate_polygon(points)
    assert len(tris) == 4
    assert _area(points, tris) == pytest.approx(3.0)
    _assert_wound_like(points, tris)


def test_clockwise_polygon_keeps_clockwise_winding():
    points = [(0, 0, 0), (0, 1, 0), (1, 1, 0), (1, 0, 0)]
    tris = triangulate_polygon(points)
    for a, b, c in tris:
        pts = np.asarray(points, dtype=np.float64)
        assert np.cross(pts[b] - pts[a], pts[c] - pts[a])[2] < 0.0


def test_polygon_in_vertical_plane():
    points = [(0, 0, 0), (0, 0, 1), (0, 1, 1), (0, 1, 0)]
    tris = triangulate_polygon(points)
    assert len(tris) == 2
    _assert_wound_like(points, tris)


def test_face_map_counts_sum_to_triangles():
    points = np.array(
        [(0, 0, 0), (1, 0, 0), (1, 1, 0), (0, 1, 0), (2, 0, 0), (2, 1, 0), (3, 0.5, 0)],
        dtype=np.float64,
    )
    counts = [4, 3, 2, 4]
    indices = [0, 1, 2, 3, 1, 4, 2, 4, 5, 1, 4, 6, 5]
    result = triangulate_faces(points, counts, indices)
    assert result.face_tri_count.tolist() == [2, 1, 0, 2]
    assert int(result.face_tri_count.sum()) == result.triangle_count
    assert result.face_tri_start.tolist() == [0, 2, 3, 3]
    assert result.face_ids.tolist() == [0, 0, 1, 3, 3]


def test_all_triangle_fast_path():
    points = np.zeros((4, 3))
    result = triangulate_faces(points, [3, 3], [0, 1, 2, 0, 2, 3])
    assert result.corners.tolist() == [[0, 1, 2], [3, 4, 5]]
    assert result.face_tri_count.tolist() == [1, 1]
