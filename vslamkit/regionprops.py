"""Shape and intensity properties of an image region bounded by a contour."""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

_FLT_EPSILON = 1.1920929e-07
_MIN_ELLIPSE_POINTS = 5
_ELLIPSE_EPS = 1e-8
_APPROX_FACTOR = 0.02


def _as_points(contour, dtype=float) -> np.ndarray:
    arr = np.asarray(contour)
    if arr.ndim == 3 and arr.shape[1] == 1:
        arr = arr.reshape(-1, arr.shape[2])
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise ValueError("contour must have shape (n, 2)")
    if len(arr) == 0:
        raise ValueError("contour must hold at least one point")
    return arr.astype(dtype)


def contour_area(contour) -> float:
    """Unsigned area enclosed by the closed polygon ``contour``."""
    pts = _as_points(contour)
    x, y = pts[:, 0], pts[:, 1]
    return float(abs(np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y)) / 2.0)


def arc_length(contour) -> float:
    """Perimeter of the closed polygon ``contour``."""
    pts = _as_points(contour)
    return float(np.sum(np.linalg.norm(pts - np.roll(pts, 1, axis=0), axis=1)))


def contour_moments(contour) -> dict[str, float]:
    """Spatial, central and normalised moments of the polygon up to order 3."""
    pts = _as_points(contour)
    x, y = pts[:, 0], pts[:, 1]
    xp, yp = np.roll(x, 1), np.roll(y, 1)
    dxy = xp * y - x * yp
    xii = xp + x
    yii = yp + y

    a00 = float(np.sum(dxy))
    a10 = float(np.sum(dxy * xii))
    a01 = float(np.sum(dxy * yii))
    a20 = float(np.sum(dxy * (xp * xii + x * x)))
    a11 = float(np.sum(dxy * (xp * (yii + yp) + x * (yii + y))))
    a02 = float(np.sum(dxy * (yp * yii + y * y)))
    a30 = float(np.sum(dxy * xii * (xp * xp + x * x)))
    a03 = float(np.sum(dxy * yii * (yp * yp + y * y)))
    a21 = float(np.sum(dxy * (xp * xp * (3 * yp + y) + 2 * x * xp * yii + x * x * (yp + 3 * y))))
    a12 = float(np.sum(dxy * (yp * yp * (3 * xp + x) + 2 * y * yp * xii + y * y * (xp + 3 * x))))

    keys = ("m00", "m10", "m01", "m20", "m11", "m02", "m30", "m21", "m12", "m03",
            "mu20", "mu11", "mu02", "mu30", "mu21", "mu12", "mu03",
            "nu20", "nu11", "nu02", "nu30", "nu21", "nu12", "nu03")
    result = dict.fromkeys(keys, 0.0)
    if abs(a00) <= _FLT_EPSILON:
        return result

    sign = 1.0 if a00 > 0 else -1.0
    m00 = a00 * sign / 2.0
    m10, m01 = a10 * sign / 6.0, a01 * sign / 6.0
    m20, m11, m02 = a20 * sign / 12.0, a11 * sign / 24.0, a02 * sign / 12.0
    m30, m21, m12, m03 = a30 * sign / 20.0, a21 * sign / 60.0, a12 * sign / 60.0, a03 * sign / 20.0

    cx, cy = m10 / m00, m01 / m00
    mu20 = m20 - m10 * cx
    mu11 = m11 - m10 * cy
    mu02 = m02 - m01 * cy
    mu30 = m30 - cx * (3 * mu20 + cx * m10)
    mu21 = m21 - cx * (2 * mu11 + cx * m01) - cy * mu20
    mu12 = m12 - cy * (2 * mu11 + cy * m10) - cx * mu02
    mu03 = m03 - cy * (3 * mu02 + cy * m01)

    inv_m00 = 1.0 / m00
    s2 = inv_m00 * inv_m00
    s3 = s2 * math.sqrt(inv_m00)
    result.update(
        m00=m00, m10=m10, m01=m01, m20=m20, m11=m11, m02=m02,
        m30=m30, m21=m21, m12=m12, m03=m03,
        mu20=mu20, mu11=mu11, mu02=mu02, mu30=mu30, mu21=mu21, mu12=mu12, mu03=mu03,
        nu20=mu20 * s2, nu11=mu11 * s2, nu02=mu02 * s2,
        nu30=mu30 * s3, nu21=mu21 * s3, nu12=mu12 * s3, nu03=mu03 * s3,
    )
    return result


def bounding_rect(contour) -> tuple[int, int, int, int]:
    """Smallest upright pixel rectangle ``(x, y, width, height)`` holding the points."""
    pts = _as_points(contour, dtype=np.int64)
    x0, y0 = pts.min(axis=0)
    x1, y1 = pts.max(axis=0)
    return int(x0), int(y0), int(x1 - x0 + 1), int(y1 - y0 + 1)


def _cross(o, a, b) -> float:
    return float((a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0]))


def convex_hull(contour) -> np.ndarray:
    """Vertices of the convex hull, taken from the input points."""
    pts = _as_points(contour, dtype=np.asarray(contour).dtype)
    order = np.lexsort((pts[:, 1], pts[:, 0]))
    unique = []
    for idx in order:
        if not unique or not np.array_equal(pts[unique[-1]], pts[idx]):
            unique.append(int(idx))
    if len(unique) <= 2:
        return pts[unique].copy()

    def chain(indices):
        out: list[int] = []
        for idx in indices:
            while len(out) >= 2 and _cross(pts[out[-2]], pts[out[-1]], pts[idx]) <= 0:
                out.pop()
            out.append(idx)
        return out

    lower = chain(unique)
    upper = chain(reversed(unique))
    return pts[lower[:-1] + upper[:-1]].copy()


def fit_ellipse(contour) -> tuple[tuple[float, float], tuple[float, float], float]:
    """Least-squares ellipse ``((cx, cy), (width, height), angle_degrees)``.

    Needs at least five points.
    """
    pts = _as_points(contour)
    if len(pts) < _MIN_ELLIPSE_POINTS:
        raise ValueError("fitting an ellipse needs at least five points")
    c = pts.mean(axis=0)
    p = pts - c
    x, y = p[:, 0], p[:, 1]

    a = np.column_stack([-x * x, -y * y, -x * y, x, y])
    gfp = np.linalg.lstsq(a, np.full(len(p), 10000.0), rcond=None)[0]
    center = np.linalg.solve(np.array([[2 * gfp[0], gfp[2]], [gfp[2], 2 * gfp[1]]]), gfp[3:5])

    dx, dy = x - center[0], y - center[1]
    a = np.column_stack([dx * dx, dy * dy, dx * dy])
    g = np.linalg.lstsq(a, np.ones(len(p)), rcond=None)[0]

    angle = -0.5 * math.atan2(g[2], g[1] - g[0])
    if abs(g[2]) > _ELLIPSE_EPS:
        t = g[2] / math.sin(-2.0 * angle)
    else:
        t = g[1] - g[0]
    rp2 = abs(g[0] + g[1] - t)
    if rp2 > _ELLIPSE_EPS:
        rp2 = math.sqrt(2.0 / rp2)
    rp3 = abs(g[0] + g[1] + t)
    if rp3 > _ELLIPSE_EPS:
        rp3 = math.sqrt(2.0 / rp3)

    width, height = 2.0 * rp2, 2.0 * rp3
    degrees = math.degrees(angle)
    if width > height:
        width, height = height, width
        degrees = 90.0 + math.degrees(angle)
    if degrees < -180.0:
        degrees += 360.0
    if degrees > 360.0:
        degrees -= 360.0
    return (float(center[0] + c[0]), float(center[1] + c[1])), (float(width), float(height)), float(degrees)


def _distance_to_line(points, start, end) -> np.ndarray:
    d = end - start
    length = math.hypot(float(d[0]), float(d[1]))
    if length == 0.0:
        return np.linalg.norm(points - start, axis=1)
    return np.abs(d[0] * (points[:, 1] - start[1]) - d[1] * (points[:, 0] - start[0])) / length


def _douglas_peucker(points, epsilon) -> list[int]:
    keep = np.zeros(len(points), dtype=bool)
    keep[0] = keep[-1] = True
    stack = [(0, len(points) - 1)]
    while stack:
        lo, hi = stack.pop()
        if hi - lo < 2:
            continue
        dist = _distance_to_line(points[lo + 1:hi], points[lo], points[hi])
        k = int(np.argmax(dist))
        if dist[k] > epsilon:
            mid = lo + 1 + k
            keep[mid] = True
            stack.append((lo, mid))
            stack.append((mid, hi))
    return [int(i) for i in np.flatnonzero(keep)]


def approx_poly_dp(contour, epsilon) -> np.ndarray:
    """Simplify the closed polygon so no point strays more than ``epsilon``."""
    if epsilon < 0:
        raise ValueError("epsilon must not be negative")
    pts = _as_points(contour, dtype=np.asarray(contour).dtype)
    if len(pts) < 3:
        return pts.copy()
    fpts = pts.astype(float)
    far = int(np.argmax(np.linalg.norm(fpts - fpts[0], axis=1)))
    if far == 0:
        return pts[:1].copy()
    first = list(range(0, far + 1))
    second = list(range(far, len(pts))) + [0]
    kept1 = [first[i] for i in _douglas_peucker(fpts[first], epsilon)]
    kept2 = [second[i] for i in _douglas_peucker(fpts[second], epsilon)]
    return pts[kept1[:-1] + kept2[:-1]].copy()


def fill_polygon(shape, contour) -> np.ndarray:
    """Mask of ``shape`` (rows, cols) with the polygon and its border set to 255."""
    rows, cols = int(shape[0]), int(shape[1])
    pts = _as_points(contour)
    mask = np.zeros((rows, cols), dtype=np.uint8)
    if rows == 0 or cols == 0:
        return mask

    py, px = np.mgrid[0:rows, 0:cols].astype(float)
    inside = np.zeros((rows, cols), dtype=bool)
    if len(pts) >= 3:
        with np.errstate(divide="ignore", invalid="ignore"):
            for (x1, y1), (x2, y2) in zip(pts, np.roll(pts, -1, axis=0)):
                crosses = (y1 > py) != (y2 > py)
                x_cross = x1 + (py - y1) * (x2 - x1) / (y2 - y1)
                inside ^= crosses & (px < x_cross)
    mask[inside] = 255

    for start, end in zip(pts, np.roll(pts, -1, axis=0)):
        steps = int(max(abs(end[0] - start[0]), abs(end[1] - start[1])))
        t = np.arange(steps + 1) / steps if steps else np.zeros(1)
        xs = np.rint(start[0] + (end[0] - start[0]) * t).astype(np.int64)
        ys = np.rint(start[1] + (end[1] - start[1]) * t).astype(np.int64)
        ok = (xs >= 0) & (xs < cols) & (ys >= 0) & (ys < rows)
        mask[ys[ok], xs[ok]] = 255
    return mask


@dataclass(eq=False)
class Region:
    """Properties of a region; points and locations are ``(x, y)``."""

    area: float
    perimeter: float
    moments: dict
    centroid: tuple[int, int]
    aspect_ratio: float
    bounding_box: tuple[int, int, int, int]
    convex_hull: np.ndarray
    convex_area: float
    ellipse: tuple
    solidity: float
    major_axis: float
    minor_axis: float
    orientation: float
    eccentricity: float
    approx: np.ndarray
    filled_image: np.ndarray
    filled_area: float
    pixel_list: np.ndarray
    convex_image: np.ndarray
    min_val: float
    max_val: float
    min_loc: tuple[int, int]
    max_loc: tuple[int, int]
    mean_val: float
    extrema: list

    @property
    def equivalent_diameter(self) -> float:
        """Diameter of the circle with the same area."""
        return math.sqrt(4.0 * self.area / math.pi)

    @property
    def extent(self) -> float:
        """Area divided by the bounding-box area."""
        _, _, w, h = self.bounding_box
        return self.area / (w * h)


def _pixel_parameters(image, mask):
    selected = mask != 0
    if not selected.any():
        return 0.0, 0.0, (-1, -1), (-1, -1), 0.0
    values = image.astype(float)
    flat_min = int(np.argmin(np.where(selected, values, np.inf)))
    flat_max = int(np.argmax(np.where(selected, values, -np.inf)))
    cols = image.shape[1]
    min_loc = (flat_min % cols, flat_min // cols)
    max_loc = (flat_max % cols, flat_max // cols)
    return (float(values.flat[flat_min]), float(values.flat[flat_max]),
            min_loc, max_loc, float(values[selected].mean()))


def _extrema(points, rows, cols) -> list[tuple[int, int]]:
    right, left, top, bottom = (0, 0), (cols, 0), (0, 0), (0, rows)
    for x, y in points:
        x, y = int(x), int(y)
        if x > right[0]:
            right = (x, y)
        if x < left[0]:
            left = (x, y)
        if y > top[1]:
            top = (x, y)
        if y < bottom[1]:
            bottom = (x, y)
    return [right, left, top, bottom]


def region_props(contour, image) -> Region:
    """Compute every region property of ``contour`` over a single-channel image."""
    pts = _as_points(contour, dtype=np.int64)
    img = np.array(image, copy=True)
    if img.ndim != 2:
        raise ValueError("image must be single-channel (two-dimensional)")
    rows, cols = img.shape

    area = contour_area(pts)
    perimeter = arc_length(pts)
    moments = contour_moments(pts)
    if moments["m00"] != 0.0:
        centroid = (int(moments["m10"] / moments["m00"]), int(moments["m01"] / moments["m00"]))
    else:
        centroid = (0, 0)
    box = bounding_rect(pts)
    aspect = box[2] / float(box[3])
    hull = convex_hull(pts)
    hull_area = contour_area(hull)
    ellipse = fit_ellipse(pts)
    with np.errstate(divide="ignore", invalid="ignore"):
        solidity = float(np.float64(area) / np.float64(hull_area))
    width, height = ellipse[1]
    major = max(width, height)
    minor = min(width, height)
    ratio = minor / major if major else float("nan")
    eccentricity = math.sqrt(1.0 - ratio * ratio) if major else float("nan")

    filled = fill_polygon((rows, cols), pts)
    ys, xs = np.nonzero(filled)
    pixel_list = np.column_stack([xs, ys])
    min_val, max_val, min_loc, max_loc, mean_val = _pixel_parameters(img, filled)

    return Region(
        area=area,
        perimeter=perimeter,
        moments=moments,
        centroid=centroid,
        aspect_ratio=aspect,
        bounding_box=box,
        convex_hull=hull,
        convex_area=hull_area,
        ellipse=ellipse,
        solidity=solidity,
        major_axis=major,
        minor_axis=minor,
        orientation=ellipse[2],
        eccentricity=eccentricity,
        approx=approx_poly_dp(pts, _APPROX_FACTOR * perimeter),
        filled_image=filled,
        filled_area=float(np.count_nonzero(filled)),
        pixel_list=pixel_list,
        convex_image=fill_polygon((rows, cols), hull),
        min_val=min_val,
        max_val=max_val,
        min_loc=min_loc,
        max_loc=max_loc,
        mean_val=mean_val,
        extrema=_extrema(pts, rows, cols),
    )