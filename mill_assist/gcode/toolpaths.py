"""Toolpath planning helpers -- depth layers, pocket rings, raster passes.

Pure functions over floats.  Every sequence ends *exactly* on its limit
(final depth, pocket wall offset, far stock edge) rather than on the last
multiple of the step, so rounding never overshoots or leaves a sliver.
"""

from __future__ import annotations

import math

_EPS = 1e-9


def _step_count(span: float, step: float) -> int:
    """Number of steps of at most *step* needed to cover *span*."""
    return max(1, math.ceil(span / step - _EPS))


def depth_layers(z_start: float, z_depth: float, step_down: float) -> list[float]:
    """Z values of successive passes from *z_start* down to *z_depth*.

    Parameters
    ----------
    z_start, z_depth : float
        Top of the cut and final depth.
    step_down : float
        Maximum increment per pass.  ``<= 0`` means a single pass.

    Returns
    -------
    list[float]
        Strictly decreasing depths; the last element is *z_depth* itself.
        A non-descending request (``z_depth >= z_start``) yields
        ``[z_depth]``.

    Examples
    --------
    >>> depth_layers(0.0, -10.0, 3.0)
    [-3.0, -6.0, -9.0, -10.0]
    """
    span = z_start - z_depth
    if step_down <= 0 or span <= 0 or not math.isfinite(step_down):
        return [z_depth]
    n = _step_count(span, step_down)
    return [z_start - k * step_down for k in range(1, n)] + [z_depth]


def ring_radii(limit: float, stepover: float) -> list[float]:
    """Radii of concentric clearing rings from the centre out to *limit*.

    The centre itself is not a ring.  Returns ``[]`` when *limit* is not
    positive (tool as wide as, or wider than, the pocket).
    """
    if limit <= 0 or stepover <= 0:
        return []
    n = _step_count(limit, stepover)
    return [k * stepover for k in range(1, n)] + [limit]


def rectangle_rings(
    half_x: float, half_y: float, stepover: float,
) -> list[tuple[float, float]]:
    """Half-sizes of offset rectangles, innermost first, boundary last.

    The innermost entry has its shorter half-size equal to zero (a line
    through the centre, or a point for a square pocket).  Successive
    offsets differ by at most *stepover*.  Returns ``[]`` if either
    half-size is negative.
    """
    m = min(half_x, half_y)
    if m < 0 or stepover <= 0:
        return []
    if m == 0:
        return [(half_x, half_y)]
    n = _step_count(m, stepover)
    rings = []
    for i in range(n, -1, -1):
        d = m if i == n else i * stepover
        rings.append((half_x - d, half_y - d))
    return rings


def raster_offsets(lo: float, hi: float, stepover: float) -> list[float]:
    """Pass positions from *lo* to *hi* inclusive, spaced by at most *stepover*."""
    if hi <= lo or stepover <= 0:
        return [lo]
    n = _step_count(hi - lo, stepover)
    return [lo + k * stepover for k in range(n)] + [hi]
