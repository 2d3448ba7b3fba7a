"""
Continuous lookup into cross-correlation maps

The data term of the fit needs the correlation score of a particle at
arbitrary (non-integer) offsets, together with its spatial derivative. We
provide this through `CorrelationField`, a bicubic interpolating spline over
one 2D score map.

Cross-correlation maps usually have their origin at pixel ``(0, 0)`` with
negative offsets wrapping around to the far side of the map; use ``wrap=True``
(the default) for those. With ``wrap=False`` lookups are clamped to the map.

Coordinates follow image convention: ``x`` indexes columns, ``y`` rows, i.e.
``value(x, y)`` interpolates ``data[y, x]``.
"""
import numpy as np
from scipy import interpolate

# end effects of the spline decay by a factor ~0.27 per pixel
_WRAP_PAD = 24

class CorrelationField:
    """
    Bicubic interpolant of a single correlation map

    Parameters
    ----------
    data : (h, w) array-like
        the score map
    wrap : bool, optional
        whether to treat the map as periodic. Otherwise, coordinates are
        clamped to the map.

    Attributes
    ----------
    shape : tuple
        ``(h, w)`` of the underlying map
    wrap : bool
    spline : scipy.interpolate.RectBivariateSpline
        the interpolant, over (row, column) coordinates

    Notes
    -----
    For periodic maps the spline is built on a copy padded with 24 pixels
    from the opposite side (repeating the map if it is smaller than that), and
    lookups are reduced modulo the map size. At this distance the end
    conditions of the spline have decayed below rounding, so value and
    gradient are continuous across the seam.
    """
    def __init__(self, data, wrap=True):
        data = np.asarray(data, dtype=float)
        if len(data.shape) != 2:
            raise ValueError(f"Correlation maps should be 2D, got shape {data.shape}")
        if not np.all(np.isfinite(data)):
            raise ValueError("Correlation maps should be finite")

        self.shape = data.shape
        self.wrap = wrap

        if self.wrap:
            padded = np.pad(data, _WRAP_PAD, mode='wrap')
            rows = np.arange(-_WRAP_PAD, self.shape[0] + _WRAP_PAD)
            cols = np.arange(-_WRAP_PAD, self.shape[1] + _WRAP_PAD)
        else:
            if min(self.shape) < 4:
                raise ValueError(f"Bicubic interpolation without wrapping needs at least 4x4 pixels, got {self.shape}")
            padded = data
            rows = np.arange(self.shape[0])
            cols = np.arange(self.shape[1])

        self.spline = interpolate.RectBivariateSpline(rows, cols, padded, kx=3, ky=3, s=0)

    def _coords(self, x, y):
        # returns (row, col, row_clamped, col_clamped)
        h, w = self.shape
        if self.wrap:
            return y % h, x % w, False, False
        else:
            r = min(max(y, 0), h-1)
            c = min(max(x, 0), w-1)
            return r, c, r != y, c != x

    def value(self, x, y):
        """
        Interpolated score at ``(x, y)``

        Parameters
        ----------
        x, y : float

        Returns
        -------
        float
        """
        r, c, _, _ = self._coords(x, y)
        return float(self.spline.ev(r, c))

    def gradient(self, x, y):
        """
        Gradient of the interpolated score at ``(x, y)``

        Parameters
        ----------
        x, y : float

        Returns
        -------
        (2,) np.ndarray
            ``(d/dx, d/dy)``
        """
        r, c, r_clamped, c_clamped = self._coords(x, y)
        gx = 0. if c_clamped else float(self.spline.ev(r, c, dx=0, dy=1))
        gy = 0. if r_clamped else float(self.spline.ev(r, c, dx=1, dy=0))
        return np.array([gx, gy])

def correlation_stack(maps, wrap=True):
    """
    Bring correlation maps into the ``pc × fc`` nested list form

    Parameters
    ----------
    maps : nested list or (pc, fc, h, w) array
        entries can be 2D arrays or `CorrelationField` instances. The latter
        are used as-is.
    wrap : bool, optional
        passed to `CorrelationField` for entries that are not wrapped yet

    Returns
    -------
    list of list of CorrelationField
    """
    stack = [[field if isinstance(field, CorrelationField) else CorrelationField(field, wrap=wrap)
              for field in particle_maps]
             for particle_maps in maps]

    if len(stack) == 0:
        raise ValueError("Need correlation maps for at least one particle")
    fc = len(stack[0])
    if fc == 0:
        raise ValueError("Need correlation maps for at least one frame")
    if any(len(particle_maps) != fc for particle_maps in stack):
        raise ValueError("All particles should have correlation maps for the same number of frames")

    return stack
