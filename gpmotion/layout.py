"""
Layout of the flat parameter vector

Optimizers want a single 1D array. We pack two groups of variables into it:

 + the absolute positions of all particles in the first frame, and
 + for each transition ``f --> f+1`` between frames, the coefficients of the
   particle velocities in the (scaled) GP eigenbasis.

Each entry comes as an ``(x, y)`` pair:

    .. code-block:: text

        x[2*p + k]                  position of particle p in frame 0
        x[2*(pc + dc*f + d) + k]    coefficient of mode d for transition f

with ``k = 0, 1`` for the x and y component respectively.
"""
import numpy as np

class ParamLayout:
    """
    Index arithmetic over the parameter vector

    Parameters
    ----------
    pc : int
        number of particles
    fc : int
        number of frames
    dc : int
        number of retained basis modes

    Attributes
    ----------
    pc, fc, dc : int
    size : int
        total length of the parameter vector, ``2*pc + 2*dc*(fc-1)``
    """
    def __init__(self, pc, fc, dc):
        self.pc = pc
        self.fc = fc
        self.dc = dc
        self.size = 2*pc + 2*dc*(fc-1)

    def index(self, f, d, k=0):
        """
        Flat index of coefficient ``(f, d)``, component `!k`
        """
        return 2*(self.pc + self.dc*f + d) + k

    def positions(self, x):
        """
        ``(pc, 2)`` view onto the first-frame positions in `!x`
        """
        return x[:2*self.pc].reshape(self.pc, 2)

    def coefficients(self, x):
        """
        ``(fc-1, dc, 2)`` view onto the velocity coefficients in `!x`
        """
        return x[2*self.pc:].reshape(self.fc-1, self.dc, 2)

    def empty(self):
        return np.zeros(self.size, dtype=float)

    def check(self, x):
        """
        Validate a parameter vector

        Parameters
        ----------
        x : array-like

        Returns
        -------
        np.ndarray
            `!x` as float array; no copy if it already was one.

        Raises
        ------
        ValueError
            if `!x` is not 1D or has the wrong length
        """
        x = np.asarray(x, dtype=float)
        if x.shape != (self.size,):
            raise ValueError(f"Parameter vector should have shape ({self.size},), got {x.shape}")
        return x
