"""
Motion fitting with Gaussian process priors

Given a stack of cross-correlation maps (one per particle and frame, scoring
how well the particle matches the frame at a given offset), we want to find
smooth trajectories for all particles that maximize the total correlation.
Individual maps are noisy, so we regularize in two ways:

 + spatially: the velocity field at each frame transition is a draw from a
   Gaussian process over the particle positions. Nearby particles should thus
   move similarly. The strength and range of this coupling are set by
   ``sig_vel`` (velocity scale) and ``sig_div`` (correlation length).
 + temporally: changes in velocity between consecutive transitions are
   penalized, with scale ``sig_acc``.

Velocities are expressed in the eigenbasis of the GP kernel, scaled such that
the GP prior becomes a simple sum of squares of the coefficients. Truncating
this basis to the leading modes reduces the number of parameters from
``2*pc*(fc-1)`` to ``2*dc*(fc-1)``, for ``dc`` retained modes.

The central object is `GpMotionFit`, which provides the energy `!f` and its
analytic gradient `!grad` over a flat parameter vector, as required by
gradient-based optimizers like L-BFGS. `GpMotionFit.params2pos` and
`GpMotionFit.pos2params` convert between parameters and trajectories.

Example
-------
>>> fit = gpmotion.GpMotionFit(cc_maps,                # (pc, fc, h, w)
...                            sig_vel=1., sig_div=50., sig_acc=3.,
...                            max_dims=20,
...                            positions=particle_positions,  # (pc, 2)
...                            per_frame_offsets=offsets,      # (fc, 2)
...                            threads=4,
...                            )
... res = fit.run()
... tracks = res['positions']                          # (pc, fc, 2)

See also
--------
GpMotionFit, CorrelationField
"""
from . import kernel
from . import layout
from .correlation import CorrelationField, correlation_stack
from .layout      import ParamLayout
from .fit         import GpMotionFit, DegenerateBasisError
