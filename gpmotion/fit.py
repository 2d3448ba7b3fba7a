"""
Implementation of the `GpMotionFit` energy

See also
--------
gpmotion, GpMotionFit
"""
from concurrent.futures import ThreadPoolExecutor

from tqdm.auto import tqdm

import numpy as np
from scipy import optimize

from noctiluca import Trajectory, TaggedSet

from .kernel import kernel_matrix, eigenbasis
from .correlation import correlation_stack
from .layout import ParamLayout

class DegenerateBasisError(RuntimeError):
    pass

def _striped_map(fun, n, threads):
    # Apply fun to `threads` interleaved chunks of range(n); no pool for a
    # single chunk
    chunks = [range(i, n, threads) for i in range(min(threads, n))]
    if len(chunks) <= 1:
        return [fun(chunk) for chunk in chunks]

    with ThreadPoolExecutor(max_workers=len(chunks)) as executor:
        return list(executor.map(fun, chunks))

def _check_out(out, shape):
    # validate (or allocate) a caller-provided output buffer
    if out is None:
        return np.zeros(shape, dtype=float)
    if not isinstance(out, np.ndarray) or out.shape != shape:
        raise ValueError(f"Output buffer should be an array of shape {shape}")
    return out

class GpMotionFit:
    """
    Trajectory fit to correlation maps with a GP motion prior

    The fit parametrizes the trajectories of ``pc`` particles over ``fc``
    frames by the particles' positions in the first frame and, for each
    transition between frames, the coefficients of the velocity field in the
    scaled eigenbasis of the spatial GP kernel (see `gpmotion.kernel`). The
    energy to minimize is

    .. code-block:: text

        E(x) = - Σ_pf CC_pf(pos_pf + offset_f)        (data)
               + Σ_fd |c_fd|²                         (divergence)
               + Σ_fd λ_d |c_{f+1,d} - c_fd|² / σ_acc²  (acceleration)

    where ``CC_pf`` is the (interpolated) correlation map of particle ``p`` in
    frame ``f``. Since the basis carries a factor ``sqrt(λ_d)``, the
    divergence term is exactly the negative log of the GP prior on the
    velocities.

    Parameters
    ----------
    correlation : nested list (pc × fc) or (pc, fc, h, w) array
        the correlation maps; entries can be 2D arrays or
        `CorrelationField <gpmotion.correlation.CorrelationField>`.
    sig_vel : float >= 0
        velocity scale of the prior, in pixels per frame
    sig_div : float > 0
        spatial correlation length of the velocity field, in pixels
    sig_acc : float >= 0
        acceleration scale; set to 0 to switch off the acceleration term
    max_dims : int >= 1
        maximum number of basis modes to keep
    positions : (pc, 2) array-like
        reference positions of the particles
    per_frame_offsets : (fc, 2) array-like
        shift added to all lookups into the correlation maps of a given frame
    threads : int, optional
        number of threads to use for the per-particle lookups
    exp_kernel : bool, optional
        use an exponential instead of a Gaussian spatial kernel
    wrap : bool, optional
        whether correlation maps given as arrays are periodic; see
        `CorrelationField <gpmotion.correlation.CorrelationField>`
    verbosity : {0, 1, 2, 3}, optional
        see Attributes

    Attributes
    ----------
    pc, fc, dc : int
        number of particles, frames, and retained basis modes
    basis : (pc, dc) np.ndarray
        scaled eigenbasis; read-only
    eigenvals : (dc,) np.ndarray
        associated eigenvalues, non-increasing; read-only
    layout : ParamLayout
        indexing into the parameter vector
    threads : int
    eigenval_eps : float
        relative threshold (w.r.t. the largest eigenvalue) below which modes
        count as degenerate in `pos2params`.
    verbosity : {0, 1, 2, 3}
        controls output. 0: no output; 1: error messages only; 2:
        informational; 3: debugging

    Notes
    -----
    `f` and `grad` do not modify the fit and can be called concurrently.
    Only the lookups into the correlation maps are parallelized; the
    regularization terms are cheap.
    """
    def __init__(self, correlation,
                 sig_vel, sig_div, sig_acc,
                 max_dims,
                 positions,
                 per_frame_offsets,
                 threads=1,
                 exp_kernel=False,
                 wrap=True,
                 verbosity=1,
                 ):
        self.verbosity = verbosity
        self.correlation = correlation_stack(correlation, wrap=wrap)
        self.pc = len(self.correlation)
        self.fc = len(self.correlation[0])

        self.positions = np.array(positions, dtype=float)
        if self.positions.shape != (self.pc, 2):
            raise ValueError(f"positions should have shape ({self.pc}, 2), got {self.positions.shape}")
        self.per_frame_offsets = np.array(per_frame_offsets, dtype=float)
        if self.per_frame_offsets.shape != (self.fc, 2):
            raise ValueError(f"per_frame_offsets should have shape ({self.fc}, 2), got {self.per_frame_offsets.shape}")

        if sig_acc < 0:
            raise ValueError(f"Invalid acceleration scale: sig_acc = {sig_acc}")
        if threads < 1:
            raise ValueError(f"Need at least one thread, got {threads}")

        self.sig_vel = sig_vel
        self.sig_div = sig_div
        self.sig_acc = sig_acc
        self.exp_kernel = exp_kernel
        self.threads = threads
        self.eigenval_eps = 1e-10

        A = kernel_matrix(self.positions, sig_vel, sig_div, exp_kernel=exp_kernel)
        self.basis, self.eigenvals = eigenbasis(A, max_dims)
        self.basis.flags.writeable = False
        self.eigenvals.flags.writeable = False
        self.dc = len(self.eigenvals)

        self.layout = ParamLayout(self.pc, self.fc, self.dc)

        trace = np.trace(A)
        if trace > 0:
            self.vprint(2, f"Keeping {self.dc} of {self.pc} modes, capturing {np.sum(self.eigenvals)/trace:.1%} of the prior variance")
        else:
            self.vprint(1, "Kernel matrix vanishes (sig_vel = 0?); the velocity basis is degenerate")

    def vprint(self, v, *args, **kwargs):
        """
        Prints only if ``self.verbosity >= v``.
        """
        if self.verbosity >= v: # pragma: no cover
            print("[gpmotion.GpMotionFit]", (v-1)*'--', *args, **kwargs)

    ### Parameter conversion ###

    def params2pos(self, x, out=None):
        """
        Reconstruct trajectories from a parameter vector

        Parameters
        ----------
        x : (n,) array-like
            the parameter vector; see `gpmotion.layout`
        out : (pc, fc, 2) np.ndarray, optional
            array to write the result to. Will be completely overwritten.

        Returns
        -------
        (pc, fc, 2) np.ndarray
            position of each particle in each frame
        """
        x = self.layout.check(x)
        out = _check_out(out, (self.pc, self.fc, 2))

        coeffs = self.layout.coefficients(x)

        # vel[p, f] = Σ_d basis[p, d] * coeffs[f, d]
        vel = np.einsum('pd,fdk->pfk', self.basis, coeffs)

        out[:, 0, :] = self.layout.positions(x)
        out[:, 1:, :] = out[:, :1, :] + np.cumsum(vel, axis=1)
        return out

    def pos2params(self, pos, out=None):
        """
        Project trajectories onto the parameter space

        Parameters
        ----------
        pos : (pc, fc, 2) array-like
            the trajectories
        out : (n,) np.ndarray, optional
            array to write the parameters to. Will be completely overwritten.

        Returns
        -------
        (n,) np.ndarray
            the parameter vector

        Raises
        ------
        DegenerateBasisError
            if any of the retained modes has a (numerically) vanishing
            eigenvalue

        Notes
        -----
        Frame-to-frame displacements are projected onto the retained basis
        modes, so components outside the span of the basis are lost. For
        trajectories produced by `params2pos` this is an exact inverse.
        """
        pos = np.asarray(pos, dtype=float)
        if pos.shape != (self.pc, self.fc, 2):
            raise ValueError(f"Trajectories should have shape {(self.pc, self.fc, 2)}, got {pos.shape}")
        out = _check_out(out, (self.layout.size,))

        lmax = self.eigenvals[0]
        degenerate = self.eigenvals <= self.eigenval_eps*max(lmax, 0)
        if np.any(degenerate):
            raise DegenerateBasisError(f"Basis modes {np.nonzero(degenerate)[0].tolist()} have vanishing eigenvalues (largest: {lmax}); reduce max_dims")

        self.layout.positions(out)[:] = pos[:, 0, :]

        # basis already carries a factor sqrt(λ), so dividing by λ gives the
        # coefficient w.r.t. the orthonormal eigenvectors
        steps = np.diff(pos, axis=1)
        coeffs = np.einsum('pd,pfk->fdk', self.basis, steps) / self.eigenvals[None, :, None]
        self.layout.coefficients(out)[:] = coeffs
        return out

    def initial_params(self, pos=None):
        """
        Starting point for the optimization

        Parameters
        ----------
        pos : (pc, fc, 2) array-like, optional
            initial guess for the trajectories. If omitted, start with all
            particles resting at zero offset.

        Returns
        -------
        (n,) np.ndarray
        """
        if pos is None:
            return self.layout.empty()
        return self.pos2params(pos)

    ### Energy ###

    def _data_energy(self, pos, particles):
        e = 0.
        for p in particles:
            for f in range(self.fc):
                r = pos[p, f] + self.per_frame_offsets[f]
                e -= self.correlation[p][f].value(r[0], r[1])
        return e

    def _energy_terms(self, x, pos):
        coeffs = self.layout.coefficients(x)

        e_data = np.sum(_striped_map(lambda particles: self._data_energy(pos, particles),
                                     self.pc, self.threads))
        e_div = np.sum(coeffs**2)

        e_acc = 0.
        if self.sig_acc > 0:
            dcoeffs = np.diff(coeffs, axis=0)
            e_acc = np.sum(self.eigenvals[None, :, None]*dcoeffs**2) / self.sig_acc**2

        return {'data' : float(e_data),
                'divergence' : float(e_div),
                'acceleration' : float(e_acc),
                }

    def energy_terms(self, x):
        """
        Individual contributions to the energy

        Parameters
        ----------
        x : (n,) array-like
            the parameter vector

        Returns
        -------
        dict
            with entries ``'data'``, ``'divergence'``, ``'acceleration'``. The
            latter is zero if ``sig_acc == 0``.
        """
        x = self.layout.check(x)
        return self._energy_terms(x, self.params2pos(x))

    def f(self, x):
        """
        Evaluate the energy

        Parameters
        ----------
        x : (n,) array-like
            the parameter vector

        Returns
        -------
        float

        See also
        --------
        energy_terms, grad
        """
        terms = self.energy_terms(x)
        return terms['data'] + terms['divergence'] + terms['acceleration']

    ### Gradient ###

    def _data_gradient(self, pos, particles, out):
        for p in particles:
            for f in range(self.fc):
                r = pos[p, f] + self.per_frame_offsets[f]
                out[p, f] = -self.correlation[p][f].gradient(r[0], r[1])

    def _grad(self, x, pos, out):
        coeffs = self.layout.coefficients(x)

        # derivative of the data term w.r.t. each particle position
        g = np.empty((self.pc, self.fc, 2), dtype=float)
        _striped_map(lambda particles: self._data_gradient(pos, particles, g),
                     self.pc, self.threads)

        # all positions depend on the first one
        self.layout.positions(out)[:] = np.sum(g, axis=1)

        # coefficients of transition f move all frames after f; accumulate
        # backwards
        gc = self.layout.coefficients(out)
        g_suffix = np.zeros((self.pc, 2), dtype=float)
        for f in range(self.fc-2, -1, -1):
            g_suffix += g[:, f+1]
            gc[f] = self.basis.T @ g_suffix

        gc += 2*coeffs

        if self.sig_acc > 0:
            dcoeffs = np.diff(coeffs, axis=0)
            g_acc = 2*self.eigenvals[None, :, None]*dcoeffs / self.sig_acc**2
            gc[:-1] -= g_acc
            gc[1:]  += g_acc

        return out

    def grad(self, x, out=None):
        """
        Evaluate the gradient of the energy

        Parameters
        ----------
        x : (n,) array-like
            the parameter vector
        out : (n,) np.ndarray, optional
            buffer to write the gradient to. Will be completely overwritten.

        Returns
        -------
        (n,) np.ndarray
            the gradient of `f` at `!x`
        """
        x = self.layout.check(x)
        out = _check_out(out, (self.layout.size,))
        return self._grad(x, self.params2pos(x), out)

    def fun_and_grad(self, x):
        """
        Energy and gradient in one go

        Use this with ``scipy.optimize.minimize(..., jac=True)``; it
        reconstructs the trajectories only once.

        Parameters
        ----------
        x : (n,) array-like

        Returns
        -------
        float
        (n,) np.ndarray
        """
        x = self.layout.check(x)
        pos = self.params2pos(x)
        terms = self._energy_terms(x, pos)
        e = terms['data'] + terms['divergence'] + terms['acceleration']
        return e, self._grad(x, pos, self.layout.empty())

    ### Optimization & output ###

    def run(self, x0=None,
            method='L-BFGS-B',
            options=None,
            show_progress=False,
            full_output=False,
            ):
        """
        Minimize the energy with ``scipy.optimize.minimize``

        Parameters
        ----------
        x0 : (n,) array-like, optional
            initial point; defaults to `initial_params()`
        method : str, optional
            passed to ``scipy.optimize.minimize``. Should be a method that uses
            gradients.
        options : dict, optional
            passed to ``scipy.optimize.minimize``
        show_progress : bool, optional
            display a `!tqdm` progress bar while fitting
        full_output : bool, optional
            also return the ``OptimizeResult``

        Returns
        -------
        dict
            with fields ``'params'`` (the optimal parameter vector),
            ``'positions'`` (the associated trajectories, as from
            `params2pos`) and ``'energy'``.
        scipy.optimize.OptimizeResult
            if ``full_output == True``

        Raises
        ------
        RuntimeError
            if the optimizer reports failure
        """
        if x0 is None:
            x0 = self.initial_params()
        x0 = self.layout.check(x0)

        bar = tqdm(disable = not show_progress, desc='fit iterations')
        def callback(xk):
            bar.update()

        try:
            fitres = optimize.minimize(self.fun_and_grad, x0,
                                       jac=True,
                                       method=method,
                                       options=options,
                                       callback=callback,
                                       )
        finally:
            bar.close()

        if not fitres.success:
            self.vprint(1, f"Optimization ({method}) failed. Here's the result:")
            self.vprint(1, '\n', fitres)
            raise RuntimeError(f"Optimization failed: {fitres.message}")

        res = {'params' : fitres.x,
               'positions' : self.params2pos(fitres.x),
               'energy' : float(fitres.fun),
              }
        self.vprint(3, f"Converged after {fitres.nit} iterations, energy = {res['energy']:.6g}")

        if full_output:
            return res, fitres
        else:
            return res

    def trajectories(self, x, absolute=True):
        """
        Fitted tracks as a data set

        Parameters
        ----------
        x : (n,) array-like
            the parameter vector
        absolute : bool, optional
            add each particle's reference position to its track. Otherwise
            the tracks are the fitted offsets.

        Returns
        -------
        noctiluca.TaggedSet of noctiluca.Trajectory
            one two-dimensional trajectory per particle, in the order of the
            particles. ``traj.meta['particle']`` records the particle index.
        """
        pos = self.params2pos(x)
        if absolute:
            pos += self.positions[:, None, :]

        data = TaggedSet((Trajectory(track) for track in pos), hasTags=False)
        for p, traj in enumerate(data):
            traj.meta['particle'] = p
        return data
