"""
Spatial Gaussian process prior over particle velocities

The motion of all particles between two frames is modelled as a draw from a
Gaussian process over the particles' reference positions: particles that are
close to each other should move similarly. The covariance of this process is

    .. code-block:: text

        A_ij = σ_vel² * κ(|r_i - r_j|²)

where ``σ_vel`` sets the overall velocity scale and ``κ`` decays over a
correlation length ``σ_div``. We support a Gaussian (squared exponential) and
an exponential kernel.

Instead of working with ``A`` directly, the fit expresses velocities in the
eigenbasis of ``A``, scaled by the square root of the eigenvalues. In this
basis the GP prior becomes an isotropic standard normal, and truncating to the
leading modes gives a low-rank approximation of the velocity field.

See also
--------
kernel_matrix, eigenbasis, GpMotionFit <gpmotion.fit.GpMotionFit>
"""
import numpy as np
from scipy import linalg

def gaussian_kernel(dd, sig_div):
    """
    Squared exponential kernel ``exp(-dd/(2σ²))``

    Parameters
    ----------
    dd : np.ndarray
        squared distances
    sig_div : float
        correlation length

    Returns
    -------
    np.ndarray
    """
    with np.errstate(under='ignore'):
        return np.exp(-0.5*dd/sig_div**2)

def exponential_kernel(dd, sig_div):
    """
    Exponential kernel ``exp(-sqrt(dd)/σ)``

    Parameters
    ----------
    dd : np.ndarray
        squared distances
    sig_div : float
        correlation length

    Returns
    -------
    np.ndarray
    """
    with np.errstate(under='ignore'):
        return np.exp(-np.sqrt(dd/sig_div**2))

def kernel_matrix(positions, sig_vel, sig_div, exp_kernel=False):
    """
    Covariance of particle velocities under the spatial prior

    Parameters
    ----------
    positions : (pc, 2) array-like
        reference positions of the particles
    sig_vel : float >= 0
        velocity scale
    sig_div : float > 0
        correlation length
    exp_kernel : bool, optional
        use the exponential instead of the Gaussian kernel

    Returns
    -------
    (pc, pc) np.ndarray
        the (symmetric) kernel matrix
    """
    positions = np.asarray(positions, dtype=float)
    if len(positions.shape) != 2 or positions.shape[1] != 2:
        raise ValueError(f"positions should have shape (pc, 2), got {positions.shape}")
    if len(positions) == 0:
        raise ValueError("Need at least one particle")
    if not np.all(np.isfinite(positions)):
        raise ValueError("Particle positions should be finite")
    if sig_vel < 0:
        raise ValueError(f"Invalid velocity scale: sig_vel = {sig_vel}")
    if sig_div <= 0:
        raise ValueError(f"Invalid correlation length: sig_div = {sig_div}")

    diff = positions[:, None, :] - positions[None, :, :]
    dd = np.sum(diff**2, axis=-1)

    kernel = exponential_kernel if exp_kernel else gaussian_kernel
    A = sig_vel**2 * kernel(dd, sig_div)

    # dd is symmetric up to rounding; make sure A is exactly so
    return 0.5*(A + A.T)

def eigenbasis(A, max_dims):
    """
    Truncated, scaled eigenbasis of a kernel matrix

    Parameters
    ----------
    A : (pc, pc) np.ndarray
        symmetric positive semi-definite matrix
    max_dims : int >= 1
        maximum number of modes to keep

    Returns
    -------
    basis : (pc, dc) np.ndarray
        column ``d`` is the ``d``-th eigenvector, scaled by the square root of
        its eigenvalue
    eigenvals : (dc,) np.ndarray
        the eigenvalues, in non-increasing order

    Notes
    -----
    ``dc = min(max_dims, pc)``. Eigenvalues that come out slightly negative
    due to rounding are clipped to zero.
    """
    A = np.asarray(A, dtype=float)
    if len(A.shape) != 2 or A.shape[0] != A.shape[1] or len(A) == 0:
        raise ValueError(f"Need a non-empty square matrix, got shape {A.shape}")
    if int(max_dims) != max_dims or max_dims < 1:
        raise ValueError(f"max_dims should be an integer >= 1, got {max_dims}")

    dc = min(int(max_dims), len(A))

    # eigh returns ascending eigenvalues
    S, V = linalg.eigh(A)
    S = np.maximum(S[::-1][:dc], 0.)
    V = V[:, ::-1][:, :dc]

    return np.sqrt(S)[None, :]*V, S
