import numpy as np

from fabia.inference.estep import MACHINE_EPS


def update_loadings(L, sum1, sum2_inv):
    """
    Loadings that maximise the expected complete-data likelihood.

    L = sum1 sum2^-1

    Args:
        L (np.ndarray): size (G*K), overwritten
        sum1 (np.ndarray): size (G*K)
        sum2_inv (np.ndarray): size (K*K), symmetric
    """
    L[...] = sum1 @ sum2_inv
    return L


def shrink_loadings(L, Psi, alpha: float, spl: float, non_negative: bool = False):
    """
    Soft-threshold every loading towards zero (approximate Laplace log-prior step).

    L_jk <- L_jk - sign(L_jk) * t_jk     if |L_jk| > t_jk
            0                            otherwise
    with t_jk = |Psi_j * alpha * (eps + |L_jk|)^-spl|.

    Args:
        L (np.ndarray): size (G*K), shrunk in place
        Psi (np.ndarray): size (G)
        alpha (float): strength of the Laplace prior
        spl (float): sparseness exponent on L
        non_negative (bool, optional): zero every non-positive loading. Defaults to False.

    Returns:
        np.ndarray: L
    """
    abs_L = np.abs(L)
    threshold = np.abs(Psi[:, np.newaxis] * alpha * (MACHINE_EPS + abs_L) ** -spl)
    shrunk = np.where(abs_L > threshold, L - np.sign(L) * threshold, 0)
    if non_negative:
        shrunk[L <= 0] = 0
    L[...] = shrunk
    return L


def update_noise_variance(Psi, L, sum1, XX, num_obs: int, eps: float) -> float:
    """
    Update the diagonal noise variances from the residual trace.

    Psi_j = max(XX_j - (L sum1^T)_jj / n, eps)

    Args:
        Psi (np.ndarray): size (G), overwritten
        L (np.ndarray): size (G*K)
        sum1 (np.ndarray): size (G*K)
        XX (np.ndarray): size (G), per-feature mean square of the data
        num_obs (int): n
        eps (float): floor of Psi

    Returns:
        float: max_j |(L sum1^T)_jj|, the size of the explained part. The model
        has collapsed when it falls below eps.
    """
    explained = np.einsum("gk,gk->g", L, sum1)
    Psi[...] = np.maximum(XX - explained / num_obs, eps)
    return float(np.max(np.abs(explained), initial=0.0))


def rescale_loadings(L, lapla, spz: float):
    """Scale each column of L to unit mean square, compensating in the rows of lapla."""
    num_var = L.shape[0]
    s = 1.0 / (np.sqrt(np.sum(L * L, axis=0) / num_var) + MACHINE_EPS)
    L *= s.astype(L.dtype)
    lapla *= ((s * s) ** -spz).astype(lapla.dtype)[:, np.newaxis]
    return s


def reset_dead_components(L, lapla, rng) -> int:
    """
    Re-initialise every factor whose loadings are all exactly zero.

    The column of L is redrawn from a standard normal, the matching row of
    lapla is set to one.

    Returns:
        int: number of factors reset
    """
    dead = np.flatnonzero(~np.any(L != 0, axis=0))
    for k in dead:
        L[:, k] = rng.standard_normal(L.shape[0])
        lapla[k, :] = 1
    return len(dead)
