import numpy as np

from joblib import Parallel, delayed


MACHINE_EPS = 1e-7


class SufficientStatistics:
    """Additive accumulator for the two statistics the M-step needs.

    sum1 (G*K) = sum_j x_j z_j^T
    sum2 (K*K) = sum_j (z_j z_j^T + diag(iLPsiL_j))

    Accumulators form a monoid under `+=` with the all-zero accumulator as
    identity, so per-block statistics can be reduced in any grouping.
    """

    def __init__(self, num_var: int, num_factor: int, dtype=np.float32):
        self.sum1 = np.zeros((num_var, num_factor), dtype=dtype, order="F")
        self.sum2 = np.zeros((num_factor, num_factor), dtype=dtype, order="F")

    def reset(self, eps: float = 0.0):
        """Return to the identity, optionally with `eps` on the diagonal of sum2."""
        self.sum1.fill(0)
        self.sum2.fill(0)
        if eps:
            self.sum2[np.diag_indices_from(self.sum2)] = eps

    def __iadd__(self, other: "SufficientStatistics") -> "SufficientStatistics":
        self.sum1 += other.sum1
        self.sum2 += other.sum2
        return self


class EStepWorkspace:
    """Scratch owned by one task of the E-step: a contiguous block of samples."""

    def __init__(self, start: int, stop: int, num_var: int, num_factor: int, dtype=np.float32):
        self.samples = slice(start, stop)
        self.iLPsiL = np.zeros((num_factor, stop - start), dtype=dtype, order="F")
        self.stats = SufficientStatistics(num_var, num_factor, dtype=dtype)


def allocate_workspaces(num_var, num_obs, num_factor, nthreads, dtype=np.float32):
    """Split the samples into at most `nthreads` contiguous blocks, one workspace each."""
    bounds = np.linspace(0, num_obs, min(nthreads, num_obs) + 1).astype(int)
    return [
        EStepWorkspace(start, stop, num_var, num_factor, dtype=dtype)
        for start, stop in zip(bounds[:-1], bounds[1:])
    ]


def precompute_factor_statistics(L, Psi, LPsi, LPsiL):
    """
    Refresh the per-factor quantities shared by every sample of the E-step.

    Args:
        L (np.ndarray): size (G*K)
        Psi (np.ndarray): size (G)
        LPsi (np.ndarray): size (K*G), overwritten with (diag(1/Psi) L)^T
        LPsiL (np.ndarray): size (K), overwritten with diag(L^T diag(1/Psi) L)
    """
    LPsi[...] = (L / Psi[:, np.newaxis]).T
    LPsiL[...] = np.einsum("gk,kg->k", L, LPsi)


def approx_estimate_z(
    X, Z, lapla, LPsi, LPsiL, iLPsiL, stats=None, spz: float = 0.5, lap: float = 1.0
):
    """
    Approximate E(z|x) for a block of samples, one column per sample.

    The posterior precision L^T Psi^-1 L + diag(lapla_j) is replaced by its
    diagonal, so its inverse is the elementwise reciprocal iLPsiL_j and
    z_j = diag(iLPsiL_j) LPsi x_j.

    When `stats` is given, the block's contribution to the sufficient
    statistics is added to it and the variational parameters are updated
    from the posterior second moment.

    Args:
        X (np.ndarray): size (G*m), data columns of the block
        Z (np.ndarray): size (K*m), overwritten with the posterior means
        lapla (np.ndarray): size (K*m), variational parameters of the block
        LPsi (np.ndarray): size (K*G)
        LPsiL (np.ndarray): size (K)
        iLPsiL (np.ndarray): size (K*m), scratch
        stats (SufficientStatistics, optional): accumulator. Defaults to None.
        spz (float): sparseness exponent on z
        lap (float): floor of the variational parameters

    Returns:
        np.ndarray: Z
    """
    np.add(lapla, LPsiL[:, np.newaxis], out=iLPsiL)
    iLPsiL += MACHINE_EPS
    np.reciprocal(iLPsiL, out=iLPsiL)

    Z[...] = iLPsiL * (LPsi @ X)

    if stats is None:
        return Z

    stats.sum1 += X @ Z.T
    stats.sum2 += Z @ Z.T
    stats.sum2[np.diag_indices_from(stats.sum2)] += iLPsiL.sum(axis=1)

    # posterior second moment E(z_i^2 | x)
    iLPsiL += Z * Z
    lapla[...] = np.maximum((MACHINE_EPS + iLPsiL) ** -spz, lap)

    return Z


def run_estep(X, Z, lapla, LPsi, LPsiL, workspaces, spz, lap, accumulate=True):
    """Apply the E-step kernel to every block of samples, one task per workspace."""

    def process_block(ws):
        block = ws.samples
        approx_estimate_z(
            X[:, block],
            Z[:, block],
            lapla[:, block],
            LPsi,
            LPsiL,
            ws.iLPsiL,
            stats=ws.stats if accumulate else None,
            spz=spz,
            lap=lap,
        )

    if len(workspaces) == 1:
        process_block(workspaces[0])
        return

    # Blocks touch disjoint columns of Z and lapla and their own scratch
    Parallel(n_jobs=len(workspaces), prefer="threads")(
        delayed(process_block)(ws) for ws in workspaces
    )


def reduce_statistics(workspaces) -> SufficientStatistics:
    """Sum the statistics of every workspace into the first one, in block order."""
    total = workspaces[0].stats
    for ws in workspaces[1:]:
        total += ws.stats
    return total
