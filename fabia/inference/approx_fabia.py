import logging
import time

import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns

from typing import Callable, NamedTuple
from tqdm import tqdm

from fabia.inference.estep import (
    allocate_workspaces,
    precompute_factor_statistics,
    reduce_statistics,
    run_estep,
)
from fabia.inference.mstep import (
    rescale_loadings,
    reset_dead_components,
    shrink_loadings,
    update_loadings,
    update_noise_variance,
)
from fabia.utils.linalg import invert_cholesky
from fabia.utils.progress import report_timings, update_ui
from fabia.utils.setup.initialize import initialize_parameters

logger = logging.getLogger(__name__)


class FabiaRun(NamedTuple):
    status: str
    iterations: int
    nresets: int
    timings: dict


def check_shapes(X, Psi, L, Z, lapla):
    """Return (k, n, l) or raise ValueError if the arrays do not agree."""
    if X.ndim != 2 or X.shape[0] == 0 or X.shape[1] == 0:
        raise ValueError(f"X must be a non-empty (n*l) matrix, got shape {X.shape}")
    num_var, num_obs = X.shape
    if L.ndim != 2 or L.shape[0] != num_var or L.shape[1] == 0:
        raise ValueError(f"L must be of size ({num_var}*k) with k > 0, got {L.shape}")
    num_factor = L.shape[1]

    expected = {
        "Psi": (Psi, (num_var,)),
        "Z": (Z, (num_factor, num_obs)),
        "lapla": (lapla, (num_factor, num_obs)),
    }
    for name, (array, shape) in expected.items():
        if array.shape != shape:
            raise ValueError(f"{name} must be of size {shape}, got {array.shape}")

    return num_factor, num_var, num_obs


def _working_array(array, dtype):
    if array.dtype == dtype:
        return array
    return np.asfortranarray(array, dtype=dtype)


def _publish(targets, working):
    for target, work in zip(targets, working):
        if work is not target:
            target[...] = work


def approx_fabia(
    X: np.ndarray,
    Psi: np.ndarray,
    L: np.ndarray,
    Z: np.ndarray,
    lapla: np.ndarray,
    cyc: int = 500,
    alpha: float = 0.01,
    eps: float = 1e-3,
    spl: float = 0.5,
    spz: float = 0.5,
    scale: bool = True,
    lap: float = 1.0,
    verbose: int = 0,
    nthreads: int = 1,
    dtype=np.float32,
    seed=None,
    callback: Callable = update_ui,
    progress: bool = False,
) -> FabiaRun:
    """
    Run the approximate FABIA variational EM algorithm in place.

    Psi, L, Z and lapla hold the starting values on entry and the estimates
    on exit. X is never modified.

    Args:
        X (np.ndarray): size (n*l), samples in columns
        Psi (np.ndarray): size (n), noise variances
        L (np.ndarray): size (n*k), loadings
        Z (np.ndarray): size (k*l), factor scores
        lapla (np.ndarray): size (k*l), variational parameters
        cyc (int): number of EM cycles. Defaults to 500.
        alpha (float): strength of the Laplace prior on L. Defaults to 0.01.
        eps (float): regularisation floor. Defaults to 1e-3.
        spl (float): extra sparseness of L. Defaults to 0.5.
        spz (float): extra sparseness of Z. Defaults to 0.5.
        scale (bool): rescale the columns of L after each cycle. Defaults to True.
        lap (float): minimal value of lapla, raised to eps. Defaults to 1.0.
        verbose (int): call `callback` every `verbose` cycles, 0 for never.
        nthreads (int): number of threads for the E-step. Defaults to 1.
        dtype: floating type of the computation. Defaults to np.float32.
        seed (int or np.random.Generator, optional): RNG for factor resets.
        callback (Callable): progress collaborator with the signature of `update_ui`.
        progress (bool): show a tqdm progress bar. Defaults to False.

    Returns:
        FabiaRun: status ("completed", "collapsed" or "out_of_memory"), number
        of completed cycles, total number of factor resets and timings.
    """
    num_factor, num_var, num_obs = check_shapes(X, Psi, L, Z, lapla)
    if cyc < 0:
        raise ValueError(f"cyc must be non-negative, got {cyc}")
    if verbose < 0:
        raise ValueError(f"verbose must be non-negative, got {verbose}")
    if nthreads < 1:
        raise ValueError(f"nthreads must be at least 1, got {nthreads}")

    dtype = np.dtype(dtype)
    timings = {"loop": 0.0, "chol": 0.0, "rest": 0.0, "total": 0.0}
    if cyc == 0:
        return FabiaRun("completed", 0, 0, timings)

    rng = np.random.default_rng(seed)
    t0 = time.perf_counter()

    try:
        X_w = np.asfortranarray(X, dtype=dtype)
        Psi_w, L_w, Z_w, lapla_w = (
            _working_array(array, dtype) for array in (Psi, L, Z, lapla)
        )
        workspaces = allocate_workspaces(num_var, num_obs, num_factor, nthreads, dtype)
        LPsi = np.zeros((num_factor, num_var), dtype=dtype, order="F")
        LPsiL = np.zeros(num_factor, dtype=dtype)
        XX = np.mean(X_w * X_w, axis=1)
    except MemoryError:
        logger.error("Out of memory")
        L[...] = 0
        Z[...] = 0
        return FabiaRun("out_of_memory", 0, 0, timings)

    lap = max(lap, eps)
    status = "completed"
    iterations = 0
    nresets = 0

    with tqdm(total=cyc, desc="FABIA EM", unit="iter", disable=not progress) as pbar:
        for iteration in range(1, cyc + 1):
            tic = time.perf_counter()
            precompute_factor_statistics(L_w, Psi_w, LPsi, LPsiL)
            for ws in workspaces:
                ws.stats.reset()
            # sum2 must be strictly positive-definite before the Cholesky
            workspaces[0].stats.reset(eps=eps)

            run_estep(X_w, Z_w, lapla_w, LPsi, LPsiL, workspaces, spz, lap)
            stats = reduce_statistics(workspaces)
            toc = time.perf_counter()
            timings["loop"] += toc - tic

            invert_cholesky(stats.sum2)
            tic = time.perf_counter()
            timings["chol"] += tic - toc

            update_loadings(L_w, stats.sum1, stats.sum2)
            shrink_loadings(L_w, Psi_w, alpha, spl)

            t = update_noise_variance(Psi_w, L_w, stats.sum1, XX, num_obs, eps)
            if t < eps:
                Psi_w[...] = eps
                lapla_w[...] = eps
                logger.warning(
                    "Last update was %f, which is smaller than %f, stopping EM", t, eps
                )
                status = "collapsed"
                timings["rest"] += time.perf_counter() - tic
                break

            if scale:
                rescale_loadings(L_w, lapla_w, spz)

            nreset = reset_dead_components(L_w, lapla_w, rng)
            if nreset:
                logger.info("iter %d: reset %d clusters", iteration, nreset)
                nresets += nreset

            iterations = iteration
            if verbose and iteration % verbose == 0 and callback is not None:
                callback(
                    iteration,
                    time.perf_counter() - t0,
                    num_factor,
                    num_var,
                    num_obs,
                    L_w,
                    Z_w,
                    Psi_w,
                    lapla_w,
                )
            timings["rest"] += time.perf_counter() - tic
            pbar.update(1)

    if status == "collapsed":
        Z_w[...] = 0
    else:
        # final E-step only, without touching lapla
        precompute_factor_statistics(L_w, Psi_w, LPsi, LPsiL)
        run_estep(X_w, Z_w, lapla_w, LPsi, LPsiL, workspaces, spz, lap, accumulate=False)

    _publish((Psi, L, Z, lapla), (Psi_w, L_w, Z_w, lapla_w))

    timings["total"] = time.perf_counter() - t0
    report_timings(timings)

    return FabiaRun(status, iterations, nresets, timings)


class ApproxFabia:
    def __init__(
        self,
        X: np.ndarray,
        num_factor: int = 5,
        alpha: float = 0.01,
        eps: float = 1e-3,
        spl: float = 0.5,
        spz: float = 0.5,
        scale: bool = True,
        lap: float = 1.0,
        nthreads: int = 1,
        num_iters: int = 500,
        dtype=np.float32,
        seed=None,
    ):
        """Initialize the approximate FABIA model.

        Args:
            X (np.ndarray): Observed Data Matrix (n x l).
            num_factor (int, optional): Number of biclusters k. Defaults to 5.
            alpha (float, optional): Laplace prior strength on L. Defaults to 0.01.
            eps (float, optional): Regularisation floor. Defaults to 1e-3.
            spl (float, optional): Extra sparseness of L. Defaults to 0.5.
            spz (float, optional): Extra sparseness of Z. Defaults to 0.5.
            scale (bool, optional): Rescale the loadings each cycle. Defaults to True.
            lap (float, optional): Minimal variational parameter. Defaults to 1.0.
            nthreads (int, optional): E-step threads. Defaults to 1.
            num_iters (int, optional): Default number of EM cycles. Defaults to 500.
            dtype (optional): Defaults to np.float32.
            seed (optional): Seed of the starting values and factor resets.
        """
        # Dtype
        self.dtype = np.dtype(dtype)

        # Data
        self.X = np.asfortranarray(X, dtype=self.dtype)

        # Shapes
        self.num_var, self.num_obs = self.X.shape
        self.num_factor = num_factor

        # Parameters
        self.rng = np.random.default_rng(seed)
        self.L, self.Z, self.Psi, self.lapla = initialize_parameters(
            self.X, num_factor, dtype=self.dtype, rng=self.rng
        )

        # Hyperparameters
        self.alpha = alpha
        self.eps = eps
        self.spl = spl
        self.spz = spz
        self.scale = scale
        self.lap = lap

        # EM settings
        self.nthreads = nthreads
        self.num_iters = num_iters
        self.run = None

        # Trajectories for tracking parameters
        self.paths = {"init": self._snapshot(self.L, self.Psi, self.lapla)}

    @staticmethod
    def _snapshot(L, Psi, lapla):
        return {"L": L.copy(), "Psi": Psi.copy(), "lapla": lapla.copy()}

    def fit(
        self,
        iterations: int = None,
        verbose: int = 0,
        store: bool = False,
        progress: bool = True,
        callback: Callable = update_ui,
    ) -> "ApproxFabia":
        """Run the EM cycles, updating L, Z, Psi and lapla.

        Args:
            iterations (int, optional): Number of EM cycles. Defaults to `num_iters`.
            verbose (int, optional): Report every `verbose` cycles. Defaults to 0.
            store (bool, optional): Keep a snapshot of L, Psi and lapla every
                `verbose` cycles (every cycle if verbose is 0). Defaults to False.
            progress (bool, optional): Show a progress bar. Defaults to True.
            callback (Callable, optional): Progress collaborator. Defaults to `update_ui`.
        """
        if iterations:
            self.num_iters = iterations

        report = callback if verbose else None
        if store:
            verbose = verbose or 1

            def record(iteration, elapsed, k, n, l, L, Z, Psi, lapla):
                self.paths[iteration] = self._snapshot(L, Psi, lapla)
                if report is not None:
                    report(iteration, elapsed, k, n, l, L, Z, Psi, lapla)

            callback = record

        self.run = approx_fabia(
            self.X,
            self.Psi,
            self.L,
            self.Z,
            self.lapla,
            cyc=self.num_iters,
            alpha=self.alpha,
            eps=self.eps,
            spl=self.spl,
            spz=self.spz,
            scale=self.scale,
            lap=self.lap,
            verbose=verbose,
            nthreads=self.nthreads,
            dtype=self.dtype,
            seed=self.rng,
            callback=callback,
            progress=progress,
        )
        return self

    def plot_heatmaps(self, str_param: str = "L", abs_value: bool = True, cmap: str = "viridis"):
        """Plot heatmaps of stored parameter trajectories."""
        if str_param not in self.paths["init"]:
            raise KeyError(f"{str_param} not found in parameter paths.")

        iterations = list(self.paths)[-10:]
        n_cols = 5
        n_rows = -(-len(iterations) // n_cols)

        fig, axes = plt.subplots(n_rows, n_cols, figsize=(5 * n_cols, 4 * n_rows))
        axes = np.atleast_1d(axes).flatten()

        for key, ax in zip(iterations, axes):
            matrix = self.paths[key][str_param]
            if abs_value:
                matrix = np.abs(matrix)
            sns.heatmap(np.atleast_2d(matrix), cmap=cmap, cbar=False, ax=ax)
            ax.set_title("Init" if key == "init" else f"Iter {key}")

        for ax in axes[len(iterations) :]:
            ax.axis("off")

        plt.tight_layout()
        return fig

    def get_path(
        self,
        param: str = "L",
        coeff: tuple = (0, 0),
        abs_value: bool = True,
    ) -> np.ndarray:
        if param not in self.paths["init"]:
            raise KeyError(f"{param} not found in parameter paths.")

        path = [self.paths[key][param][coeff] for key in self.paths]
        path = np.array(path)

        return np.abs(path) if abs_value else path
