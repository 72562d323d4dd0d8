import logging

import numpy as np

from tqdm import tqdm

logger = logging.getLogger(__name__)


def update_ui(iteration, elapsed, k, n, l, L, Z, Psi, lapla):
    """
    Print a one-line status of the EM run.

    Called every `verbose` iterations. The arrays are borrowed from the
    running engine and must not be modified or kept.

    Args:
        iteration (int): EM iteration just completed
        elapsed (float): seconds since the start of the run
        k (int): number of factors
        n (int): number of features
        l (int): number of samples
        L (np.ndarray): size (n*k)
        Z (np.ndarray): size (k*l)
        Psi (np.ndarray): size (n)
        lapla (np.ndarray): size (k*l)
    """
    tqdm.write(
        f"iter {iteration:5d} | {elapsed:8.2f}s | "
        f"mean|L| {np.abs(L).mean():.4f} | mean Psi {Psi.mean():.4f} | "
        f"zero loadings {np.mean(L == 0):.3f} | mean lapla {lapla.mean():.4f}"
    )


def report_timings(timings: dict):
    """Log how the run time splits between the E-step loop, Cholesky and the rest."""
    total = timings["total"] or 1.0
    logger.info(
        "loop: %5.2f (%.3f) | Chol: %5.2f (%.3f) | Rest: %5.2f (%.3f) | Total: %5.2f",
        timings["loop"],
        timings["loop"] / total,
        timings["chol"],
        timings["chol"] / total,
        timings["rest"],
        timings["rest"] / total,
        timings["total"],
    )
