import numpy as np


def initialize_parameters(X: np.ndarray, num_factor: int, dtype=np.float32, rng=None):
    """
    Starting values of the FABIA EM algorithm.

    Args:
        X (np.ndarray): size (n*l)
        num_factor (int): k
        dtype (optional): Defaults to np.float32.
        rng (int or np.random.Generator, optional): Defaults to None.

    Returns:
        L (np.ndarray): size (n*k), standard normal
        Z (np.ndarray): size (k*l), zeros
        Psi (np.ndarray): size (n), ones
        lapla (np.ndarray): size (k*l), ones
    """
    if num_factor < 1:
        raise ValueError(f"num_factor must be at least 1, got {num_factor}")

    rng = np.random.default_rng(rng)
    num_var, num_obs = X.shape

    L = np.asfortranarray(rng.standard_normal((num_var, num_factor)), dtype=dtype)
    Z = np.zeros((num_factor, num_obs), dtype=dtype, order="F")
    Psi = np.ones(num_var, dtype=dtype)
    lapla = np.ones((num_factor, num_obs), dtype=dtype, order="F")

    return L, Z, Psi, lapla
