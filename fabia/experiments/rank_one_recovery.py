import logging

import numpy as np

from fabia.inference.approx_fabia import approx_fabia

logging.basicConfig(level=logging.INFO)

# Rank one data X = u v^T
u = np.array([1, 2, 3, 4], dtype=np.float32)
v = np.array([1, -1, 1, -1, 1, -1, 1, -1], dtype=np.float32)

# Dimensions
num_variables = u.size
num_obs = v.size
num_factors = 1

# Hyperparameters
alpha = 0.01
eps = 1e-3
spl = 0.5
spz = 0.5
scale = True
cyc = 50


if __name__ == "__main__":

    X = np.asfortranarray(np.outer(u, v))

    # Initial Parameters
    Psi = np.full(num_variables, 0.1, dtype=np.float32)
    L = np.ones((num_variables, num_factors), dtype=np.float32, order="F")
    Z = np.zeros((num_factors, num_obs), dtype=np.float32, order="F")
    lapla = np.ones((num_factors, num_obs), dtype=np.float32, order="F")

    run = approx_fabia(
        X,
        Psi,
        L,
        Z,
        lapla,
        cyc=cyc,
        alpha=alpha,
        eps=eps,
        spl=spl,
        spz=spz,
        scale=scale,
        verbose=10,
        seed=42,
    )

    cosine = abs(L[:, 0] @ u) / (np.linalg.norm(L[:, 0]) * np.linalg.norm(u))
    angle = np.degrees(np.arccos(np.clip(cosine, -1, 1)))

    print(f"Status: {run.status} after {run.iterations} cycles")
    print(f"Angle between L and u: {angle:.3f} degrees")
    print(f"Z: {Z[0]}")
