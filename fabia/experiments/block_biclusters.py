import logging

import numpy as np
import matplotlib.pyplot as plt

from fabia.inference.approx_fabia import ApproxFabia
from fabia.simulations.bicluster_dgp import BiclusterDGP
from fabia.utils.setup.create_true_loadings import (
    create_true_factors,
    create_true_loadings,
)

logging.basicConfig(level=logging.INFO)

# Force Random Seed
seed = 42

# Bicluster Dimensions
num_variables = 500
num_obs = 100
num_factors = 4

# True Loadings Settings
block_size_variables = 100
block_size_obs = 20
overlap = 0
mean = 3
std = 1

# Noise
noise_std = 1.0

# Hyperparameters
alpha = 0.05
eps = 1e-3
spl = 0.5
spz = 0.5
num_iters = 300
nthreads = 4


# True Parameters
LTrue = create_true_loadings(
    num_factors=num_factors,
    num_variables=num_variables,
    block_size=block_size_variables,
    overlap=overlap,
    random=True,
    mean=mean,
    std=std,
    rng=seed,
)

ZTrue = create_true_factors(
    num_factors=num_factors,
    num_obs=num_obs,
    block_size=block_size_obs,
    overlap=overlap,
    random=True,
    mean=mean,
    std=std,
    rng=seed + 1,
)

# Simulated Value for X
DataGeneratingProcess = BiclusterDGP(L=LTrue, Z=ZTrue, noise_std=noise_std)

X_sim = DataGeneratingProcess.simulate(rng=seed + 2)

if __name__ == "__main__":

    model = ApproxFabia(
        X_sim,
        num_factor=num_factors,
        alpha=alpha,
        eps=eps,
        spl=spl,
        spz=spz,
        nthreads=nthreads,
        seed=seed,
    )
    model.fit(iterations=num_iters, verbose=50, store=True)

    print(f"Status: {model.run.status}, resets: {model.run.nresets}")
    print(f"Fraction of zero loadings: {np.mean(model.L == 0):.3f}")

    model.plot_heatmaps(str_param="L")
    plt.show()
