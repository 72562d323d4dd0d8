import numpy as np


def _block_matrix(num_rows, num_factors, block_size, overlap, random, mean, std, rng):
    B = np.zeros((num_rows, num_factors))
    block_gap = block_size - overlap
    if block_gap <= 0:
        raise ValueError("overlap must be smaller than block_size")

    start_rows = 0
    col = 0

    while start_rows + block_size <= num_rows and col < num_factors:
        end_row = start_rows + block_size
        if random:
            B[start_rows:end_row, col] = rng.normal(
                loc=mean, scale=std, size=end_row - start_rows
            )
        else:
            B[start_rows:end_row, col] = mean

        start_rows += block_gap
        col += 1

    return B


def create_true_loadings(
    num_factors,
    num_variables,
    block_size,
    overlap,
    random=False,
    mean=1,
    std=5,
    rng=None,
):
    """Block-sparse loadings (num_variables x num_factors), one block of rows per factor."""
    rng = np.random.default_rng(rng)
    return _block_matrix(
        num_variables, num_factors, block_size, overlap, random, mean, std, rng
    )


def create_true_factors(
    num_factors,
    num_obs,
    block_size,
    overlap,
    random=False,
    mean=1,
    std=5,
    rng=None,
):
    """Block-sparse factor scores (num_factors x num_obs), the sample side of a bicluster."""
    rng = np.random.default_rng(rng)
    return _block_matrix(
        num_obs, num_factors, block_size, overlap, random, mean, std, rng
    ).T
