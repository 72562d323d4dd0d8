import numpy as np

from scipy.linalg.lapack import get_lapack_funcs


class CholeskyError(np.linalg.LinAlgError):
    """Raised when LAPACK cannot factor or invert a matrix assumed to be SPD."""

    def __init__(self, routine: str, info: int):
        super().__init__(f"{routine} failed with info={info}")
        self.routine = routine
        self.info = info


def symmetrize_lower(matrix: np.ndarray) -> np.ndarray:
    """Copy the lower triangle of `matrix` into its upper triangle, in place."""
    upper = np.triu_indices(matrix.shape[0], k=1)
    matrix[upper] = matrix.T[upper]
    return matrix


def invert_cholesky(matrix: np.ndarray) -> np.ndarray:
    """
    Invert a symmetric positive-definite matrix in place through its Cholesky factor.

    LAPACK `potrf` factors the lower triangle, `potri` turns the factor into
    the lower triangle of the inverse, which is then mirrored to the upper one.

    Args:
        matrix (np.ndarray): size (K*K), overwritten with its inverse

    Returns:
        np.ndarray: `matrix`, now holding the inverse

    Raises:
        ValueError: if `matrix` is not square
        CholeskyError: if the matrix is not positive-definite
    """
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        raise ValueError("Input matrix must be square.")

    potrf, potri = get_lapack_funcs(("potrf", "potri"), (matrix,))

    factor, info = potrf(matrix, lower=1, clean=1)
    if info != 0:
        raise CholeskyError("potrf", info)

    inverse, info = potri(factor, lower=1)
    if info != 0:
        raise CholeskyError("potri", info)

    matrix[...] = symmetrize_lower(inverse)
    return matrix
