import numpy as np


class BiclusterDGP:
    def __init__(self, L: np.ndarray, Z: np.ndarray, noise_std: float = 1.0, dtype=np.float32):
        """Data generating process X = L Z + noise.

        Args:
            L (np.ndarray): True Loadings Matrix (n x k)
            Z (np.ndarray): True Factors Matrix (k x l)
            noise_std (float): standard deviation of the Gaussian noise
            dtype ():
        """
        if L.shape[1] != Z.shape[0]:
            raise ValueError(f"L {L.shape} and Z {Z.shape} do not share k")

        self.dtype = dtype
        self.L = L.astype(self.dtype)
        self.Z = Z.astype(self.dtype)
        self.noise_std = noise_std

    def simulate(self, rng=None):
        rng = np.random.default_rng(rng)
        signal = self.L @ self.Z
        noise = rng.normal(scale=self.noise_std, size=signal.shape)
        return np.asfortranarray(signal + noise, dtype=self.dtype)
