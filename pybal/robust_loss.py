#!/usr/bin/env python3
"""
Robust loss functions applied to squared residual norms.

evaluate(s) returns (rho(s), rho'(s), rho''(s)) for an array of squared norms.
"""

import numpy as np
from typing import Tuple


class TrivialLoss:
    """rho(s) = s"""

    def evaluate(self, s: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        s = np.asarray(s, dtype=np.float64)
        return s.copy(), np.ones_like(s), np.zeros_like(s)


class HuberLoss:
    """
    rho(s) = s                      for s <= delta^2
           = 2 delta sqrt(s) - delta^2  otherwise
    """

    def __init__(self, delta: float = 1.0):
        if delta <= 0:
            raise ValueError("Huber delta must be positive")
        self.delta = float(delta)
        self.b = self.delta ** 2

    def evaluate(self, s: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        s = np.asarray(s, dtype=np.float64)
        outlier = s > self.b
        r = np.sqrt(np.where(outlier, s, 1.0))
        rho = np.where(outlier, 2.0 * self.delta * r - self.b, s)
        rho1 = np.where(outlier, self.delta / r, 1.0)
        rho2 = np.where(outlier, -0.5 * rho1 / np.where(outlier, s, 1.0), 0.0)
        return rho, rho1, rho2


class Corrector:
    """
    Rescales residuals and Jacobians so that the plain Gauss-Newton products
    J^T J and J^T r of the corrected quantities equal the robustified ones
    (Triggs et al., "Bundle Adjustment - A Modern Synthesis", sec. 4.3).

    With rho'' <= 0, as for Huber, this reduces to scaling both by sqrt(rho').
    """

    def __init__(self, sq_norm: np.ndarray, rho: Tuple[np.ndarray, np.ndarray, np.ndarray]):
        sq_norm = np.asarray(sq_norm, dtype=np.float64)
        _, rho1, rho2 = rho
        self.sqrt_rho1 = np.sqrt(rho1)

        second_order = (sq_norm > 0.0) & (rho2 > 0.0)
        safe_sq_norm = np.where(second_order, sq_norm, 1.0)
        D = 1.0 + 2.0 * safe_sq_norm * np.where(second_order, rho2 / rho1, 0.0)
        alpha = np.where(second_order, 1.0 - np.sqrt(D), 0.0)
        self.residual_scaling = self.sqrt_rho1 / (1.0 - alpha)
        self.alpha_sq_norm = alpha / safe_sq_norm

    def correct_residuals(self, residuals: np.ndarray) -> np.ndarray:
        """residuals: (N, k)"""
        return residuals * self.residual_scaling[:, None]

    def correct_jacobian(self, residuals: np.ndarray, jacobian: np.ndarray) -> np.ndarray:
        """
        residuals: (N, k) uncorrected residuals
        jacobian: (N, k, m)
        """
        r_t_J = np.einsum('nk,nkm->nm', residuals, jacobian)
        corrected = jacobian - self.alpha_sq_norm[:, None, None] * residuals[:, :, None] * r_t_J[:, None, :]
        return corrected * self.sqrt_rho1[:, None, None]
