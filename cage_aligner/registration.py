"""
Rigid point set registration with Coherent Point Drift.

Given a reference point set X and a moving point set Y, we look for the
rotation R, translation t and isotropic variance sigma^2 that best explain
Y as a noisy rigid copy of X. The moving points are the centroids of a
Gaussian mixture; the reference points are the data. Each EM step
computes soft correspondences (E-step) and then solves a weighted
orthogonal Procrustes problem in closed form (M-step).

The heavy lifting is done in PyTorch (float64) so large porosity clouds
can run on the GPU. There is no randomness anywhere in here: the same
inputs always give the same result.
"""

import enum
import math
import numpy as np
import torch
from dataclasses import dataclass
from typing import Optional, Tuple

from .exceptions import DimensionMismatch, InvalidRotation
from .point_set import PointSet


# Stop reasons
VARIANCE_CONVERGED = "variance below tolerance"
OBJECTIVE_STALLED = "objective stopped decreasing"
MAX_ITERATIONS = "max EM steps reached"

# sigma^2 never drops below this, otherwise the E-step divides by zero
VARIANCE_FLOOR = 1e-12

ROTATION_TOL = 1e-8


class RegistrationState(enum.Enum):
    INITIALIZING = "initializing"
    E_STEP = "E-step"
    M_STEP = "M-step"
    CONVERGED = VARIANCE_CONVERGED
    OBJECTIVE_STALLED = OBJECTIVE_STALLED
    MAX_ITERATIONS_REACHED = MAX_ITERATIONS

    @property
    def is_terminal(self) -> bool:
        return self in (RegistrationState.CONVERGED,
                        RegistrationState.OBJECTIVE_STALLED,
                        RegistrationState.MAX_ITERATIONS_REACHED)


@dataclass(frozen=True)
class RegistrationConfig:
    """
    Tuning knobs for the EM registration.

    Parameters
    ----------
    outlier_weight : float
        Weight w in [0, 1) of the uniform noise component.
    variance_tolerance : float
        Stop once sigma^2 drops to this value.
    objective_tolerance : float
        Stop once an EM step lowers the objective by less than this.
    max_iterations : int
        Hard cap on the number of EM steps.
    verbose : bool
        Print one line per EM step.
    device : str
        Torch device, or 'auto' to use CUDA when available.
    """
    outlier_weight: float = 0.0
    variance_tolerance: float = 1e-4
    objective_tolerance: float = 1e-3
    max_iterations: int = 25
    verbose: bool = False
    device: str = "cpu"

    def __post_init__(self):
        if not 0.0 <= self.outlier_weight < 1.0:
            raise ValueError(f"outlier_weight must be in [0, 1), got {self.outlier_weight}")
        if self.variance_tolerance < 0:
            raise ValueError("variance_tolerance must be non-negative")
        if self.objective_tolerance < 0:
            raise ValueError("objective_tolerance must be non-negative")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

    def torch_device(self) -> torch.device:
        if self.device == "auto":
            return torch.device('cuda' if torch.cuda.is_available() else 'cpu')
        return torch.device(self.device)


@dataclass(frozen=True)
class RegistrationResult:
    """
    Outcome of registering `mover_id` onto `reference_id`.

    The transform maps moving points onto the reference: y -> R y + t.
    """
    mover_id: str
    reference_id: str
    point_count: int
    rotation: np.ndarray
    translation: np.ndarray
    variance: float
    objective: float
    iterations: int
    stop_reason: str

    def __post_init__(self):
        for name in ('rotation', 'translation'):
            array = np.array(getattr(self, name), dtype=np.float64, copy=True)
            array.setflags(write=False)
            object.__setattr__(self, name, array)

    @property
    def key(self) -> Tuple[str, str, int]:
        return (self.mover_id, self.reference_id, self.point_count)

    def apply(self, point_set: PointSet) -> PointSet:
        """Apply the full rigid transform to a point set."""
        return point_set.transformed(self.rotation, self.translation)


def check_rotation(R: np.ndarray, tol: float = ROTATION_TOL) -> None:
    """Raise InvalidRotation unless R is orthonormal with determinant +1."""
    R = np.asarray(R)
    if R.shape != (3, 3) or not np.all(np.isfinite(R)):
        raise InvalidRotation(f"rotation is not a finite 3x3 matrix: {R}")
    if np.abs(R @ R.T - np.eye(3)).max() > tol:
        raise InvalidRotation("rotation is not orthonormal")
    if abs(np.linalg.det(R) - 1.0) > tol:
        raise InvalidRotation(f"rotation has determinant {np.linalg.det(R):.6f}")


def squared_distances(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    """Pairwise squared Euclidean distances, shape (len(a), len(b))."""
    return torch.cdist(a, b, compute_mode='donot_use_mm_for_euclid_dist') ** 2


class RigidRegistration:
    """
    EM registration of a moving point set onto a reference point set.

    Holds the current estimate (R, t, sigma^2) and the state of the EM
    loop, so it can be stepped by hand or run to completion with
    `register`.
    """

    def __init__(self, reference: PointSet, moving: PointSet,
                 config: Optional[RegistrationConfig] = None):
        if reference.n_points != moving.n_points:
            raise DimensionMismatch(
                f"reference {reference.structure_id} has {reference.n_points} points "
                f"but moving {moving.structure_id} has {moving.n_points}"
            )
        if reference.n_points == 0:
            raise DimensionMismatch("cannot register empty point sets")

        self.config = config or RegistrationConfig()
        self.reference = reference
        self.moving = moving
        self.device = self.config.torch_device()

        self.X = torch.tensor(reference.coords, dtype=torch.float64, device=self.device)
        self.Y = torch.tensor(moving.coords, dtype=torch.float64, device=self.device)
        self.N, self.D = self.X.shape
        self.M = self.Y.shape[0]

        self.state = RegistrationState.INITIALIZING
        self.R = torch.eye(self.D, dtype=torch.float64, device=self.device)
        self.t = torch.zeros(self.D, dtype=torch.float64, device=self.device)
        self.sigma2 = float(squared_distances(self.X, self.Y).sum()) / (self.D * self.N * self.M)
        self.sigma2 = max(self.sigma2, VARIANCE_FLOOR)
        self.P = None
        self.objective = math.inf
        self.iterations = 0
        # Squared distances under the current transform, shape (M, N)
        self._residuals = None

    def transformed_moving(self) -> torch.Tensor:
        """Moving points under the current transform, R y + t."""
        return self.Y @ self.R.T + self.t

    def _log_normalizer(self, residuals: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Gaussian log-likelihoods and their per-moving-point log normalizer.

        The uniform outlier component enters the normalizer as the constant
        c = (2 pi sigma^2)^(D/2) w / (1 - w) N / M.
        """
        w = self.config.outlier_weight
        log_g = -residuals / (2 * self.sigma2)

        if w > 0:
            log_c = (self.D / 2) * math.log(2 * math.pi * self.sigma2) + \
                math.log(w / (1 - w)) + math.log(self.N / self.M)
            c = torch.full((self.M, 1), log_c, dtype=torch.float64, device=self.device)
            log_norm = torch.logsumexp(torch.cat([log_g, c], dim=1), dim=1, keepdim=True)
        else:
            log_norm = torch.logsumexp(log_g, dim=1, keepdim=True)
        return log_g, log_norm

    def negative_log_likelihood(self, residuals: torch.Tensor) -> float:
        """Negative log-likelihood of the moving points under the mixture."""
        _, log_norm = self._log_normalizer(residuals)
        w = self.config.outlier_weight
        return float(-log_norm.sum()) + \
            self.M * (self.D / 2) * math.log(2 * math.pi * self.sigma2) - \
            self.M * math.log((1 - w) / self.N)

    def e_step(self) -> torch.Tensor:
        """
        Soft correspondences P[m, n] of moving point m to reference point n.

        Each row sums to one minus the share taken by the outlier component.
        Computed in log space so tight fits do not underflow.
        """
        self.state = RegistrationState.E_STEP
        if self._residuals is None:
            self._residuals = squared_distances(self.transformed_moving(), self.X)

        log_g, log_norm = self._log_normalizer(self._residuals)
        self.P = torch.exp(log_g - log_norm)
        return self.P

    def m_step(self) -> None:
        """Weighted Procrustes update of R, t and sigma^2."""
        self.state = RegistrationState.M_STEP
        P = self.P

        N_P = P.sum()
        if not torch.isfinite(N_P) or N_P <= 0:
            raise InvalidRotation(
                f"{self.moving.structure_id} -> {self.reference.structure_id}: "
                "all correspondences vanished"
            )

        mu_x = P.sum(dim=0) @ self.X / N_P
        mu_y = P.sum(dim=1) @ self.Y / N_P
        X_hat = self.X - mu_x
        Y_hat = self.Y - mu_y

        # Cross-covariance between centered reference and moving points
        A = X_hat.T @ P.T @ Y_hat
        U, _, Vh = torch.linalg.svd(A)

        # No reflections
        C = torch.ones(self.D, dtype=torch.float64, device=self.device)
        C[-1] = torch.sign(torch.linalg.det(U @ Vh))
        if C[-1] == 0:
            C[-1] = 1.0
        self.R = U @ torch.diag(C) @ Vh
        self.t = mu_x - self.R @ mu_y

        self._residuals = squared_distances(self.transformed_moving(), self.X)
        weighted = float((P * self._residuals).sum())
        self.sigma2 = max(weighted / (float(N_P) * self.D), VARIANCE_FLOOR)

        # Lower is better
        self.objective = self.negative_log_likelihood(self._residuals)

    def step(self) -> Optional[RegistrationState]:
        """
        Run one EM step.

        Returns the terminal state if a stopping condition was hit,
        otherwise None.
        """
        previous_objective = self.objective
        self.e_step()
        self.m_step()
        self.iterations += 1

        if self.config.verbose:
            print(f"  EM step {self.iterations}: sigma2={self.sigma2:.6g} "
                  f"objective={self.objective:.6g}")

        if self.sigma2 <= self.config.variance_tolerance:
            self.state = RegistrationState.CONVERGED
        elif previous_objective - self.objective < self.config.objective_tolerance:
            # EM should never increase the objective; an increase means
            # numerical trouble, so stop there as well.
            self.state = RegistrationState.OBJECTIVE_STALLED
        elif self.iterations >= self.config.max_iterations:
            self.state = RegistrationState.MAX_ITERATIONS_REACHED
        else:
            return None
        return self.state

    def register(self) -> RegistrationResult:
        """Run EM until a stopping condition is reached."""
        while self.step() is None:
            pass

        R = self.R.cpu().numpy()
        t = self.t.cpu().numpy()
        if not np.all(np.isfinite(t)) or not math.isfinite(self.sigma2):
            raise InvalidRotation(
                f"{self.moving.structure_id} -> {self.reference.structure_id}: "
                "non-finite transform"
            )
        check_rotation(R)

        if self.config.verbose:
            print(f"  {self.moving.structure_id} -> {self.reference.structure_id}: "
                  f"{self.state.value} after {self.iterations} EM steps "
                  f"(sigma2={self.sigma2:.6g}, objective={self.objective:.6g})")

        return RegistrationResult(
            mover_id=self.moving.structure_id,
            reference_id=self.reference.structure_id,
            point_count=self.N,
            rotation=R,
            translation=t,
            variance=self.sigma2,
            objective=self.objective,
            iterations=self.iterations,
            stop_reason=self.state.value,
        )


def rigid_point_set_registration(reference: PointSet, moving: PointSet,
                                 config: Optional[RegistrationConfig] = None
                                 ) -> RegistrationResult:
    """
    Register `moving` onto `reference`.

    Parameters
    ----------
    reference : PointSet
        Fixed point set X.
    moving : PointSet
        Point set Y to be moved onto X; must have as many points as X.
    config : RegistrationConfig, optional
        EM settings (defaults if omitted).

    Returns
    -------
    RegistrationResult
        Rotation and translation with R y + t ~ x, the final variance and
        objective, and why the EM loop stopped.

    Raises
    ------
    DimensionMismatch
        If the point counts differ.
    InvalidRotation
        If the estimate is not a proper rotation.
    """
    return RigidRegistration(reference, moving, config).register()
