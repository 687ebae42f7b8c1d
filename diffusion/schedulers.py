# ╔══════════════════════════════════════════════════════════════════════╗
# ║  lmsdiffusion — LMS sampling core for latent diffusion               ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Linear multistep (LMS) noise scheduler for latent diffusion.

The scheduler works in sigma space (the Karras / k-diffusion view of a
discrete DDPM schedule):

- ``build_log_sigma_table``   — per-training-timestep ``log σ`` lookup table.
- ``build_run_sigmas``        — the ``steps + 1`` sigmas used by one run.
- ``sigma_to_timestep``       — inverse lookup from σ to a model timestep.
- ``linear_multistep_coeff``  — Adams–Bashforth style LMS coefficients.
- ``DerivativeHistory``       — bounded FIFO of past ODE derivatives.
- **LMSDiscreteScheduler**    — ties the above together behind the usual
  ``set_timesteps`` / ``scale_model_input`` / ``step`` scheduler API.
"""
from __future__ import annotations

import inspect
import logging
import math
from collections import deque
from typing import Any, Iterator, Optional, Sequence

import numpy as np

from .utils import adaptive_trapezoid, get_beta_schedule

logger = logging.getLogger(__name__)

MAX_ORDER = 4
LMS_TOLERANCE = 1e-4

_PREDICTION_TYPES = ('epsilon', 'v_prediction', 'sample')


# ═════════════════════════════════════════════════════════════════════
#  Helpers
# ═════════════════════════════════════════════════════════════════════

def _get_betas(schedule: str, num_timesteps: int, beta_start: float,
               beta_end: float,
               trained_betas: Optional[Sequence[float]] = None) -> np.ndarray:
    if trained_betas is not None:
        betas = np.asarray(trained_betas, dtype=np.float64).ravel()
        if betas.size > 0:
            return betas
    return get_beta_schedule(schedule, num_timesteps, beta_start, beta_end)


def _read_only(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


# ═════════════════════════════════════════════════════════════════════
#  Sigma table & run schedule
# ═════════════════════════════════════════════════════════════════════

def build_log_sigma_table(
    num_train_timesteps: int = 1000,
    beta_start: float = 0.00085,
    beta_end: float = 0.012,
    beta_schedule: str = 'scaled_linear',
    trained_betas: Optional[Sequence[float]] = None,
) -> np.ndarray:
    """Build the ``log σ`` table for every training timestep.

    ``σ_t = sqrt((1 - ᾱ_t) / ᾱ_t)`` with ``ᾱ_t = Π_{k≤t} (1 - β_k)``.

    A non-empty ``trained_betas`` replaces the computed schedule, and its
    length becomes the table length.

    Returns:
        Read-only float64 array, strictly increasing.
    """
    betas = _get_betas(beta_schedule, num_train_timesteps,
                       beta_start, beta_end, trained_betas)
    if betas.shape[0] < 2:
        raise ValueError(
            f"Need at least 2 training timesteps, got {betas.shape[0]}")
    if not np.all((betas > 0.0) & (betas < 1.0)):
        raise ValueError("Every beta must lie strictly between 0 and 1")

    alphas_cumprod = np.cumprod(1.0 - betas)
    sigmas = np.sqrt((1.0 - alphas_cumprod) / alphas_cumprod)
    return _read_only(np.log(sigmas))


def build_run_sigmas(log_sigmas: np.ndarray, steps: int) -> np.ndarray:
    """Interpolate ``steps`` sigmas over the table and append a final 0.

    Run index ``i`` is placed at ``t = (N-1) - i·(N-1)/(steps-1)`` on the
    timestep axis and ``log σ`` is linearly interpolated between the
    floor and ceil table entries of ``t``.

    Returns:
        Read-only float64 array of length ``steps + 1``, strictly
        decreasing, ending in exactly ``0.0``.
    """
    if steps < 1:
        raise ValueError(f"steps must be >= 1, got {steps}")
    log_sigmas = np.asarray(log_sigmas, dtype=np.float64)
    t_max = log_sigmas.shape[0] - 1

    delta = t_max / (steps - 1) if steps > 1 else 0.0
    t = t_max - np.arange(steps, dtype=np.float64) * delta
    low_idx = np.clip(np.floor(t), 0, t_max).astype(np.int64)
    high_idx = np.clip(np.ceil(t), 0, t_max).astype(np.int64)
    w = np.clip(t - low_idx, 0.0, 1.0)

    sigmas = np.exp((1.0 - w) * log_sigmas[low_idx] + w * log_sigmas[high_idx])
    return _read_only(np.append(sigmas, 0.0))


def sigma_to_timestep(log_sigmas: np.ndarray, sigma: float) -> int:
    """Map a sigma back to the nearest (interpolated) training timestep.

    ``low`` is the rightmost table index whose ``log σ`` does not exceed
    ``log(sigma)`` (0 if there is none), kept at most ``N - 2`` so that
    ``low + 1`` is a valid neighbour.  The fractional position between
    the two is rounded half-up.
    """
    log_sigmas = np.asarray(log_sigmas, dtype=np.float64)
    n = log_sigmas.shape[0]
    if sigma <= 0.0:
        return 0

    target = math.log(sigma)
    counts = np.cumsum(target - log_sigmas >= 0)
    low_idx = min(int(np.argmax(counts)), n - 2)
    high_idx = low_idx + 1

    low = float(log_sigmas[low_idx])
    high = float(log_sigmas[high_idx])
    w = (low - target) / (low - high)
    w = min(max(w, 0.0), 1.0)

    return int(math.floor((1.0 - w) * low_idx + w * high_idx + 0.5))


# ═════════════════════════════════════════════════════════════════════
#  Linear multistep coefficients
# ═════════════════════════════════════════════════════════════════════

def linear_multistep_coeff(order: int, sigmas: np.ndarray, i: int, j: int,
                           tol: float = LMS_TOLERANCE) -> float:
    """Integral of the ``j``-th Lagrange basis over ``[σ_i, σ_{i+1}]``.

    The basis interpolates through ``σ_i, σ_{i-1}, …, σ_{i-order+1}``.
    """
    if order - 1 > i:
        raise ValueError(f"Order {order} too high for step {i}")
    if not 0 <= j < order:
        raise ValueError(f"Coefficient index {j} outside order {order}")

    def basis(tau):
        prod = np.ones_like(tau, dtype=np.float64)
        for k in range(order):
            if k == j:
                continue
            prod = prod * (tau - sigmas[i - k]) / (sigmas[i - j] - sigmas[i - k])
        return prod

    return adaptive_trapezoid(basis, sigmas[i], sigmas[i + 1], tol=tol)


class DerivativeHistory:
    """Fixed-capacity FIFO of derivative arrays, oldest evicted first."""

    def __init__(self, capacity: int = MAX_ORDER):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._items: deque[np.ndarray] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[np.ndarray]:
        return iter(self._items)

    def push(self, derivative: np.ndarray) -> None:
        self._items.append(derivative)
        while len(self._items) > self.capacity:
            self._items.popleft()

    def newest_first(self) -> list[np.ndarray]:
        return list(reversed(self._items))

    def clear(self) -> None:
        self._items.clear()


# ═════════════════════════════════════════════════════════════════════
#  LMSDiscreteScheduler
# ═════════════════════════════════════════════════════════════════════

class LMSDiscreteScheduler:
    """Linear multistep scheduler over a discrete DDPM sigma schedule.

    Each step turns the model output into an ODE derivative
    ``d = (x - x₀) / σ`` and advances the sample with a weighted sum of
    up to ``max_order`` past derivatives, the weights being exact
    integrals of Lagrange basis polynomials over the step interval.

    The lookup table is built once and never modified.  Per-run state
    (the derivative history) is owned by the caller and passed to
    ``step``, so one scheduler can serve several runs at once.

    Args:
        num_train_timesteps: Training timesteps (table length).
        beta_start / beta_end: Beta range.
        beta_schedule:       ``'linear'`` or ``'scaled_linear'``.
        trained_betas:       Explicit betas; overrides the three above.
        prediction_type:     ``'epsilon'``, ``'v_prediction'``, or ``'sample'``.
        max_order:           Largest multistep order (history capacity).
        lms_tolerance:       Quadrature tolerance for the coefficients.
    """

    def __init__(
        self,
        num_train_timesteps: int = 1000,
        beta_start: float = 0.00085,
        beta_end: float = 0.012,
        beta_schedule: str = 'scaled_linear',
        trained_betas: Optional[Sequence[float]] = None,
        prediction_type: str = 'epsilon',
        max_order: int = MAX_ORDER,
        lms_tolerance: float = LMS_TOLERANCE,
    ):
        if prediction_type not in _PREDICTION_TYPES:
            raise ValueError(
                f"Unknown prediction type: {prediction_type!r} "
                f"(expected one of {_PREDICTION_TYPES})")
        if max_order < 1:
            raise ValueError(f"max_order must be >= 1, got {max_order}")

        self.beta_start = beta_start
        self.beta_end = beta_end
        self.beta_schedule = beta_schedule
        self.trained_betas = (None if trained_betas is None
                              else [float(b) for b in trained_betas])
        self.prediction_type = prediction_type
        self.max_order = max_order
        self.lms_tolerance = lms_tolerance

        self.log_sigmas = build_log_sigma_table(
            num_train_timesteps, beta_start, beta_end, beta_schedule,
            trained_betas)
        self.num_train_timesteps = int(self.log_sigmas.shape[0])
        self.sigmas_full = _read_only(np.exp(self.log_sigmas))

        # Default schedule (all training timesteps)
        self.num_inference_steps: int | None = None
        self.sigmas = _read_only(np.append(self.sigmas_full[::-1], 0.0))
        self.timesteps = np.arange(self.num_train_timesteps - 1, -1,
                                   -1).astype(np.int64)

        logger.debug("LMS scheduler: %d train timesteps, sigma range "
                     "[%.5f, %.4f]", self.num_train_timesteps,
                     self.sigmas_full[0], self.sigmas_full[-1])

    # ---- configuration ----

    @property
    def config(self) -> dict[str, Any]:
        return {
            'num_train_timesteps': self.num_train_timesteps,
            'beta_start': self.beta_start,
            'beta_end': self.beta_end,
            'beta_schedule': self.beta_schedule,
            'trained_betas': self.trained_betas,
            'prediction_type': self.prediction_type,
            'max_order': self.max_order,
            'lms_tolerance': self.lms_tolerance,
        }

    @classmethod
    def from_config(cls, config: dict[str, Any],
                    **overrides) -> 'LMSDiscreteScheduler':
        """Build a scheduler from a config dict; unknown keys are ignored."""
        params = {**config, **overrides}
        known = inspect.signature(cls.__init__).parameters
        return cls(**{k: v for k, v in params.items() if k in known})

    # ---- schedule ----

    def get_sigmas(self, num_inference_steps: int) -> np.ndarray:
        """Run schedule for ``num_inference_steps`` steps (no side effects)."""
        return build_run_sigmas(self.log_sigmas, num_inference_steps)

    def set_timesteps(self, num_inference_steps: int):
        self.sigmas = self.get_sigmas(num_inference_steps)
        self.timesteps = np.array(
            [self.sigma_to_timestep(s) for s in self.sigmas[:-1]],
            dtype=np.int64)
        self.num_inference_steps = num_inference_steps

    @property
    def init_noise_sigma(self) -> float:
        return float(self.sigmas[0])

    def sigma_to_timestep(self, sigma: float) -> int:
        return sigma_to_timestep(self.log_sigmas, float(sigma))

    # ---- model I/O ----

    def scale_model_input(self, sample: np.ndarray, sigma: float) -> np.ndarray:
        """Pre-scale the model input by ``1 / sqrt(σ² + 1)``."""
        scale = 1.0 / math.sqrt(float(sigma) ** 2 + 1.0)
        return (sample * scale).astype(sample.dtype, copy=False)

    def add_noise(self, original: np.ndarray, noise: np.ndarray,
                  sigma: float) -> np.ndarray:
        """Forward noising in sigma space: ``x_σ = x₀ + σ·ε``."""
        return (original + float(sigma) * noise).astype(original.dtype,
                                                       copy=False)

    def predict_original_sample(self, model_output: np.ndarray,
                                sample: np.ndarray,
                                sigma: float) -> np.ndarray:
        sigma = float(sigma)
        if self.prediction_type == 'epsilon':
            return sample - sigma * model_output
        elif self.prediction_type == 'v_prediction':
            return (model_output * (-sigma / math.sqrt(sigma ** 2 + 1))
                    + sample / (sigma ** 2 + 1))
        elif self.prediction_type == 'sample':
            return model_output
        raise ValueError(self.prediction_type)

    def to_derivative(self, model_output: np.ndarray, sample: np.ndarray,
                      sigma: float) -> np.ndarray:
        """ODE derivative ``(x - x₀) / σ`` for the current sample."""
        sigma = float(sigma)
        if sigma == 0.0:
            raise RuntimeError("Cannot form a derivative at sigma == 0")
        pred_x0 = self.predict_original_sample(model_output, sample, sigma)
        return ((sample - pred_x0) / sigma).astype(sample.dtype, copy=False)

    # ---- stepping ----

    def order_at(self, step_index: int) -> int:
        return min(step_index + 1, self.max_order)

    def get_lms_coefficients(self, sigmas: np.ndarray,
                             step_index: int) -> list[float]:
        order = self.order_at(step_index)
        return [
            linear_multistep_coeff(order, sigmas, step_index, j,
                                   tol=self.lms_tolerance)
            for j in range(order)
        ]

    def step(self, model_output: np.ndarray, step_index: int,
             sample: np.ndarray, derivatives: DerivativeHistory,
             sigmas: Optional[np.ndarray] = None) -> np.ndarray:
        """LMS step: push the new derivative and update ``sample`` in place.

        Args:
            model_output: Guided model prediction for ``sample``.
            step_index:   Index ``i`` into ``sigmas``.
            sample:       Current latent; modified in place.
            derivatives:  The run's history (capacity ``max_order``).
            sigmas:       Run schedule; defaults to ``self.sigmas``.

        Returns:
            ``sample``, now holding the latent for step ``i + 1``.
        """
        sigmas = self.sigmas if sigmas is None else sigmas
        if not 0 <= step_index < len(sigmas) - 1:
            raise ValueError(
                f"step_index {step_index} outside schedule of "
                f"{len(sigmas) - 1} steps")
        sigma = float(sigmas[step_index])
        if sigma == 0.0:
            raise RuntimeError(
                f"Sigma is zero at non-terminal step {step_index}")

        coeffs = self.get_lms_coefficients(sigmas, step_index)
        available = min(len(derivatives) + 1, derivatives.capacity)
        if available < len(coeffs):
            raise RuntimeError(
                f"Derivative history holds {len(derivatives)} entries, "
                f"step {step_index} needs {len(coeffs) - 1}")

        derivatives.push(self.to_derivative(model_output, sample, sigma))
        history = derivatives.newest_first()

        update = coeffs[0] * history[0]
        for coeff, derivative in zip(coeffs[1:], history[1:]):
            update = update + coeff * derivative
        sample += update.astype(sample.dtype, copy=False)
        return sample


# ═════════════════════════════════════════════════════════════════════
#  Exports
# ═════════════════════════════════════════════════════════════════════

__all__ = [
    'MAX_ORDER',
    'LMS_TOLERANCE',
    'build_log_sigma_table',
    'build_run_sigmas',
    'sigma_to_timestep',
    'linear_multistep_coeff',
    'DerivativeHistory',
    'LMSDiscreteScheduler',
]
