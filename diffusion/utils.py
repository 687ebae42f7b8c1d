# ╔══════════════════════════════════════════════════════════════════════╗
# ║  lmsdiffusion — LMS sampling core for latent diffusion               ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Diffusion utilities — noise helpers, guidance, quadrature, and schedules.

Shared helpers used across the scheduler and the pipelines:

- ``randn_tensor``        — generate standard-normal noise as an ndarray.
- ``GuidanceBatch``       — explicit uncond / cond halves of a batched buffer.
- ``apply_guidance``      — classifier-free guidance combination.
- ``adaptive_trapezoid``  — adaptive trapezoidal quadrature.
- ``get_beta_schedule``   — public API for building β schedules.
- ``postprocess_image``   — decoder output in [-1, 1] → uint8 pixels.
- ``bgr_to_rgb``          — channel swap for NHWC images.
"""
from __future__ import annotations

import logging
import numpy as np
from typing import Callable, NamedTuple, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

# Upper bound on samples taken in one trapezoid refinement level.
MAX_TRAPEZOID_MIDPOINTS = 2 ** 20


# ═════════════════════════════════════════════════════════════════════
#  Noise generation
# ═════════════════════════════════════════════════════════════════════

def randn_tensor(
    shape: Union[Tuple[int, ...], Sequence[int]],
    seed: Optional[int] = None,
    dtype: np.dtype = np.float32,
) -> np.ndarray:
    """Generate an array filled with standard normal noise.

    Args:
        shape:  Shape of the output array.
        seed:   Optional seed for reproducibility.
        dtype:  NumPy dtype (default ``float32``).

    Returns:
        An ndarray with i.i.d. N(0, 1) entries.
    """
    rng = np.random.default_rng(seed)
    return rng.standard_normal(tuple(shape)).astype(dtype)


# ═════════════════════════════════════════════════════════════════════
#  Classifier-Free Guidance
# ═════════════════════════════════════════════════════════════════════

class GuidanceBatch(NamedTuple):
    """A guidance-doubled batch split into its two named halves.

    The noise predictor sees ``concat([uncond, cond])`` along axis 0;
    this type keeps the halves apart so neither is addressed by a raw
    offset into the other.
    """

    uncond: np.ndarray
    cond: np.ndarray

    @classmethod
    def split(cls, batched: np.ndarray) -> 'GuidanceBatch':
        """Split a ``(2B, …)`` array into ``(B, …)`` uncond / cond views."""
        if batched.ndim == 0 or batched.shape[0] % 2 != 0:
            raise ValueError(
                f"Guidance batch needs an even leading dimension, "
                f"got shape {batched.shape}")
        half = batched.shape[0] // 2
        return cls(uncond=batched[:half], cond=batched[half:])

    @classmethod
    def duplicate(cls, sample: np.ndarray) -> 'GuidanceBatch':
        """Use the same sample for both branches."""
        return cls(uncond=sample, cond=sample)

    def stack(self) -> np.ndarray:
        """Concatenate the halves back into one ``(2B, …)`` buffer."""
        return np.concatenate([self.uncond, self.cond], axis=0)


def apply_guidance(
    noise_uncond: np.ndarray,
    noise_cond: np.ndarray,
    guidance_scale: float = 7.5,
) -> np.ndarray:
    """Combine unconditional and conditional noise predictions.

    ::

        guided = uncond + guidance_scale * (cond - uncond)

    evaluated as ``(1 - s) * uncond + s * cond`` so that ``s = 0`` yields
    ``uncond`` and ``s = 1`` yields ``cond`` bit for bit.

    Args:
        noise_uncond:   Unconditional (negative prompt) prediction.
        noise_cond:     Text-conditional prediction, same shape.
        guidance_scale: CFG weight (1.0 = no guidance).

    Returns:
        A new array holding the guided prediction.
    """
    if noise_uncond.shape != noise_cond.shape:
        raise ValueError(
            f"Guidance halves differ in shape: {noise_uncond.shape} "
            f"vs {noise_cond.shape}")
    guided = (1.0 - guidance_scale) * noise_uncond + guidance_scale * noise_cond
    return guided.astype(noise_uncond.dtype, copy=False)


def classifier_free_guidance(
    noise_pred: np.ndarray,
    guidance_scale: float = 7.5,
) -> np.ndarray:
    """Guide a batched ``(2B, …)`` prediction (uncond half first)."""
    halves = GuidanceBatch.split(noise_pred)
    return apply_guidance(halves.uncond, halves.cond, guidance_scale)


# ═════════════════════════════════════════════════════════════════════
#  Numerical integration
# ═════════════════════════════════════════════════════════════════════

def adaptive_trapezoid(
    fn: Callable[[np.ndarray], np.ndarray],
    a: float,
    b: float,
    tol: float = 1e-6,
    max_refinements: int = 100,
) -> float:
    """Integrate ``fn`` over ``[a, b]`` by repeated trapezoid halving.

    Starts from the two-point trapezoid and, at refinement level ``k``,
    samples the ``2**(k-1)`` new midpoints and folds them into the
    previous estimate (composite trapezoid update).  Stops once two
    successive estimates (from level 2 on) differ by less than ``tol``.

    ``fn`` must accept an ndarray of abscissae and return values of the
    same shape.  ``b < a`` gives the signed integral.

    If ``max_refinements`` levels pass without convergence, the last
    estimate is returned as is.  Refinement also stops early once a level
    would need more than ``MAX_TRAPEZOID_MIDPOINTS`` samples or the step
    no longer moves away from ``a``.
    """
    a = float(a)
    b = float(b)
    h = (b - a) / 2.0
    estimate = (float(fn(np.float64(a))) + float(fn(np.float64(b)))) * h

    levels = 0
    for k in range(1, max_refinements + 1):
        count = 2 ** (k - 1)
        if count > MAX_TRAPEZOID_MIDPOINTS or a + h == a:
            break
        odd = 2.0 * np.arange(1, count + 1, dtype=np.float64) - 1.0
        refined = 0.5 * estimate + h * float(np.sum(fn(a + odd * h)))
        if k > 1 and abs(refined - estimate) < tol:
            return refined
        estimate = refined
        levels = k
        h /= 2.0

    logger.debug("Trapezoid on [%g, %g] did not reach tol=%g after %d levels",
                 a, b, tol, levels)
    return estimate


# ═════════════════════════════════════════════════════════════════════
#  Beta-schedule builder (public API)
# ═════════════════════════════════════════════════════════════════════

def get_beta_schedule(
    schedule: str,
    num_timesteps: int = 1000,
    beta_start: float = 0.00085,
    beta_end: float = 0.012,
) -> np.ndarray:
    """Construct a beta noise schedule.

    Args:
        schedule:       ``'linear'`` or ``'scaled_linear'``.
        num_timesteps:  Number of diffusion timesteps.
        beta_start:     Starting beta value.
        beta_end:       Ending beta value.

    Returns:
        1-D float64 numpy array of length ``num_timesteps``.
    """
    if schedule == 'linear':
        return np.linspace(beta_start, beta_end, num_timesteps,
                           dtype=np.float64)
    elif schedule == 'scaled_linear':
        return (np.linspace(beta_start ** 0.5, beta_end ** 0.5,
                            num_timesteps, dtype=np.float64) ** 2)
    else:
        raise ValueError(
            f"Unknown beta schedule: {schedule!r} "
            f"(expected 'linear' or 'scaled_linear')")


# ═════════════════════════════════════════════════════════════════════
#  Image post-processing
# ═════════════════════════════════════════════════════════════════════

def postprocess_image(decoded: np.ndarray) -> np.ndarray:
    """Map decoder output in [-1, 1] to uint8 pixels in [0, 255]."""
    pixels = np.clip(decoded * 0.5 + 0.5, 0.0, 1.0) * 255
    return pixels.astype(np.uint8)


def bgr_to_rgb(image: np.ndarray) -> np.ndarray:
    """Swap the red and blue channels of a ``(1, H, W, 3)`` uint8 image."""
    if image.dtype != np.uint8 or image.ndim != 4 or image.shape[0] != 1 \
            or image.shape[3] != 3:
        raise ValueError(
            f"Image of uint8 type and [1, H, W, 3] shape is expected, "
            f"got {image.dtype} {image.shape}")
    return image[..., ::-1].copy()


# ═════════════════════════════════════════════════════════════════════
#  Exports
# ═════════════════════════════════════════════════════════════════════

__all__ = [
    'randn_tensor',
    'GuidanceBatch',
    'apply_guidance',
    'classifier_free_guidance',
    'MAX_TRAPEZOID_MIDPOINTS',
    'adaptive_trapezoid',
    'get_beta_schedule',
    'postprocess_image',
    'bgr_to_rgb',
]
