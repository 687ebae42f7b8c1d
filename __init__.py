# ╔══════════════════════════════════════════════════════════════════════╗
# ║  lmsdiffusion — LMS sampling core for latent diffusion               ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""
lmsdiffusion — linear multistep sampling for latent diffusion models.

Text-to-image generation with an externally supplied noise predictor:
a sigma schedule derived from the training betas, sigma → timestep
lookup, classifier-free guidance, and an LMS ODE solver whose
coefficients come from adaptive quadrature.  NumPy is the
computational backend.

Usage::

    import lmsdiffusion
    from lmsdiffusion.diffusion import StableDiffusionLMSPipeline
"""
from __future__ import annotations

__version__ = "0.1.0"
__author__ = "Pictofeed, LLC"

# ── Sub-packages ──
from . import diffusion

from .diffusion import (
    LMSDiscreteScheduler,
    SamplingRun,
    StableDiffusionLMSPipeline,
)

__all__ = [
    "__version__",
    "__author__",

    'diffusion',
    'LMSDiscreteScheduler',
    'SamplingRun',
    'StableDiffusionLMSPipeline',
]
