# ╔══════════════════════════════════════════════════════════════════════╗
# ║  lmsdiffusion — LMS sampling core for latent diffusion               ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""lmsdiffusion.diffusion — LMS scheduler, sampling loop, and pipeline.

Usage::

    from lmsdiffusion.diffusion import (
        LMSDiscreteScheduler,
        SamplingRun,
        StableDiffusionLMSPipeline,
        apply_guidance,
    )

    scheduler = LMSDiscreteScheduler()
    pipe = StableDiffusionLMSPipeline(unet, scheduler=scheduler)
    latents = pipe.denoise(init_latents, text_embeddings,
                           num_inference_steps=20)
"""
from __future__ import annotations

# ── Schedulers ──
from .schedulers import (
    MAX_ORDER,
    LMS_TOLERANCE,
    build_log_sigma_table,
    build_run_sigmas,
    sigma_to_timestep,
    linear_multistep_coeff,
    DerivativeHistory,
    LMSDiscreteScheduler,
)

# ── Pipelines ──
from .pipelines import (
    NoisePredictor,
    LatentDecoder,
    RunState,
    SamplingRun,
    DiffusionPipeline,
    StableDiffusionLMSPipeline,
)

# ── Utilities ──
from .utils import (
    randn_tensor,
    GuidanceBatch,
    apply_guidance,
    classifier_free_guidance,
    adaptive_trapezoid,
    get_beta_schedule,
    postprocess_image,
    bgr_to_rgb,
)

__all__ = [
    # Schedulers
    'MAX_ORDER',
    'LMS_TOLERANCE',
    'build_log_sigma_table',
    'build_run_sigmas',
    'sigma_to_timestep',
    'linear_multistep_coeff',
    'DerivativeHistory',
    'LMSDiscreteScheduler',
    # Pipelines
    'NoisePredictor',
    'LatentDecoder',
    'RunState',
    'SamplingRun',
    'DiffusionPipeline',
    'StableDiffusionLMSPipeline',
    # Utilities
    'randn_tensor',
    'GuidanceBatch',
    'apply_guidance',
    'classifier_free_guidance',
    'adaptive_trapezoid',
    'get_beta_schedule',
    'postprocess_image',
    'bgr_to_rgb',
]
