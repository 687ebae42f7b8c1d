# ╔══════════════════════════════════════════════════════════════════════╗
# ║  lmsdiffusion — LMS sampling core for latent diffusion               ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Diffusion pipelines — the LMS denoising loop and its orchestration.

The networks themselves (text encoder, noise predictor, decoder) live
outside this package; they are reached through two small protocols:

- ``NoisePredictor.infer(timestep, batched_latent, text_embeddings)``
- ``LatentDecoder.decode(latents)``

Provided here:

- **SamplingRun** — one denoising run as a state machine
  (``INIT → STEPPING → DONE``, or ``FAILED``).
- **DiffusionPipeline** — base class with shared logic (noise init,
  decoding, progress bar).
- **StableDiffusionLMSPipeline** — SD 1.x style text-to-image pipeline
  driven by ``LMSDiscreteScheduler`` with classifier-free guidance.
"""
from __future__ import annotations

import enum
import functools
import logging
import numpy as np
from typing import Callable, Optional, Protocol, Sequence, Union, runtime_checkable

from tqdm.auto import tqdm

from .schedulers import DerivativeHistory, LMSDiscreteScheduler
from .utils import (
    GuidanceBatch, apply_guidance, bgr_to_rgb, postprocess_image, randn_tensor,
)

logger = logging.getLogger(__name__)

LoggerLike = Union[logging.Logger, logging.LoggerAdapter]
StepCallback = Callable[[int, int, np.ndarray], None]


def _resolve_logger(log: Optional[LoggerLike]) -> LoggerLike:
    return log if log is not None else logger


# ═════════════════════════════════════════════════════════════════════
#  External collaborators
# ═════════════════════════════════════════════════════════════════════

@runtime_checkable
class NoisePredictor(Protocol):
    """Noise-prediction network (e.g. a compiled UNet).

    ``batched_latent`` is ``(2B, C, H, W)`` and ``text_embeddings`` is
    ``(2B, L, D)``; the first half of the batch is the unconditional
    branch, the second half the text-conditional one.  The result has
    the shape of ``batched_latent``.
    """

    def infer(self, timestep: int, batched_latent: np.ndarray,
              text_embeddings: np.ndarray) -> np.ndarray:
        ...


@runtime_checkable
class LatentDecoder(Protocol):
    """Latent → image network (e.g. a VAE decoder), output in [-1, 1]."""

    def decode(self, latents: np.ndarray) -> np.ndarray:
        ...


# ═════════════════════════════════════════════════════════════════════
#  SamplingRun — one denoising trajectory
# ═════════════════════════════════════════════════════════════════════

class RunState(enum.Enum):
    INIT = 'init'
    STEPPING = 'stepping'
    DONE = 'done'
    FAILED = 'failed'


class SamplingRun:
    """A single LMS denoising run.

    Owns the latent and the derivative history for exactly one image;
    nothing here is shared between runs, so independent runs may step
    on separate threads as long as the predictor is reentrant.

    Args:
        scheduler:        Source of the lookup table and LMS maths.
        noise_predictor:  External ``NoisePredictor``.
        latents:          Initial latent, already scaled by ``sigmas[0]``.
                          Copied; the caller's array is left untouched.
        text_embeddings:  ``(2B, L, D)`` uncond-then-cond embeddings.
        sigmas:           Run schedule from ``scheduler.get_sigmas``.
        guidance_scale:   CFG weight, fixed for the whole run.
        logger:           Logger for step diagnostics.
    """

    def __init__(
        self,
        scheduler: LMSDiscreteScheduler,
        noise_predictor: NoisePredictor,
        latents: np.ndarray,
        text_embeddings: np.ndarray,
        sigmas: np.ndarray,
        guidance_scale: float = 7.5,
        logger: Optional[LoggerLike] = None,
    ):
        if guidance_scale <= 0:
            raise ValueError(
                f"guidance_scale must be positive, got {guidance_scale}")
        if len(sigmas) < 2:
            raise ValueError("Run schedule needs at least one step")
        latents = np.array(latents, dtype=np.float32)
        if text_embeddings.shape[0] != 2 * latents.shape[0]:
            raise ValueError(
                f"Expected {2 * latents.shape[0]} text embeddings "
                f"(uncond + cond per latent), got {text_embeddings.shape[0]}")

        self.scheduler = scheduler
        self.noise_predictor = noise_predictor
        self.latents = latents
        self.text_embeddings = text_embeddings
        self.sigmas = sigmas
        self.guidance_scale = float(guidance_scale)
        self.logger = _resolve_logger(logger)

        self.derivatives = DerivativeHistory(scheduler.max_order)
        self.state = RunState.INIT
        self.step_index = 0
        self.last_timestep: int | None = None

    @property
    def num_steps(self) -> int:
        return len(self.sigmas) - 1

    @property
    def done(self) -> bool:
        return self.state is RunState.DONE

    def _predict_noise(self, sigma: float) -> np.ndarray:
        model_input = self.scheduler.scale_model_input(self.latents, sigma)
        batch = GuidanceBatch.duplicate(model_input).stack()
        timestep = self.scheduler.sigma_to_timestep(sigma)
        self.last_timestep = timestep

        noise_pred = np.asarray(
            self.noise_predictor.infer(timestep, batch, self.text_embeddings),
            dtype=np.float32)
        if noise_pred.shape != batch.shape:
            raise ValueError(
                f"Noise predictor returned shape {noise_pred.shape}, "
                f"expected {batch.shape}")

        halves = GuidanceBatch.split(noise_pred)
        return apply_guidance(halves.uncond, halves.cond, self.guidance_scale)

    def step(self) -> np.ndarray:
        """Advance by one step and return the (in-place updated) latent."""
        if self.state in (RunState.DONE, RunState.FAILED):
            raise RuntimeError(f"Cannot step a run in state {self.state.value}")
        self.state = RunState.STEPPING
        i = self.step_index
        sigma = float(self.sigmas[i])

        try:
            if sigma == 0.0:
                raise RuntimeError(f"Sigma is zero at non-terminal step {i}")
            guided = self._predict_noise(sigma)
            self.scheduler.step(guided, i, self.latents, self.derivatives,
                                sigmas=self.sigmas)
        except BaseException:
            self.state = RunState.FAILED
            raise

        self.logger.debug("step %d/%d sigma=%.5f timestep=%d order=%d",
                          i + 1, self.num_steps, sigma, self.last_timestep,
                          len(self.derivatives))
        self.step_index += 1
        if self.step_index == self.num_steps:
            self.state = RunState.DONE
        return self.latents

    def run(
        self,
        callback: Optional[StepCallback] = None,
        callback_steps: int = 1,
        progress_bar: Optional[Callable] = None,
    ) -> np.ndarray:
        """Step until done and return the final latent."""
        steps = range(self.step_index, self.num_steps)
        if progress_bar is not None:
            steps = progress_bar(steps)

        for i in steps:
            self.step()
            if callback is not None and (i + 1) % callback_steps == 0:
                callback(i + 1, self.last_timestep, self.latents)
        return self.result

    @property
    def result(self) -> np.ndarray:
        if not self.done:
            raise RuntimeError(f"Run is not finished (state {self.state.value})")
        return self.latents


# ═════════════════════════════════════════════════════════════════════
#  DiffusionPipeline — base class
# ═════════════════════════════════════════════════════════════════════

class DiffusionPipeline:
    """Base class for diffusion generation pipelines.

    Subclasses should set ``self.scheduler`` and optionally
    ``self.decoder``.

    Provides:
    - ``prepare_latents`` — seeded starting noise, scaled by the first sigma.
    - ``decode_latents`` — run the decoder on denoised latents.
    - ``__call__`` — the main generation entry point (overridden by subclasses).
    """

    scheduler: LMSDiscreteScheduler
    decoder: Optional[LatentDecoder] = None
    vae_scaling_factor: float = 0.18215
    output_rgb: bool = False

    def prepare_latents(
        self,
        batch_size: int,
        num_channels: int,
        height: int,
        width: int,
        init_sigma: float,
        seed: Optional[int] = None,
    ) -> np.ndarray:
        """Create initial noise latents."""
        shape = (batch_size, num_channels, height, width)
        latents = randn_tensor(shape, seed=seed)
        latents *= np.float32(init_sigma)
        return latents

    def decode_latents(self, latents: np.ndarray) -> np.ndarray:
        """Decode latents to uint8 pixels; identity without a decoder.

        The decoder emits BGR; with ``output_rgb`` set the channels are
        swapped to RGB.
        """
        if self.decoder is None:
            return latents
        z = (latents / self.vae_scaling_factor).astype(np.float32)
        image = postprocess_image(np.asarray(self.decoder.decode(z)))
        if self.output_rgb:
            image = bgr_to_rgb(image)
        return image

    def progress_bar(self, iterable, desc: str = '', disable: bool = False):
        return tqdm(iterable, desc=desc, disable=disable)

    def __call__(self, *args, **kwargs):
        raise NotImplementedError("Subclasses must implement __call__")


# ═════════════════════════════════════════════════════════════════════
#  StableDiffusionLMSPipeline
# ═════════════════════════════════════════════════════════════════════

class StableDiffusionLMSPipeline(DiffusionPipeline):
    """Stable Diffusion latent-diffusion pipeline with LMS sampling.

    1. Pair the negative and positive prompt embeddings.
    2. Initialise seeded latent noise, scaled by the first sigma.
    3. LMS denoising with classifier-free guidance (``SamplingRun``).
    4. Decode latents through the decoder, if one is configured.

    Args:
        noise_predictor:  ``NoisePredictor`` (the UNet).
        scheduler:        ``LMSDiscreteScheduler``; default SD 1.x betas.
        decoder:          ``LatentDecoder`` or None to return latents.
        guidance_scale:   Default CFG weight for runs.
        latent_channels:  Channels in latent space (4 for SD).
        latent_scale:     Spatial scale factor of the VAE (8 for SD).
        output_rgb:       Swap decoded BGR pixels to RGB.
        logger:           Logger handed to every run.
    """

    def __init__(
        self,
        noise_predictor: NoisePredictor,
        scheduler: Optional[LMSDiscreteScheduler] = None,
        decoder: Optional[LatentDecoder] = None,
        guidance_scale: float = 7.5,
        latent_channels: int = 4,
        latent_scale: int = 8,
        output_rgb: bool = False,
        logger: Optional[LoggerLike] = None,
    ):
        self.noise_predictor = noise_predictor
        self.scheduler = scheduler or LMSDiscreteScheduler()
        self.decoder = decoder
        self.guidance_scale = guidance_scale
        self.latent_channels = latent_channels
        self.latent_scale = latent_scale
        self.output_rgb = output_rgb
        self.logger = _resolve_logger(logger)

    @staticmethod
    def pair_text_embeddings(prompt_embeds: np.ndarray,
                             negative_prompt_embeds: np.ndarray) -> np.ndarray:
        """Stack ``(B, L, D)`` embeddings into ``(2B, L, D)``, uncond first."""
        if prompt_embeds.ndim != 3:
            raise ValueError(
                f"prompt_embeds must be (B, L, D), got {prompt_embeds.shape}")
        if negative_prompt_embeds.shape != prompt_embeds.shape:
            raise ValueError(
                f"negative_prompt_embeds shape {negative_prompt_embeds.shape} "
                f"does not match prompt_embeds {prompt_embeds.shape}")
        return GuidanceBatch(uncond=negative_prompt_embeds,
                             cond=prompt_embeds).stack().astype(np.float32)

    def denoise(
        self,
        latents: np.ndarray,
        text_embeddings: np.ndarray,
        num_inference_steps: int = 20,
        guidance_scale: Optional[float] = None,
        callback: Optional[StepCallback] = None,
        callback_steps: int = 1,
        show_progress: bool = True,
    ) -> np.ndarray:
        """Run the LMS loop on pre-scaled ``latents`` and return the result."""
        sigmas = self.scheduler.get_sigmas(num_inference_steps)
        run = SamplingRun(
            self.scheduler, self.noise_predictor, latents, text_embeddings,
            sigmas,
            guidance_scale=(self.guidance_scale if guidance_scale is None
                            else guidance_scale),
            logger=self.logger)

        self.logger.info("Sampling %d LMS steps (guidance %.2f)",
                         run.num_steps, run.guidance_scale)
        bar = functools.partial(self.progress_bar, desc='LMS',
                                disable=not show_progress)
        result = run.run(callback=callback, callback_steps=callback_steps,
                         progress_bar=bar)
        self.logger.info("Sampling finished")
        return result

    def __call__(
        self,
        prompt_embeds: Optional[np.ndarray] = None,
        negative_prompt_embeds: Optional[np.ndarray] = None,
        height: int = 512,
        width: int = 512,
        num_inference_steps: int = 20,
        guidance_scale: Optional[float] = None,
        seeds: Optional[Sequence[Optional[int]]] = None,
        num_images: int = 1,
        callback: Optional[StepCallback] = None,
        callback_steps: int = 1,
        show_progress: bool = True,
    ) -> list[np.ndarray]:
        """Generate ``num_images`` images (or latents without a decoder).

        Each image gets its own seeded latent and its own ``SamplingRun``.

        Returns:
            One ``(1, H, W, 3)`` uint8 array per image when a decoder is
            set, else one ``(1, C, H/8, W/8)`` float32 latent per image.
        """
        if prompt_embeds is None or negative_prompt_embeds is None:
            raise ValueError("prompt_embeds and negative_prompt_embeds are "
                             "required")
        if num_images < 1:
            raise ValueError(f"num_images must be >= 1, got {num_images}")
        if seeds is None:
            seeds = [None] * num_images
        if len(seeds) < num_images:
            raise ValueError(
                f"Need {num_images} seeds, got {len(seeds)}")

        text_embeddings = self.pair_text_embeddings(prompt_embeds,
                                                    negative_prompt_embeds)
        init_sigma = float(self.scheduler.get_sigmas(num_inference_steps)[0])
        lH = height // self.latent_scale
        lW = width // self.latent_scale

        outputs = []
        for n in range(num_images):
            latents = self.prepare_latents(
                prompt_embeds.shape[0], self.latent_channels, lH, lW,
                init_sigma, seed=seeds[n])
            sample = self.denoise(
                latents, text_embeddings, num_inference_steps,
                guidance_scale=guidance_scale, callback=callback,
                callback_steps=callback_steps, show_progress=show_progress)
            outputs.append(self.decode_latents(sample))
        return outputs


# ═════════════════════════════════════════════════════════════════════
#  Exports
# ═════════════════════════════════════════════════════════════════════

__all__ = [
    'NoisePredictor',
    'LatentDecoder',
    'RunState',
    'SamplingRun',
    'DiffusionPipeline',
    'StableDiffusionLMSPipeline',
]
