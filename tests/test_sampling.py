"""Tests for classifier-free guidance, the SamplingRun state machine, and
the StableDiffusionLMSPipeline."""
import logging

import numpy as np
import pytest

from lmsdiffusion.diffusion import (
    GuidanceBatch,
    LMSDiscreteScheduler,
    RunState,
    SamplingRun,
    StableDiffusionLMSPipeline,
    apply_guidance,
    bgr_to_rgb,
    classifier_free_guidance,
    postprocess_image,
    randn_tensor,
)

LATENT_SHAPE = (1, 4, 8, 8)


class ZeroPredictor:
    def infer(self, timestep, batched_latent, text_embeddings):
        return np.zeros_like(batched_latent)


class ConstantPredictor:
    def __init__(self, value):
        self.value = value

    def infer(self, timestep, batched_latent, text_embeddings):
        return np.full_like(batched_latent, self.value)


class RecordingPredictor:
    """Deterministic predictor that remembers every call."""

    def __init__(self):
        self.calls = []

    def infer(self, timestep, batched_latent, text_embeddings):
        self.calls.append((timestep, batched_latent.copy(),
                           text_embeddings.shape))
        out = 0.1 * batched_latent + np.float32(timestep / 1000.0)
        out[1:] += 0.05
        return out


class FailingPredictor:
    def infer(self, timestep, batched_latent, text_embeddings):
        raise RuntimeError('device lost')


class WrongShapePredictor:
    def infer(self, timestep, batched_latent, text_embeddings):
        return np.zeros(LATENT_SHAPE, dtype=np.float32)


class RecordingDecoder:
    def __init__(self):
        self.seen = None

    def decode(self, latents):
        self.seen = latents.copy()
        return np.zeros((1, 64, 64, 3), dtype=np.float32)


class GradientDecoder:
    """Emits -1, 0 and 1 in the B, G and R channels."""

    def decode(self, latents):
        image = np.empty((1, 64, 64, 3), dtype=np.float32)
        image[...] = [-1.0, 0.0, 1.0]
        return image


def _embeddings(batch=1, length=4, dim=8):
    return np.zeros((2 * batch, length, dim), dtype=np.float32)


def _run(predictor, steps, latents=None, scheduler=None, **kwargs):
    scheduler = scheduler or LMSDiscreteScheduler()
    sigmas = scheduler.get_sigmas(steps)
    if latents is None:
        latents = randn_tensor(LATENT_SHAPE, seed=0) * np.float32(sigmas[0])
    return SamplingRun(scheduler, predictor, latents, _embeddings(), sigmas,
                       **kwargs)


# ── Guidance ──

def test_guidance_scale_zero_and_one_are_exact():
    uncond = randn_tensor(LATENT_SHAPE, seed=1)
    cond = randn_tensor(LATENT_SHAPE, seed=2)
    assert np.array_equal(apply_guidance(uncond, cond, 0.0), uncond)
    assert np.array_equal(apply_guidance(uncond, cond, 1.0), cond)


def test_guidance_formula():
    uncond = np.array([1.0, -2.0, 0.5], dtype=np.float32)
    cond = np.array([2.0, -1.0, 0.5], dtype=np.float32)
    guided = apply_guidance(uncond, cond, 7.5)
    assert guided.dtype == np.float32
    np.testing.assert_allclose(guided, [8.5, 5.5, 0.5], rtol=1e-6)


def test_guidance_is_pure():
    uncond = randn_tensor(LATENT_SHAPE, seed=1)
    cond = randn_tensor(LATENT_SHAPE, seed=2)
    before = (uncond.copy(), cond.copy())
    apply_guidance(uncond, cond, 7.5)
    assert np.array_equal(uncond, before[0])
    assert np.array_equal(cond, before[1])


def test_guidance_shape_mismatch():
    with pytest.raises(ValueError):
        apply_guidance(np.zeros((1, 4)), np.zeros((1, 5)), 7.5)


def test_guidance_batch_halves():
    batched = np.arange(8, dtype=np.float32).reshape(4, 2)
    halves = GuidanceBatch.split(batched)
    assert np.array_equal(halves.uncond, batched[:2])
    assert np.array_equal(halves.cond, batched[2:])
    assert np.array_equal(halves.stack(), batched)
    with pytest.raises(ValueError):
        GuidanceBatch.split(np.zeros((3, 2)))

    guided = classifier_free_guidance(batched, 1.0)
    assert np.array_equal(guided, batched[2:])


# ── SamplingRun ──

def test_zero_prediction_leaves_zero_latent():
    latents = np.zeros(LATENT_SHAPE, dtype=np.float32)
    run = _run(ZeroPredictor(), 1, latents=latents, guidance_scale=7.5)
    result = run.run()
    assert result.shape == LATENT_SHAPE
    assert np.all(result == 0.0)
    assert run.state is RunState.DONE


@pytest.mark.parametrize('steps', [1, 4, 20])
def test_history_never_exceeds_four(steps):
    run = _run(RecordingPredictor(), steps)
    assert run.state is RunState.INIT
    for i in range(steps):
        run.step()
        assert len(run.derivatives) == min(i + 1, 4)
    assert run.done
    assert run.step_index == steps


def test_runs_are_deterministic():
    first = _run(RecordingPredictor(), 12).run()
    second = _run(RecordingPredictor(), 12).run()
    assert np.array_equal(first, second)


def test_predictor_inputs():
    scheduler = LMSDiscreteScheduler()
    predictor = RecordingPredictor()
    run = _run(predictor, 5, scheduler=scheduler)
    sigmas = run.sigmas
    latents_before = run.latents.copy()

    run.step()
    timestep, batch, emb_shape = predictor.calls[0]
    assert timestep == 999
    assert emb_shape == (2, 4, 8)
    assert batch.shape == (2,) + LATENT_SHAPE[1:]
    assert np.array_equal(batch[0], batch[1])
    expected = latents_before / np.sqrt(sigmas[0] ** 2 + 1)
    np.testing.assert_allclose(batch[:1], expected, rtol=1e-5)

    run.run()
    timesteps = [call[0] for call in predictor.calls]
    assert timesteps == [scheduler.sigma_to_timestep(s) for s in sigmas[:-1]]
    assert timesteps[-1] == 0


def test_constant_derivative_integrates_exactly():
    # With d = c everywhere, every LMS step moves by c * (σ_{i+1} - σ_i).
    scheduler = LMSDiscreteScheduler()
    sigmas = scheduler.get_sigmas(10)
    start = randn_tensor(LATENT_SHAPE, seed=3) * np.float32(sigmas[0])
    result = _run(ConstantPredictor(1.0), 10, latents=start,
                  scheduler=scheduler).run()
    np.testing.assert_allclose(result, start - sigmas[0], atol=5e-3)


def test_caller_latents_untouched():
    latents = randn_tensor(LATENT_SHAPE, seed=4)
    before = latents.copy()
    _run(RecordingPredictor(), 3, latents=latents).run()
    assert np.array_equal(latents, before)


def test_predictor_failure_is_terminal():
    run = _run(FailingPredictor(), 3)
    with pytest.raises(RuntimeError, match='device lost'):
        run.step()
    assert run.state is RunState.FAILED
    with pytest.raises(RuntimeError, match='failed'):
        run.step()
    with pytest.raises(RuntimeError):
        run.result


def test_predictor_output_shape_checked():
    run = _run(WrongShapePredictor(), 2)
    with pytest.raises(ValueError, match='shape'):
        run.step()
    assert run.state is RunState.FAILED


def test_done_run_rejects_steps():
    run = _run(ZeroPredictor(), 2)
    run.run()
    with pytest.raises(RuntimeError, match='done'):
        run.step()


def test_result_before_done():
    run = _run(ZeroPredictor(), 2)
    run.step()
    with pytest.raises(RuntimeError, match='not finished'):
        run.result


def test_run_argument_validation():
    scheduler = LMSDiscreteScheduler()
    sigmas = scheduler.get_sigmas(2)
    latents = np.zeros(LATENT_SHAPE, dtype=np.float32)
    with pytest.raises(ValueError):
        SamplingRun(scheduler, ZeroPredictor(), latents, _embeddings(),
                    sigmas, guidance_scale=0.0)
    with pytest.raises(ValueError):
        SamplingRun(scheduler, ZeroPredictor(), latents,
                    _embeddings(batch=2), sigmas)


def test_run_logs_steps(caplog):
    log = logging.getLogger('lmsdiffusion.tests.sampling')
    with caplog.at_level(logging.DEBUG, logger=log.name):
        _run(ZeroPredictor(), 2, logger=log).run()
    messages = [r.getMessage() for r in caplog.records if r.name == log.name]
    assert any(m.startswith('step 1/2') for m in messages)
    assert any(m.startswith('step 2/2') for m in messages)


# ── Pipeline ──

def test_pipeline_returns_latents_without_decoder():
    pipe = StableDiffusionLMSPipeline(RecordingPredictor())
    prompt = np.ones((1, 4, 8), dtype=np.float32)
    negative = np.zeros((1, 4, 8), dtype=np.float32)
    outputs = pipe(prompt, negative, height=64, width=64,
                   num_inference_steps=3, seeds=[1, 2], num_images=2,
                   show_progress=False)
    assert len(outputs) == 2
    assert outputs[0].shape == LATENT_SHAPE
    assert not np.array_equal(outputs[0], outputs[1])

    again = pipe(prompt, negative, height=64, width=64,
                 num_inference_steps=3, seeds=[1], show_progress=False)
    assert np.array_equal(again[0], outputs[0])


def test_pipeline_decodes_to_uint8():
    decoder = RecordingDecoder()
    pipe = StableDiffusionLMSPipeline(ZeroPredictor(), decoder=decoder)
    prompt = np.ones((1, 4, 8), dtype=np.float32)
    image = pipe(prompt, np.zeros_like(prompt), height=64, width=64,
                 num_inference_steps=2, seeds=[0], show_progress=False)[0]
    assert image.dtype == np.uint8
    assert image.shape == (1, 64, 64, 3)
    assert np.all(image == 127)

    sigmas = pipe.scheduler.get_sigmas(2)
    expected = randn_tensor(LATENT_SHAPE, seed=0) * np.float32(sigmas[0])
    np.testing.assert_allclose(decoder.seen, expected / 0.18215, rtol=1e-5)

    pipe.decoder = GradientDecoder()
    bgr = pipe(prompt, np.zeros_like(prompt), height=64, width=64,
               num_inference_steps=2, seeds=[0], show_progress=False)[0]
    assert bgr[0, 0, 0].tolist() == [0, 127, 255]

    rgb_pipe = StableDiffusionLMSPipeline(ZeroPredictor(),
                                          decoder=GradientDecoder(),
                                          output_rgb=True)
    rgb = rgb_pipe(prompt, np.zeros_like(prompt), height=64, width=64,
                   num_inference_steps=2, seeds=[0], show_progress=False)[0]
    assert rgb.dtype == np.uint8
    assert rgb.shape == (1, 64, 64, 3)
    assert np.array_equal(rgb, bgr[..., ::-1])
    assert rgb[0, 0, 0].tolist() == [255, 127, 0]


def test_pipeline_prompt_pairing():
    prompt = np.ones((1, 4, 8), dtype=np.float32)
    negative = np.zeros((1, 4, 8), dtype=np.float32)
    paired = StableDiffusionLMSPipeline.pair_text_embeddings(prompt, negative)
    assert paired.shape == (2, 4, 8)
    assert np.all(paired[0] == 0.0)
    assert np.all(paired[1] == 1.0)
    with pytest.raises(ValueError):
        StableDiffusionLMSPipeline.pair_text_embeddings(
            prompt, np.zeros((1, 5, 8), dtype=np.float32))


def test_pipeline_requires_embeddings():
    pipe = StableDiffusionLMSPipeline(ZeroPredictor())
    with pytest.raises(ValueError):
        pipe(np.ones((1, 4, 8), dtype=np.float32))


def test_pipeline_callback_and_guidance_override():
    predictor = RecordingPredictor()
    pipe = StableDiffusionLMSPipeline(predictor, guidance_scale=7.5)
    seen = []
    latents = pipe.prepare_latents(1, 4, 8, 8, init_sigma=2.0, seed=0)
    np.testing.assert_allclose(latents,
                               randn_tensor(LATENT_SHAPE, seed=0) * 2.0)

    pipe.denoise(latents, _embeddings(), num_inference_steps=4,
                 guidance_scale=1.0, show_progress=False,
                 callback=lambda i, t, x: seen.append((i, t, x.shape)),
                 callback_steps=2)
    assert [s[0] for s in seen] == [2, 4]
    assert seen[-1][1] == 0
    assert all(s[2] == LATENT_SHAPE for s in seen)


def test_postprocess_and_channel_swap():
    decoded = np.array([[[[-1.0, 0.0, 1.0]]]], dtype=np.float32)
    pixels = postprocess_image(decoded)
    assert pixels.dtype == np.uint8
    assert pixels.tolist() == [[[[0, 127, 255]]]]
    assert bgr_to_rgb(pixels).tolist() == [[[[255, 127, 0]]]]
    with pytest.raises(ValueError):
        bgr_to_rgb(decoded)
