"""Shared synthetic-signal fixtures."""

import numpy as np
import pytest

from deckscope.core.decoder import SampleBlock

TEST_SR = 44100
BLOCK = 1024


def make_burst_blocks(
    n_blocks: int,
    period: int,
    offset: int = 0,
    burst_amp: float = 0.8,
    noise: float = 0.0,
    freq: float = 1000.0,
    sr: int = TEST_SR,
    block_size: int = BLOCK,
    seed: int = 0,
):
    """
    Mono blocks that are silent (or low noise) except for a sine burst
    filling every block whose index is ``offset`` mod ``period``.
    """
    rng = np.random.default_rng(seed)
    t = np.arange(block_size) / sr
    burst = (burst_amp * np.sin(2 * np.pi * freq * t)).astype(np.float32)
    blocks = []
    for i in range(n_blocks):
        x = np.zeros(block_size, dtype=np.float32)
        if noise > 0:
            x += (noise * rng.standard_normal(block_size)).astype(np.float32)
        if i >= offset and (i - offset) % period == 0:
            x = x + burst
        blocks.append(SampleBlock(samples=x[np.newaxis, :], sample_rate=sr))
    return blocks


@pytest.fixture
def burst_blocks():
    """Bursts every 22 blocks (~0.51 s) starting at block 21, silence between."""
    return make_burst_blocks(n_blocks=22 * 12, period=22, offset=21)


@pytest.fixture
def click_signal():
    """
    30 s mono click track: a 1 kHz burst exactly one block long every
    21 blocks (21 * 1024 / 44100 s ≈ 123.05 BPM).
    """
    period = 21
    n_blocks = 5 + period * 30
    blocks = make_burst_blocks(n_blocks=n_blocks, period=period, offset=5)
    y = np.concatenate([b.samples[0] for b in blocks])
    bpm = 60.0 / (period * BLOCK / TEST_SR)
    return y, TEST_SR, bpm


@pytest.fixture
def silent_block():
    return SampleBlock(samples=np.zeros((2, BLOCK), dtype=np.float32), sample_rate=TEST_SR)


@pytest.fixture
def e4_sine():
    """E4 (329.63 Hz) sine, 16 blocks long."""
    t = np.arange(BLOCK * 4 * 16) / TEST_SR
    return (0.5 * np.sin(2 * np.pi * 329.63 * t)).astype(np.float32), TEST_SR
