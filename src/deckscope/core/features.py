"""
Per-block feature extraction.

Three extractors feed both analysis regimes:

* :func:`block_energy` — RMS/peak blend of a (downmixed) block.
* :class:`SpectralFeatureExtractor` — coarse band magnitudes, spectral flux
  and high-frequency content (HFC).
* :class:`ChromagramBuilder` — 12-bin pitch-class energy via single-lag
  autocorrelation, accumulated over a whole track.

The band split is a time-domain split of the windowed block into equal
contiguous segments, not FFT bins; it is cheap enough for the real-time path.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Union

import numpy as np
from scipy import signal as scipy_signal

from deckscope.core.decoder import SampleBlock

RMS_WEIGHT = 0.7
PEAK_WEIGHT = 0.3

A4_HZ = 440.0
PITCH_CLASS_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]


@lru_cache(maxsize=16)
def hann_window(n: int) -> np.ndarray:
    """Symmetric Hann window of length *n* (cached per length)."""
    if n <= 0:
        return np.zeros(0)
    return scipy_signal.get_window("hann", n, fftbins=False)


def _as_mono(data: Union[SampleBlock, np.ndarray]) -> np.ndarray:
    if isinstance(data, SampleBlock):
        return data.mono()
    arr = np.asarray(data, dtype=np.float64)
    if arr.ndim == 2:
        arr = arr[0] if arr.shape[0] == 1 else (arr[0] + arr[1]) / 2.0
    return np.nan_to_num(arr.ravel(), nan=0.0, posinf=0.0, neginf=0.0)


def blend_level(samples: np.ndarray) -> float:
    """Return ``0.7 * RMS + 0.3 * peak`` of a 1-D signal (0 when empty)."""
    if samples.size == 0:
        return 0.0
    x = samples.astype(np.float64)
    rms = float(np.sqrt(np.mean(x * x)))
    peak = float(np.max(np.abs(x)))
    return RMS_WEIGHT * rms + PEAK_WEIGHT * peak


def block_energy(block: Union[SampleBlock, np.ndarray]) -> float:
    """
    Scalar energy of a block.

    Stereo input is downmixed to mono by averaging before the RMS/peak
    blend. Zero-frame input yields 0.
    """
    return blend_level(_as_mono(block))


# ---------------------------------------------------------------------------
# Spectral features
# ---------------------------------------------------------------------------

@dataclass
class SpectralFrame:
    """Band magnitudes of one block plus the flux/HFC derived from them."""

    magnitudes: np.ndarray   # (n_bands,)
    flux: float
    hfc: float


class SpectralFeatureExtractor:
    """
    Computes band magnitudes, spectral flux and HFC for consecutive blocks.

    Only the previous frame's magnitudes are kept; they are overwritten on
    every call.
    """

    def __init__(self, n_bands: int = 32):
        self.n_bands = max(1, int(n_bands))
        self._previous: Optional[np.ndarray] = None

    def reset(self) -> None:
        self._previous = None

    def band_magnitudes(self, mono: np.ndarray) -> np.ndarray:
        """RMS magnitude of each of *n_bands* equal slices of the windowed block."""
        n = len(mono)
        mags = np.zeros(self.n_bands)
        if n == 0:
            return mags
        windowed = mono * hann_window(n)
        band_len = n // self.n_bands
        if band_len == 0:
            return mags
        bands = windowed[: band_len * self.n_bands].reshape(self.n_bands, band_len)
        return np.sqrt(np.mean(bands * bands, axis=1))

    def process(self, block: Union[SampleBlock, np.ndarray]) -> SpectralFrame:
        """
        Extract the spectral frame of *block* and advance the flux memory.

        Returns:
            SpectralFrame with magnitudes, flux and HFC.
        """
        mags = self.band_magnitudes(_as_mono(block))

        if self._previous is None or len(self._previous) != len(mags):
            # First frame: nothing to diff against
            flux = float(np.sum(mags))
        else:
            flux = float(np.sum(np.maximum(0.0, mags - self._previous))) / self.n_bands

        idx = np.arange(self.n_bands, dtype=np.float64)
        norm = (self.n_bands - 1) ** 2
        hfc = float(np.sum(mags * idx * idx)) / norm if norm > 0 else 0.0

        self._previous = mags
        return SpectralFrame(magnitudes=mags, flux=flux, hfc=hfc)


# ---------------------------------------------------------------------------
# Chromagram
# ---------------------------------------------------------------------------

def pitch_class_frequency(pitch_class: int) -> float:
    """Frequency in Hz of *pitch_class* (0 = C) in the octave starting at middle C."""
    return A4_HZ * 2.0 ** ((pitch_class - 9) / 12.0)


def block_chroma(
    block: Union[SampleBlock, np.ndarray],
    sample_rate: Optional[int] = None,
) -> np.ndarray:
    """
    Pitch-class energy profile of a single block.

    For each pitch class, the autocorrelation of the Hann-windowed block at
    the lag of one period of that pitch is taken as its energy.  Lags
    outside ``(0, window/2)`` contribute nothing.

    Args:
        block: Sample block or mono array.
        sample_rate: Required when *block* is a bare array.

    Returns:
        Array of shape (12,), non-negative.
    """
    if isinstance(block, SampleBlock):
        sample_rate = block.sample_rate
    mono = _as_mono(block)
    chroma = np.zeros(12)
    n = len(mono)
    if n == 0 or not sample_rate or sample_rate <= 0:
        return chroma

    windowed = mono * hann_window(n)
    for pc in range(12):
        lag = int(sample_rate / pitch_class_frequency(pc))
        if lag <= 0 or lag >= n // 2:
            continue
        energy = float(np.dot(windowed[: n - lag], windowed[lag:])) / n
        chroma[pc] = abs(energy)
    return chroma


class ChromagramBuilder:
    """Accumulates block chroma across a track."""

    def __init__(self):
        self.total = np.zeros(12)
        self.n_blocks = 0

    def reset(self) -> None:
        self.total = np.zeros(12)
        self.n_blocks = 0

    def add(self, block: Union[SampleBlock, np.ndarray], sample_rate: Optional[int] = None) -> np.ndarray:
        """Add one block's chroma to the accumulator and return it."""
        chroma = block_chroma(block, sample_rate)
        self.total += chroma
        self.n_blocks += 1
        return chroma

    def normalized(self) -> np.ndarray:
        """Accumulated chroma scaled to sum 1 (all zeros when silent)."""
        s = float(np.sum(self.total))
        if s <= 0.0 or not np.isfinite(s):
            return np.zeros(12)
        return self.total / s
