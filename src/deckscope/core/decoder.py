"""
Decoded PCM access.

Wraps a decoded audio file (or an in-memory signal) as a sequence of
fixed-size :class:`SampleBlock` objects, the unit every analysis stage
consumes.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import librosa
import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SampleBlock:
    """Fixed-size multi-channel float buffer plus its sample rate."""

    samples: np.ndarray    # shape (n_channels, n_frames), float32
    sample_rate: int

    def __post_init__(self):
        # NaN / inf samples count as silence
        if self.samples.size and not np.all(np.isfinite(self.samples)):
            logger.warning("Non-finite samples in block replaced by zeros")
            cleaned = np.nan_to_num(self.samples, nan=0.0, posinf=0.0, neginf=0.0)
            object.__setattr__(self, "samples", cleaned)

    @property
    def n_channels(self) -> int:
        return int(self.samples.shape[0])

    @property
    def n_frames(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        """Playback duration of the block in seconds."""
        if self.sample_rate <= 0:
            return 0.0
        return self.n_frames / self.sample_rate

    def mono(self) -> np.ndarray:
        """Downmix to mono by averaging the channels."""
        if self.n_channels == 0 or self.n_frames == 0:
            return np.zeros(0, dtype=np.float32)
        if self.n_channels == 1:
            return self.samples[0]
        return (self.samples[0] + self.samples[1]) / 2.0

    @classmethod
    def from_array(cls, data, sample_rate: int) -> "SampleBlock":
        """
        Build a block from loosely-shaped input.

        Accepts 1-D mono data, ``(channels, frames)`` or ``(frames, channels)``
        arrays.  Anything that cannot be interpreted as 1–2 channels of
        finite floats becomes an empty block rather than an error.
        """
        try:
            arr = np.asarray(data, dtype=np.float32)
        except (TypeError, ValueError):
            logger.warning("Unreadable sample block replaced by an empty block")
            return cls.empty(sample_rate)

        if arr.ndim == 1:
            arr = arr[np.newaxis, :]
        elif arr.ndim == 2:
            # Interleaved (frames, channels) layout from audio callbacks
            if arr.shape[0] > 2 and arr.shape[1] <= 2:
                arr = arr.T
            arr = arr[:2]
        else:
            logger.warning("Sample block with %d dimensions treated as empty", arr.ndim)
            return cls.empty(sample_rate)

        arr = np.nan_to_num(arr, nan=0.0, posinf=0.0, neginf=0.0)
        return cls(samples=np.ascontiguousarray(arr), sample_rate=int(sample_rate))

    @classmethod
    def empty(cls, sample_rate: int, n_channels: int = 1) -> "SampleBlock":
        return cls(
            samples=np.zeros((n_channels, 0), dtype=np.float32),
            sample_rate=int(sample_rate),
        )


class TrackDecoder:
    """
    Sequential block reader over a decoded track.

    The whole file is decoded up front with librosa (channels and native
    sample rate preserved); blocks are then served either one at a time
    with :meth:`read_block` or all at once with :meth:`full_decode`.
    """

    def __init__(self, samples: np.ndarray, sample_rate: int, block_size: int = 1024):
        """
        Args:
            samples: Audio as ``(channels, frames)`` or 1-D mono.
            sample_rate: Sample rate in Hz.
            block_size: Frames per emitted block.
        """
        if samples.ndim == 1:
            samples = samples[np.newaxis, :]
        self.samples = np.nan_to_num(
            np.asarray(samples[:2], dtype=np.float32), nan=0.0, posinf=0.0, neginf=0.0
        )
        self.sample_rate = int(sample_rate)
        self.block_size = max(1, int(block_size))
        self._position = 0

    @classmethod
    def from_file(
        cls,
        audio_path: Union[str, Path],
        block_size: int = 1024,
        sr: Optional[int] = None,
    ) -> "TrackDecoder":
        """
        Decode an audio file.

        Args:
            audio_path: Path to audio file (wav, mp3, flac).
            block_size: Frames per emitted block.
            sr: Target sample rate. None preserves the original.

        Raises:
            FileNotFoundError: If *audio_path* does not exist.
        """
        audio_path = Path(audio_path)
        if not audio_path.exists():
            raise FileNotFoundError(f"Audio file not found: {audio_path}")

        y, sr_out = librosa.load(audio_path, sr=sr, mono=False)
        logger.info(
            "Decoded %s | sr=%d | channels=%d | duration=%.2fs",
            audio_path.name, sr_out, 1 if y.ndim == 1 else y.shape[0],
            y.shape[-1] / sr_out,
        )
        return cls(y, sr_out, block_size=block_size)

    @classmethod
    def from_array(
        cls,
        samples: np.ndarray,
        sample_rate: int,
        block_size: int = 1024,
    ) -> "TrackDecoder":
        return cls(np.asarray(samples), sample_rate, block_size=block_size)

    @property
    def n_channels(self) -> int:
        return int(self.samples.shape[0])

    @property
    def n_frames(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        return self.n_frames / self.sample_rate if self.sample_rate > 0 else 0.0

    def rewind(self) -> None:
        self._position = 0

    def read_block(self) -> Optional[SampleBlock]:
        """Return the next block, or None once the track is exhausted."""
        if self._position >= self.n_frames:
            return None
        end = min(self._position + self.block_size, self.n_frames)
        block = SampleBlock(
            samples=self.samples[:, self._position:end],
            sample_rate=self.sample_rate,
        )
        self._position = end
        return block

    def full_decode(self) -> List[SampleBlock]:
        """Return every block of the track, independent of the read cursor."""
        return [
            SampleBlock(
                samples=self.samples[:, start:start + self.block_size],
                sample_rate=self.sample_rate,
            )
            for start in range(0, self.n_frames, self.block_size)
        ]
