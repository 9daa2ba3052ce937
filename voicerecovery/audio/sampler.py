import numpy as np


class Resampler:
    """Linear PCM16 resampler from a device's native rate to the capture rate."""

    def __init__(self, input_rate: int, target_rate: int):
        self.input_rate = input_rate
        self.target_rate = target_rate

    @staticmethod
    def resample_linear(pcm: np.ndarray, input_rate: int, target_rate: int) -> np.ndarray:
        if input_rate == target_rate or len(pcm) == 0:
            return pcm
        n_target = max(1, int(len(pcm) * target_rate / input_rate))
        x_old = np.linspace(0, 1, len(pcm))
        x_new = np.linspace(0, 1, n_target)
        resampled = np.interp(x_new, x_old, pcm.astype(np.float32))
        return resampled.astype(np.int16)

    def resample(self, in_data: bytes) -> np.ndarray:
        pcm = np.frombuffer(in_data, dtype=np.int16)
        return self.resample_linear(pcm, self.input_rate, self.target_rate)


def rms_level(pcm: np.ndarray) -> float:
    """Normalized RMS loudness of a PCM16 buffer, 0.0 (silence) to 1.0."""
    if len(pcm) == 0:
        return 0.0
    samples = pcm.astype(np.float32) / 32768.0
    return float(min(1.0, np.sqrt(np.mean(samples * samples))))
