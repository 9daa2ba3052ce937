# Copyright (c) 2024-2026 Lukasz Jachym <lukasz.jachym@gmail.com>
# SPDX-License-Identifier: GPL-3.0-or-later

import threading
from typing import Any

import lameenc
import numpy as np
import pyaudio

from ..errors import AudioSaveError, MicrophoneAccessError
from ..logging import root_logger
from .sampler import Resampler, rms_level

logger = root_logger.getChild(__name__)


class Mp3Encoder:
    def __init__(self, *, bit_rate=64, sample_rate=16000, channels=1, quality=7):
        """
        :param bit_rate: kbps
        :param quality: 2 = high, 7 = low
        """
        self.encoder = lameenc.Encoder()
        self.encoder.set_bit_rate(bit_rate)
        self.encoder.set_in_sample_rate(sample_rate)
        self.encoder.set_channels(channels)
        self.encoder.set_quality(quality)
        self._data = bytearray()

    def add(self, pcm: np.ndarray) -> None:
        self._data.extend(self.encoder.encode(pcm.tobytes()))

    def finish(self) -> bytes:
        try:
            self._data.extend(self.encoder.flush())
        except Exception as e:
            raise AudioSaveError(f"Failed to finalize recorded audio: {e}") from e
        return bytes(self._data)


class MicrophoneCapture:
    """Captures the fallback audio for a recording session through PyAudio.

    ``start`` acquires the input stream, ``stop`` ends capture and returns the
    MP3-encoded audio, ``release`` closes the stream. One instance serves one
    session at a time.
    """

    content_type = "audio/mpeg"
    filename = "recording.mp3"

    def __init__(
        self,
        device_name: str | None = None,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_size: int = 1024,
        format_type: int = pyaudio.paInt16,
    ):
        self.device_name = device_name
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_size = chunk_size
        self.format_type = format_type

        self._pyaudio = pyaudio.PyAudio()
        self._stream: pyaudio.Stream | None = None
        self._encoder: Mp3Encoder | None = None
        self._lock = threading.Lock()
        self._level = 0.0

        logger.info(f"MicrophoneCapture initialized: {sample_rate}Hz, {channels}ch, {chunk_size} chunks")

    def list_devices(self) -> list[dict[str, Any]]:
        """List available audio input devices."""
        devices = []
        for i in range(self._pyaudio.get_device_count()):
            device_info = self._pyaudio.get_device_info_by_index(i)
            if device_info["maxInputChannels"] > 0:
                devices.append(
                    {
                        "index": i,
                        "name": device_info["name"],
                        "channels": device_info["maxInputChannels"],
                        "sample_rate": device_info["defaultSampleRate"],
                    }
                )
        return devices

    def _find_device(self) -> dict[str, Any] | None:
        devices = self.list_devices()
        if not devices:
            return None
        if self.device_name:
            for device in devices:
                if device["name"] == self.device_name:
                    return device
            logger.warning("Recording device %r not found, using %r", self.device_name, devices[0]["name"])
        return devices[0]

    def is_available(self) -> bool:
        return bool(self.list_devices())

    @property
    def level(self) -> float:
        """Latest input loudness, for the recording indicator."""
        return self._level

    def start(self) -> None:
        if self._stream is not None:
            raise MicrophoneAccessError("Microphone is already in use by this session")

        device = self._find_device()
        if device is None:
            raise MicrophoneAccessError("No microphone input device available")

        device_sample_rate = int(device["sample_rate"])
        logger.debug("Capturing from %s at native rate %d Hz", device["name"], device_sample_rate)
        resampler = Resampler(input_rate=device_sample_rate, target_rate=self.sample_rate)
        encoder = Mp3Encoder(sample_rate=self.sample_rate, channels=self.channels)

        def stream_callback(in_data, frame_count, time_info, status):
            pcm = resampler.resample(in_data)
            with self._lock:
                encoder.add(pcm)
            self._level = rms_level(pcm)
            return None, pyaudio.paContinue

        try:
            self._stream = self._pyaudio.open(
                format=self.format_type,
                channels=self.channels,
                rate=device_sample_rate,
                input=True,
                input_device_index=device["index"],
                frames_per_buffer=self.chunk_size,
                stream_callback=stream_callback,
            )
        except Exception as e:
            raise MicrophoneAccessError(f"Failed to access microphone: {e}") from e
        self._encoder = encoder
        logger.info("Microphone capture started")

    def stop(self) -> bytes:
        if self._stream is None or self._encoder is None:
            return b""
        if not self._stream.is_stopped():
            self._stream.stop_stream()
        with self._lock:
            audio = self._encoder.finish()
        self._encoder = None
        self._level = 0.0
        logger.debug("Captured %d bytes of encoded audio", len(audio))
        return audio

    def release(self) -> None:
        if self._stream is None:
            return
        try:
            if self._stream.is_active():
                self._stream.stop_stream()
            self._stream.close()
        finally:
            self._stream = None
            self._encoder = None
            self._level = 0.0
            logger.info("Microphone released")

    def close(self) -> None:
        self.release()
        self._pyaudio.terminate()
