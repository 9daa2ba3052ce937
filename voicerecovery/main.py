#!/usr/bin/env python3
"""
Voice Recovery DBus Service

Exposes the recording arbitrator, the synthesis queue and the error engine
to desktop clients: recording control, speech output, toast notifications
and recovery plans.
"""

import asyncio
import json
import signal
import sys
from functools import partial
from typing import Optional

from dbus_next import BusType
from dbus_next.aio import MessageBus
from dbus_next.service import ServiceInterface, method, signal as dbus_signal

from .asr import HybridASR
from .classifier import ClassifiedError
from .config import settings
from .const import ErrorKind, RecognitionPreference, SynthesisPriority
from .engine import ErrorEngine
from .errors import AlreadyRecording, MicrophoneAccessError, NoActiveSession, NoASRAvailable
from .logging import root_logger
from .notifications import ToastNotification
from .recovery import RecoveryPlan
from .settings import JsonFileStorage
from .state import RecordingState
from .transcription_client import TranscriptionClient
from .tts import SynthesisQueue

logger = root_logger.getChild(__name__)


class VoiceRecoveryInterface(ServiceInterface):
    """DBus interface for recording, synthesis and error recovery."""

    def __init__(self, engine: ErrorEngine, arbitrator: HybridASR, synthesis: SynthesisQueue):
        super().__init__("com.voicerecovery.Interface")
        self.engine = engine
        self.arbitrator = arbitrator
        self.synthesis = synthesis
        self.arbitrator.add_state_listener(self._on_state_change)
        self._unsubscribe = [
            self.engine.dispatcher.subscribe(self._on_toast),
            self.engine.on_recovery(self._on_recovery),
        ]
        logger.info("VoiceRecoveryInterface initialized")

    def close(self):
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        self.arbitrator.remove_state_listener(self._on_state_change)

    def _on_state_change(self, old_state: RecordingState, new_state: RecordingState) -> None:
        logger.debug("Recording state %s -> %s", old_state.name, new_state.name)
        self.RecordingStateChanged(new_state.name.lower())

    def _on_toast(self, toast: ToastNotification) -> None:
        self.ToastEmitted(json.dumps(toast.to_payload()))

    def _on_recovery(self, error: ClassifiedError, plan: RecoveryPlan) -> None:
        self.RecoveryPlanReady(error.id, plan.model_dump_json())

    @method()
    async def StartRecording(self) -> "s":  # noqa: F821
        """Start a recording session."""
        try:
            await self.arbitrator.start_recording()
        except AlreadyRecording:
            logger.warning("Recording already in progress")
            return "already_recording"
        except NoASRAvailable:
            logger.warning("No speech recognition method available")
            return "no_asr_available"
        except MicrophoneAccessError as e:
            logger.error(f"Failed to start recording: {e}")
            return "recording_failed"
        logger.info("Started voice recording")
        return "recording_started"

    @method()
    async def StopRecording(self) -> "s":  # noqa: F821
        """Stop the session and return its transcript, empty on failure."""
        try:
            return await self.arbitrator.stop_recording()
        except NoActiveSession:
            logger.warning("No recording in progress")
            return ""
        except Exception as e:
            # already classified and surfaced as a toast by the arbitrator
            logger.error(f"Recording failed: {e}")
            return ""

    @method()
    def GetRecordingState(self) -> "s":  # noqa: F821
        """Get current recording state."""
        return self.arbitrator.current_state.name.lower()

    @method()
    def GetAudioLevel(self) -> "d":  # noqa: F821
        """Microphone input level between 0 and 1, 0 when not recording."""
        return self.arbitrator.audio_level()

    @method()
    def SetPreferredMethod(self, method: "s") -> "b":  # noqa: F821
        """Prefer "local", "remote" or "auto" recognition for the next session."""
        try:
            self.arbitrator.set_preferred_method(method)
        except ValueError:
            logger.warning("Unknown recognition method %r", method)
            return False
        return True

    @method()
    async def Speak(self, text: "s", priority: "s") -> "b":  # noqa: F821
        """Speak ``text``; returns False when it was only delivered as text."""
        try:
            priority = SynthesisPriority(priority or SynthesisPriority.NORMAL)
        except ValueError:
            logger.warning("Unknown synthesis priority %r, using normal", priority)
            priority = SynthesisPriority.NORMAL
        outcome = await self.synthesis.synthesize(text, priority)
        return outcome.spoken

    @method()
    def GetMetrics(self) -> "s":  # noqa: F821
        """Error, recognition and synthesis metrics as JSON."""
        payload = {
            "errors": self.engine.metrics().model_dump(mode="json"),
            "recognition": {
                method.value: perf.model_dump(mode="json") for method, perf in self.arbitrator.performance().items()
            },
            "recommended_method": self.arbitrator.recommended_method().value,
            "synthesis": self.synthesis.metrics().model_dump(mode="json"),
        }
        return json.dumps(payload)

    @method()
    def ClearErrors(self, kind: "s") -> "b":  # noqa: F821
        """Clear the error log, optionally only one kind ("" clears everything)."""
        if not kind:
            self.engine.clear_errors()
            return True
        try:
            self.engine.clear_errors(ErrorKind(kind))
        except ValueError:
            logger.warning("Unknown error kind %r", kind)
            return False
        return True

    @method()
    def DismissToast(self, toast_id: "s", permanently: "b") -> "b":  # noqa: F821
        """Dismiss a toast; ``permanently`` mutes its type and title."""
        if permanently:
            return self.engine.dispatcher.dismiss_permanently(toast_id)
        return self.engine.dispatcher.dismiss(toast_id)

    @dbus_signal()
    def RecordingStateChanged(self, state: "s") -> "s":  # noqa: F821
        """Signal emitted when the recording state changes."""
        return state

    @dbus_signal()
    def ToastEmitted(self, payload: "s") -> "s":  # noqa: F821
        """Signal carrying a JSON toast for the rendering layer."""
        return payload

    @dbus_signal()
    def RecoveryPlanReady(self, error_id: "s", plan: "s") -> "ss":  # noqa: F821
        """Signal carrying the recovery plan built for an error."""
        return [error_id, plan]


def _build_capture():
    # PyAudio is an optional extra; without it only the local recognizer can record
    try:
        from .audio.recorder import MicrophoneCapture
    except ImportError:
        logger.warning("Audio capture unavailable, install the 'audio' extra for the transcription fallback")
        return None
    return MicrophoneCapture(device_name=settings.RECORDING_DEVICE if settings.RECORDING_DEVICE != "default" else None)


class VoiceRecoveryService:
    """Main DBus service class."""

    def __init__(self):
        self.bus: Optional[MessageBus] = None
        self.interface: Optional[VoiceRecoveryInterface] = None
        self.engine: Optional[ErrorEngine] = None
        self.transcriber: Optional[TranscriptionClient] = None
        self._capture = None
        self._shutdown_event = asyncio.Event()

    def build(self) -> VoiceRecoveryInterface:
        storage = JsonFileStorage(settings.SETTINGS_PATH)
        self.engine = ErrorEngine.create(storage=storage)
        self.transcriber = TranscriptionClient(
            settings.TRANSCRIPTION_BASE_URL, connect_timeout=settings.TRANSCRIPTION_CONNECT_TIMEOUT
        )
        self.engine.register_action("retry_connection", lambda error, step: self.transcriber.aclose())
        self._capture = _build_capture()
        arbitrator = HybridASR(
            capture=self._capture,
            transcriber=self.transcriber,
            preferred_method=RecognitionPreference(settings.ASR_PREFERRED_METHOD),
            reporter=self.engine.report_nowait,
        )
        synthesis = SynthesisQueue(storage=storage, reporter=self.engine.report_nowait)
        self.interface = VoiceRecoveryInterface(self.engine, arbitrator, synthesis)
        return self.interface

    async def start(self) -> None:
        """Start the DBus service."""
        bus_type = BusType.SYSTEM if settings.DBUS_BUS == "system" else BusType.SESSION
        self.bus = await MessageBus(bus_type=bus_type).connect()

        interface = self.build()
        self.bus.export(settings.DBUS_PATH, interface)
        await self.bus.request_name(settings.DBUS_NAME)

        logger.info("Voice Recovery DBus service started successfully")
        logger.info("Service: %s", settings.DBUS_NAME)
        logger.info("Object path: %s", settings.DBUS_PATH)
        logger.info("Interface: %s", interface.name)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, partial(self._signal_handler, sig))

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the DBus service."""
        try:
            if self.interface:
                self.interface.arbitrator.dispose()
                self.interface.synthesis.dispose()
                self.interface.close()
            if self.transcriber:
                await self.transcriber.aclose()
            if self._capture is not None:
                self._capture.close()
            if self.bus:
                self.bus.disconnect()
        except Exception as e:
            logger.debug(f"Error stopping DBus service: {e}")
        finally:
            if self.engine:
                self.engine.dispose()
            logger.info("Voice Recovery DBus service stopped")

    def _signal_handler(self, signum: int) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down...")
        self._shutdown_event.set()


async def main() -> None:
    """Main entry point for the DBus service."""
    service = VoiceRecoveryService()

    try:
        await service.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception:
        logger.exception("Service error:")
    finally:
        await service.stop()


def server() -> None:
    """CLI entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Service interrupted")
    except Exception as e:
        logger.error(f"CLI error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    server()
