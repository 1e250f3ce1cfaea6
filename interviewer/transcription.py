from faster_whisper import WhisperModel, decode_audio
from openai import AsyncOpenAI
import numpy as np
import asyncio
import io
import logging
import re
import threading

logger = logging.getLogger(__name__)


class TranscriptionError(RuntimeError):
    pass


def _normalize_transcript_text(text: str) -> str:
    t = " ".join((text or "").split()).strip()
    if not t:
        return ""

    # Collapse repeated short words commonly produced by Whisper on trailing silence.
    word_pat = re.compile(r"\b([a-z][a-z0-9']{2,})\b(?:[\s,.;:!?-]+\1\b)+", flags=re.I)
    prev = None
    while prev != t:
        prev = t
        t = word_pat.sub(r"\1", t)
    return t.strip()


def _audio_energy(audio: np.ndarray) -> tuple[float, float]:
    if audio is None:
        return 0.0, 0.0
    arr = np.asarray(audio, dtype=np.float32).reshape(-1)
    if arr.size == 0:
        return 0.0, 0.0
    peak = float(np.max(np.abs(arr)))
    rms = float(np.sqrt(np.mean(arr * arr)))
    return rms, peak


class OpenAITranscriber:
    """Whisper over the OpenAI audio API; accepts browser webm/opus uploads as-is."""

    def __init__(self, api_key: str, *, model: str = "whisper-1", base_url: str | None = None, timeout: float = 60.0):
        self.model = model
        self.available = bool(api_key)
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout) if api_key else None

    async def transcribe(self, audio: bytes, *, language: str = "zh") -> str | None:
        if self._client is None:
            raise TranscriptionError("OpenAI transcription is not configured")
        try:
            response = await self._client.audio.transcriptions.create(
                model=self.model,
                file=("audio.webm", bytes(audio), "audio/webm"),
                language=language,
                response_format="text",
            )
        except Exception as e:
            raise TranscriptionError(str(e)) from e

        text = response if isinstance(response, str) else str(getattr(response, "text", "") or "")
        text = _normalize_transcript_text(text)
        if not text:
            return None
        logger.info("Transcribed %s bytes -> %r", len(audio), text[:80])
        return text


class LocalWhisperTranscriber:
    """faster-whisper on this machine. The model is loaded on first use."""

    def __init__(
        self,
        model_size: str = "small",
        device: str = "cpu",
        compute_type: str | None = None,
        *,
        sample_rate: int = 16000,
        beam_size: int = 1,
        min_rms: float = 0.002,
    ):
        self._lock = threading.Lock()
        self.model_size = str(model_size or "small").strip() or "small"
        device = (str(device or "cpu").strip().lower() or "cpu")
        if device in ("gpu", "cuda"):
            device = "cuda"
        if device not in ("cpu", "cuda"):
            device = "cpu"
        if compute_type is None:
            compute_type = "float16" if device == "cuda" else "int8"
        self.device = device
        self.compute_type = compute_type
        self.sample_rate = int(sample_rate)
        self.beam_size = int(max(1, min(8, int(beam_size))))
        self.min_rms = float(min_rms)
        self.model: WhisperModel | None = None
        self.available = True

    def _load_model(self) -> WhisperModel:
        if self.model is not None:
            return self.model
        logger.info(f"Loading Whisper model: {self.model_size} on {self.device} ({self.compute_type})...")
        try:
            self.model = WhisperModel(self.model_size, device=self.device, compute_type=self.compute_type)
        except Exception as e:
            if self.device != "cpu":
                logger.warning(f"Failed to load Whisper on {self.device}; falling back to CPU: {e}")
                self.model = WhisperModel(self.model_size, device="cpu", compute_type="int8")
                self.device = "cpu"
                self.compute_type = "int8"
            else:
                raise
        return self.model

    def _transcribe_sync(self, audio: bytes, language: str) -> str | None:
        try:
            samples = decode_audio(io.BytesIO(bytes(audio)), sampling_rate=self.sample_rate)
        except Exception as e:
            raise TranscriptionError(f"Could not decode audio: {e}") from e

        rms, peak = _audio_energy(samples)
        if rms < self.min_rms:
            logger.debug("Skipping near-silent audio (rms=%.4f peak=%.4f)", rms, peak)
            return None

        with self._lock:
            model = self._load_model()
            segments, _info = model.transcribe(
                samples,
                language=language or None,
                beam_size=self.beam_size,
                vad_filter=True,
                condition_on_previous_text=False,
            )
            text = " ".join(seg.text.strip() for seg in segments if getattr(seg, "text", ""))
        return _normalize_transcript_text(text) or None

    async def transcribe(self, audio: bytes, *, language: str = "zh") -> str | None:
        try:
            return await asyncio.to_thread(self._transcribe_sync, audio, language)
        except TranscriptionError:
            raise
        except Exception as e:
            raise TranscriptionError(str(e)) from e


def create_transcriber(cfg: dict, *, openai_api_key: str = ""):
    backend = str(cfg.get("transcription_backend") or "off")
    if backend == "openai":
        if not openai_api_key:
            logger.info("OpenAI API key not configured; transcription disabled")
            return None
        return OpenAITranscriber(openai_api_key, model=str(cfg.get("transcription_model") or "whisper-1"))
    if backend == "local":
        return LocalWhisperTranscriber(
            model_size=str(cfg.get("whisper_model_size") or "small"),
            device=str(cfg.get("whisper_device") or "cpu"),
        )
    return None
