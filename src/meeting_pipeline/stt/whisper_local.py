"""
Локальный STT на базе faster-whisper.

Что делает:
- принимает bytes аудиофайла целиком
- декодирует через ffmpeg (PyAV) в моно float32 16kHz
- запускает Whisper модель локально
- возвращает текст, сегменты, длительность и язык

Стоимость локального распознавания считаем нулевой.
"""

from __future__ import annotations

import io

import av  # PyAV (ffmpeg bindings)
import numpy as np
from faster_whisper import WhisperModel

from meeting_pipeline.common.config import get_settings

from .base import AudioSource, STTProvider, TranscriptionResult, TranscriptSegment

_TARGET_SR = 16000


def _decode_audio_to_float32(audio_bytes: bytes, target_sr: int = _TARGET_SR) -> np.ndarray:
    """
    Декодирует произвольный аудио-контейнер/кодек в моно float32 16kHz.
    """
    container = av.open(io.BytesIO(audio_bytes))
    stream = next(s for s in container.streams if s.type == "audio")
    resampler = av.audio.resampler.AudioResampler(format="fltp", layout="mono", rate=target_sr)

    samples: list[np.ndarray] = []
    for frame in container.decode(stream):
        for out in resampler.resample(frame):
            arr = out.to_ndarray()
            if arr.ndim == 2:
                arr = arr[0]
            samples.append(arr.astype(np.float32))

    if not samples:
        return np.zeros((0,), dtype=np.float32)

    return np.concatenate(samples)


class WhisperLocalProvider(STTProvider):
    def __init__(
        self,
        model_size: str | None = None,
        device: str | None = None,
        compute_type: str | None = None,
        language: str | None = None,
        vad_filter: bool | None = None,
        beam_size: int | None = None,
    ) -> None:
        s = get_settings()

        self.model_size = model_size or s.whisper_model_size
        self.model = WhisperModel(
            self.model_size,
            device=device or s.whisper_device,
            compute_type=compute_type or s.whisper_compute_type,
        )

        self.language = language or s.whisper_language
        self.vad_filter = s.whisper_vad_filter if vad_filter is None else vad_filter
        self.beam_size = beam_size or s.whisper_beam_size

    def transcribe(self, *, source: AudioSource) -> TranscriptionResult:
        wav = _decode_audio_to_float32(source.data)
        model_name = f"faster-whisper-{self.model_size}"
        if wav.size == 0:
            return TranscriptionResult(text="", model=model_name)

        segments_iter, info = self.model.transcribe(
            wav,
            language=self.language,
            vad_filter=self.vad_filter,
            beam_size=self.beam_size,
        )

        segments: list[TranscriptSegment] = []
        for seg in segments_iter:
            text = (seg.text or "").strip()
            if not text:
                continue
            segments.append(
                TranscriptSegment(
                    text=text,
                    start_sec=float(seg.start),
                    end_sec=float(seg.end),
                    confidence=round(1 - float(seg.no_speech_prob), 4),
                )
            )

        return TranscriptionResult(
            text=" ".join(s.text for s in segments).strip(),
            segments=segments,
            duration_sec=float(getattr(info, "duration", 0.0) or wav.size / _TARGET_SR),
            language=getattr(info, "language", None) or self.language,
            cost=0.0,
            model=model_name,
        )
