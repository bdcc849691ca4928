"""
Таблица стадий пайплайна.

Здесь одно место, где задано:
- какая стадия входная, какие запускаются веером (fan-out) и в каком порядке
- какие стадии обязательные (входят в счётчик fan-in), какие опциональные
- политика очереди: попытки, backoff, параллелизм, таймаут, приоритет

И fan-in оркестратора, и проекция статуса читают required только отсюда.
"""

from __future__ import annotations

from dataclasses import dataclass

from meeting_pipeline.common.config import Settings, get_settings

from .enums import StageName

ENTRY_STAGE = StageName.transcription

# Порядок постановки fan-out задач фиксирован (воспроизводимые логи/ретраи)
FAN_OUT_ORDER: tuple[StageName, ...] = (
    StageName.extraction,
    StageName.sentiment,
    StageName.follow_up,
    StageName.timeline,
)


@dataclass(frozen=True)
class StageSpec:
    name: StageName
    required: bool
    priority: int
    max_attempts: int
    backoff_base_ms: int
    backoff_max_ms: int
    concurrency: int
    timeout_sec: int
    keep_completed: int
    keep_failed: int

    def backoff_ms(self, attempts: int) -> int:
        """
        Задержка перед следующей попыткой: base * 2^(attempts-1), с потолком.
        """
        exp = max(0, int(attempts) - 1)
        return int(min(self.backoff_max_ms, self.backoff_base_ms * (2**exp)))


@dataclass(frozen=True)
class PipelineConfig:
    stages: dict[StageName, StageSpec]

    @property
    def entry(self) -> StageSpec:
        return self.stages[ENTRY_STAGE]

    def spec(self, stage: StageName) -> StageSpec:
        return self.stages[stage]

    def fan_out(self) -> list[StageSpec]:
        return [self.stages[name] for name in FAN_OUT_ORDER if name in self.stages]

    def required_fan_out(self) -> list[StageSpec]:
        return [s for s in self.fan_out() if s.required]

    def all_stages(self) -> list[StageSpec]:
        return [self.entry, *self.fan_out()]


def _spec(
    s: Settings,
    name: StageName,
    *,
    prefix: str,
    required: bool,
    priority: int,
) -> StageSpec:
    return StageSpec(
        name=name,
        required=required,
        priority=priority,
        max_attempts=max(1, int(getattr(s, f"{prefix}_max_attempts"))),
        backoff_base_ms=max(0, int(getattr(s, f"{prefix}_backoff_ms"))),
        backoff_max_ms=max(0, int(s.queue_backoff_max_ms)),
        concurrency=max(1, int(getattr(s, f"{prefix}_concurrency"))),
        timeout_sec=max(1, int(getattr(s, f"{prefix}_timeout_sec"))),
        keep_completed=max(0, int(s.queue_keep_completed)),
        keep_failed=max(0, int(s.queue_keep_failed)),
    )


def build_pipeline_config(settings: Settings | None = None) -> PipelineConfig:
    s = settings or get_settings()
    stages = {
        StageName.transcription: _spec(
            s, StageName.transcription, prefix="transcription", required=True, priority=1
        ),
        StageName.extraction: _spec(
            s, StageName.extraction, prefix="extraction", required=True, priority=2
        ),
        StageName.sentiment: _spec(
            s, StageName.sentiment, prefix="sentiment", required=True, priority=3
        ),
        StageName.follow_up: _spec(
            s,
            StageName.follow_up,
            prefix="follow_up",
            required=bool(s.follow_up_required),
            priority=4,
        ),
    }
    if s.pipeline_timeline_enabled:
        stages[StageName.timeline] = _spec(
            s, StageName.timeline, prefix="timeline", required=False, priority=5
        )
    return PipelineConfig(stages=stages)
