"""
Timeline compositor for the export pipeline.

Turns a scenario snapshot plus its resolved assets into a Timeline: absolute
start offsets and durations for every video clip, voiceover, the music bed,
the logo overlay and the subtitle cues. Composition is a pure function with
no I/O, so the same snapshot always yields the same Timeline.

Layout rules:
- Scene clips are laid back-to-back in scene order.
- A ``dip_to_black`` transition inserts a black gap of TRANSITION_DURATION
  before its scene; ``fade`` fades across the cut without moving anything.
- Each voiceover starts with its scene and is clipped (never stretched) to
  the scene's duration. Clipping records an AudioOverrun warning.
- Music spans the whole timeline with a fade at both ends.
- One subtitle cue per scene with voiceover text, timed to the scene window.

Offsets are rounded to milliseconds.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, Tuple, List, Dict, Any

import structlog

from config import settings as default_settings
from schemas import ScenarioSnapshot
from pipeline.error_handler import EmptyTimeline, AudioOverrun

logger = structlog.get_logger(__name__)


def _ms(seconds: float) -> float:
    return round(float(seconds), 3)


@dataclass(frozen=True)
class TimelineItem:
    """One placed item on a layer."""

    start: float
    duration: float
    source: Optional[str] = None
    scene_index: Optional[int] = None
    transition: str = "cut"
    fade_in: float = 0.0
    fade_out: float = 0.0

    @property
    def end(self) -> float:
        return _ms(self.start + self.duration)


@dataclass(frozen=True)
class TimelineLayer:
    """
    Ordered items of one layer.

    Raises:
        ValueError: If two items overlap
    """

    name: str
    items: Tuple[TimelineItem, ...] = ()

    def __post_init__(self):
        for previous, current in zip(self.items, self.items[1:]):
            if current.start < previous.end:
                raise ValueError(
                    f"{self.name} layer items overlap at {current.start}s "
                    f"(previous item ends at {previous.end}s)"
                )

    @property
    def end(self) -> float:
        return self.items[-1].end if self.items else 0.0

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True)
class SubtitleCue:
    sequence: int
    start: float
    end: float
    text: str


@dataclass(frozen=True)
class LogoOverlay:
    """Logo placed top-right for the full duration."""

    source: str
    height: int
    margin: int
    start: float
    duration: float
    position: str = "top-right"


@dataclass(frozen=True)
class Timeline:
    """
    Fully resolved arrangement of all layers for one export.

    Consumed read-only by the render invoker.
    """

    video: TimelineLayer
    voiceover: TimelineLayer
    music: TimelineLayer
    width: int
    height: int
    fps: int
    language: str
    subtitles: Tuple[SubtitleCue, ...] = ()
    overlay: Optional[LogoOverlay] = None
    warnings: Tuple[AudioOverrun, ...] = field(default_factory=tuple)

    @property
    def duration(self) -> float:
        """Total running time; the video layer defines it."""
        return self.video.end

    @property
    def layers(self) -> Tuple[TimelineLayer, ...]:
        return (self.video, self.voiceover, self.music)

    @property
    def gaps(self) -> List[Tuple[float, float]]:
        """Black (start, duration) windows between video items."""
        gaps = []
        cursor = 0.0
        for item in self.video.items:
            if item.start > cursor:
                gaps.append((cursor, _ms(item.start - cursor)))
            cursor = item.end
        return gaps

    @property
    def has_voiceovers(self) -> bool:
        return any(item.source for item in self.voiceover.items)

    def to_dict(self) -> Dict[str, Any]:
        """Plain, JSON-stable representation."""
        return {
            "duration": self.duration,
            "width": self.width,
            "height": self.height,
            "fps": self.fps,
            "language": self.language,
            "layers": {
                layer.name: [asdict(item) for item in layer.items]
                for layer in self.layers
            },
            "subtitles": [asdict(cue) for cue in self.subtitles],
            "overlay": asdict(self.overlay) if self.overlay else None,
            "warnings": [warning.to_dict() for warning in self.warnings],
        }


def compose_timeline(snapshot: ScenarioSnapshot, assets, settings=None) -> Timeline:
    """
    Compute the Timeline for a snapshot and its resolved assets.

    Args:
        snapshot: Validated scenario snapshot
        assets: ResolvedAssets from the asset resolver (one entry per scene,
            in scene order)
        settings: Settings object providing the composition constants
            (defaults to the global settings)

    Returns:
        Timeline

    Raises:
        EmptyTimeline: If the scenario has no scenes

    Example:
        >>> timeline = compose_timeline(snapshot, assets)
        >>> [(i.start, i.end) for i in timeline.video.items]
        [(0.0, 4.0), (4.0, 10.0), (10.0, 15.0)]
    """
    settings = settings or default_settings

    if not snapshot.scenes or not assets.scenes:
        raise EmptyTimeline()

    transition_duration = _ms(settings.TRANSITION_DURATION)
    half_transition = _ms(transition_duration / 2)

    video_items: List[TimelineItem] = []
    voiceover_items: List[TimelineItem] = []
    cues: List[SubtitleCue] = []
    warnings: List[AudioOverrun] = []

    scenes = list(assets.scenes)
    cursor = 0.0

    for position, scene in enumerate(scenes):
        following = scenes[position + 1] if position + 1 < len(scenes) else None

        if scene.transition == "dip_to_black" and position > 0:
            cursor = _ms(cursor + transition_duration)

        start = cursor
        duration = _ms(scene.duration)

        video_items.append(TimelineItem(
            start=start,
            duration=duration,
            source=scene.video_path,
            scene_index=scene.scene_index,
            transition=scene.transition,
            fade_in=half_transition if scene.transition == "fade" and position > 0 else 0.0,
            fade_out=half_transition if following is not None and following.transition == "fade" else 0.0,
        ))

        # Every scene gets a voiceover slot; scenes without narration hold silence
        voiceover_duration = duration
        if scene.voiceover_path:
            voiceover_duration = _ms(scene.voiceover_duration or duration)
            if voiceover_duration > duration:
                overrun = AudioOverrun(
                    scene_index=scene.scene_index,
                    voiceover_duration=voiceover_duration,
                    video_duration=duration,
                )
                warnings.append(overrun)
                logger.warning(
                    "voiceover_clipped",
                    scene_index=scene.scene_index,
                    clipped_seconds=overrun.clipped_seconds,
                )
                voiceover_duration = duration

        voiceover_items.append(TimelineItem(
            start=start,
            duration=voiceover_duration,
            source=scene.voiceover_path,
            scene_index=scene.scene_index,
        ))

        if scene.voiceover_text:
            cues.append(SubtitleCue(
                sequence=len(cues) + 1,
                start=start,
                end=_ms(start + duration),
                text=scene.voiceover_text.strip(),
            ))

        cursor = _ms(start + duration)

    total = cursor
    width, height = snapshot.resolution

    music_items: Tuple[TimelineItem, ...] = ()
    if assets.music_path:
        fade = _ms(min(settings.MUSIC_FADE_SECONDS, total / 2))
        music_items = (TimelineItem(
            start=0.0,
            duration=total,
            source=assets.music_path,
            fade_in=fade,
            fade_out=fade,
        ),)

    overlay = None
    if assets.logo_path:
        overlay = LogoOverlay(
            source=assets.logo_path,
            height=max(int(round(height * settings.LOGO_HEIGHT_RATIO)), 1),
            margin=settings.LOGO_MARGIN_PX,
            start=0.0,
            duration=total,
        )

    timeline = Timeline(
        video=TimelineLayer("video", tuple(video_items)),
        voiceover=TimelineLayer("voiceover", tuple(voiceover_items)),
        music=TimelineLayer("music", music_items),
        width=width,
        height=height,
        fps=settings.OUTPUT_FPS,
        language=snapshot.language,
        subtitles=tuple(cues),
        overlay=overlay,
        warnings=tuple(warnings),
    )

    logger.info(
        "timeline_composed",
        scenario_id=snapshot.scenario_id,
        scenes=len(video_items),
        duration=total,
        cues=len(cues),
        warnings=len(warnings),
    )
    return timeline


def format_srt_timestamp(seconds: float) -> str:
    """
    Format seconds as an SRT timestamp.

    Example:
        >>> format_srt_timestamp(3723.5)
        '01:02:03,500'
    """
    total_ms = int(round(seconds * 1000))
    hours, remainder = divmod(total_ms, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    secs, millis = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def render_srt(cues) -> str:
    """Render subtitle cues as an SRT document."""
    blocks = []
    for cue in cues:
        blocks.append(
            f"{cue.sequence}\n"
            f"{format_srt_timestamp(cue.start)} --> {format_srt_timestamp(cue.end)}\n"
            f"{cue.text}\n"
        )
    return "\n".join(blocks)
