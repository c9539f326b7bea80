"""
Render invoker for the export pipeline.

Drives FFmpeg through five stages in a fixed order, each consuming the
previous stage's output:

1. concatenate   - normalise scene clips, apply transitions, lay a silent bed
2. mix_voiceover - delay each voiceover to its scene, mix onto the bed
3. mix_music     - loop/trim the music, apply its fade envelope, mix
4. overlay_logo  - burn the logo in top-right (audio copied, not re-encoded)
5. mux_subtitles - mux the SRT cues as a soft mov_text track (all copied)

A stage with nothing to do passes its input through and still counts as
complete. Command construction is pure (``build_*_command``); the
FFmpegRunner is the only thing that spawns processes.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import structlog

from config import settings as default_settings
from models import StageNames
from pipeline.asset_manager import AssetManager
from pipeline.error_handler import StageFailure, StageTimeout, JobCancelled
from pipeline.timeline import Timeline, render_srt

logger = structlog.get_logger(__name__)


# ISO 639-1 -> ISO 639-2 for the subtitle track language tag
ISO_639_2 = {
    "en": "eng",
    "es": "spa",
    "fr": "fra",
    "de": "deu",
    "ja": "jpn",
    "ko": "kor",
    "zh": "zho",
    "pt": "por",
    "it": "ita",
}


def subtitle_language_tag(language: str) -> str:
    """
    Map a language code to the ISO 639-2 tag MP4 subtitle tracks carry.

    Example:
        >>> subtitle_language_tag("en-US")
        'eng'
    """
    primary = language.lower().split("-")[0].split("_")[0]
    return ISO_639_2.get(primary, primary)


def _fmt(seconds: float) -> str:
    return f"{seconds:.3f}"


def _audio_encode_args(settings) -> List[str]:
    return ["-c:a", settings.AUDIO_CODEC, "-ar", str(settings.AUDIO_SAMPLE_RATE), "-ac", "2"]


def build_concatenate_command(timeline: Timeline, output_path: str, settings=None) -> List[str]:
    """
    Stage 1: one normalised video track plus a silent stereo bed.

    Each clip is scaled/padded to the target frame, held on its last frame
    if short and trimmed to its scene duration. Gaps become black frames.
    Source audio is dropped; narration and music are mixed in later stages.
    """
    settings = settings or default_settings
    width, height, fps = timeline.width, timeline.height, timeline.fps
    total = timeline.duration

    args: List[str] = []
    filters: List[str] = []
    segments: List[str] = []

    for item in timeline.video.items:
        args += ["-i", item.source]

    gaps = dict(timeline.gaps)
    cursor = 0.0
    gap_count = 0

    for i, item in enumerate(timeline.video.items):
        if item.start > cursor:
            gap = gaps[cursor]
            label = f"g{gap_count}"
            filters.append(
                f"color=c=black:s={width}x{height}:r={fps}:d={_fmt(gap)},"
                f"format=yuv420p,setsar=1[{label}]"
            )
            segments.append(f"[{label}]")
            gap_count += 1

        chain = [
            f"[{i}:v]fps={fps}",
            f"scale={width}:{height}:force_original_aspect_ratio=decrease",
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:color=black",
            "setsar=1",
            f"tpad=stop_mode=clone:stop_duration={_fmt(item.duration)}",
            f"trim=duration={_fmt(item.duration)}",
            "setpts=PTS-STARTPTS",
            "format=yuv420p",
        ]
        if item.fade_in:
            chain.append(f"fade=t=in:st=0:d={_fmt(item.fade_in)}")
        if item.fade_out:
            chain.append(f"fade=t=out:st={_fmt(item.duration - item.fade_out)}:d={_fmt(item.fade_out)}")

        filters.append(",".join(chain) + f"[v{i}]")
        segments.append(f"[v{i}]")
        cursor = item.end

    filters.append(f"{''.join(segments)}concat=n={len(segments)}:v=1:a=0[vout]")
    filters.append(
        f"anullsrc=channel_layout=stereo:sample_rate={settings.AUDIO_SAMPLE_RATE},"
        f"atrim=duration={_fmt(total)}[aout]"
    )

    args += [
        "-filter_complex", ";".join(filters),
        "-map", "[vout]",
        "-map", "[aout]",
        "-c:v", settings.VIDEO_CODEC,
        "-preset", settings.VIDEO_PRESET,
        "-pix_fmt", "yuv420p",
        "-r", str(fps),
        *_audio_encode_args(settings),
        "-t", _fmt(total),
        "-movflags", "+faststart",
        output_path,
    ]
    return args


def build_voiceover_command(timeline: Timeline, input_path: str, output_path: str, settings=None) -> List[str]:
    """
    Stage 2: delay every voiceover to its scene start and mix onto the bed.

    Voiceovers are already clipped on the timeline; ``atrim`` enforces it.
    """
    settings = settings or default_settings
    voiceovers = [item for item in timeline.voiceover.items if item.source]

    args = ["-i", input_path]
    filters = []
    labels = []

    for j, item in enumerate(voiceovers, start=1):
        args += ["-i", item.source]
        delay_ms = int(round(item.start * 1000))
        filters.append(
            f"[{j}:a]atrim=duration={_fmt(item.duration)},asetpts=PTS-STARTPTS,"
            f"aresample={settings.AUDIO_SAMPLE_RATE},aformat=channel_layouts=stereo,"
            f"volume={settings.VOICEOVER_GAIN},adelay={delay_ms}|{delay_ms}[vo{j}]"
        )
        labels.append(f"[vo{j}]")

    filters.append(
        f"[0:a]{''.join(labels)}amix=inputs={len(labels) + 1}:duration=first:"
        f"dropout_transition=0:normalize=0[aout]"
    )

    args += [
        "-filter_complex", ";".join(filters),
        "-map", "0:v",
        "-map", "[aout]",
        "-c:v", "copy",
        *_audio_encode_args(settings),
        output_path,
    ]
    return args


def build_music_command(timeline: Timeline, input_path: str, output_path: str, settings=None) -> List[str]:
    """Stage 3: loop the music to the full duration, fade both ends, mix."""
    settings = settings or default_settings
    music = timeline.music.items[0]

    chain = [
        f"[1:a]atrim=duration={_fmt(music.duration)}",
        "asetpts=PTS-STARTPTS",
        f"aresample={settings.AUDIO_SAMPLE_RATE}",
        "aformat=channel_layouts=stereo",
        f"volume={settings.MUSIC_GAIN}",
    ]
    if music.fade_in:
        chain.append(f"afade=t=in:st=0:d={_fmt(music.fade_in)}")
    if music.fade_out:
        chain.append(f"afade=t=out:st={_fmt(music.duration - music.fade_out)}:d={_fmt(music.fade_out)}")

    filters = [
        ",".join(chain) + "[music]",
        "[0:a][music]amix=inputs=2:duration=first:dropout_transition=0:normalize=0[aout]",
    ]

    return [
        "-i", input_path,
        "-stream_loop", "-1",
        "-i", music.source,
        "-filter_complex", ";".join(filters),
        "-map", "0:v",
        "-map", "[aout]",
        "-c:v", "copy",
        *_audio_encode_args(settings),
        output_path,
    ]


def build_overlay_command(timeline: Timeline, input_path: str, output_path: str, settings=None) -> List[str]:
    """Stage 4: scale the logo and burn it in top-right; audio is copied."""
    settings = settings or default_settings
    overlay = timeline.overlay

    filters = [
        f"[1:v]scale=-1:{overlay.height}[logo]",
        f"[0:v][logo]overlay=W-w-{overlay.margin}:{overlay.margin}:shortest=1,format=yuv420p[vout]",
    ]

    return [
        "-i", input_path,
        "-loop", "1",
        "-i", overlay.source,
        "-filter_complex", ";".join(filters),
        "-map", "[vout]",
        "-map", "0:a",
        "-c:v", settings.VIDEO_CODEC,
        "-preset", settings.VIDEO_PRESET,
        "-c:a", "copy",
        "-movflags", "+faststart",
        output_path,
    ]


def build_subtitle_command(timeline: Timeline, input_path: str, srt_path: str, output_path: str) -> List[str]:
    """Stage 5: mux the SRT as a soft subtitle track; nothing is re-encoded."""
    return [
        "-i", input_path,
        "-i", srt_path,
        "-map", "0",
        "-map", "1",
        "-c", "copy",
        "-c:s", "mov_text",
        "-metadata:s:s:0", f"language={subtitle_language_tag(timeline.language)}",
        "-movflags", "+faststart",
        output_path,
    ]


class FFmpegRunner:
    """
    Runs one FFmpeg invocation as an async subprocess.

    A process that exceeds the stage budget is killed; a process always
    finishes (or is killed) before run() returns.
    """

    def __init__(self, binary: Optional[str] = None, timeout: Optional[float] = None):
        self.binary = binary or default_settings.ffmpeg_binary
        self.timeout = timeout or default_settings.STAGE_TIMEOUT_SECONDS

    async def run(self, stage: str, args: List[str]) -> None:
        """
        Raises:
            StageFailure: ffmpeg is missing or exited non-zero
            StageTimeout: the stage budget was exceeded
        """
        cmd = [self.binary, "-hide_banner", "-loglevel", "error", "-y", *args]
        logger.debug("ffmpeg_started", stage=stage, cmd=" ".join(cmd))

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise StageFailure(stage, f"ffmpeg executable not found: {self.binary}")

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            logger.error("ffmpeg_stage_timeout", stage=stage, timeout=self.timeout)
            raise StageTimeout(stage, self.timeout)
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        if process.returncode != 0:
            stderr_tail = (stderr or b"").decode("utf-8", errors="ignore")[-2000:]
            logger.error(
                "ffmpeg_stage_failed",
                stage=stage,
                returncode=process.returncode,
                stderr=stderr_tail
            )
            raise StageFailure(
                stage,
                f"ffmpeg exited with code {process.returncode}",
                {"returncode": process.returncode, "stderr_tail": stderr_tail}
            )

    @staticmethod
    async def _kill(process) -> None:
        if process.returncode is None:
            process.kill()
            await process.wait()


@dataclass(frozen=True)
class StageResult:
    """Outcome of one completed render stage."""

    stage: str
    number: int
    total: int
    output_path: str
    skipped: bool = False
    elapsed_seconds: float = 0.0


@dataclass
class RenderOutput:
    video_path: str
    subtitle_path: Optional[str] = None
    stages: List[StageResult] = field(default_factory=list)


class RenderInvoker:
    """
    Runs the five render stages in order for one timeline.

    Example:
        >>> invoker = RenderInvoker()
        >>> output = await invoker.render(timeline, asset_manager)
        >>> output.video_path
        '/tmp/export_jobs/job-123/render/stage_5_mux_subtitles.mp4'
    """

    def __init__(self, runner: Optional[FFmpegRunner] = None, settings=None):
        self.settings = settings or default_settings
        self.runner = runner or FFmpegRunner(timeout=self.settings.STAGE_TIMEOUT_SECONDS)
        self.logger = structlog.get_logger().bind(service="render_invoker")

    async def render(
        self,
        timeline: Timeline,
        asset_manager: AssetManager,
        should_cancel: Optional[Callable[[], bool]] = None,
        on_stage_complete: Optional[Callable[[StageResult], None]] = None
    ) -> RenderOutput:
        """
        Render the timeline into the job's render directory.

        Args:
            timeline: Composed timeline
            asset_manager: Work directory of the job
            should_cancel: Predicate checked before every stage
            on_stage_complete: Called after each stage, skipped ones included

        Returns:
            RenderOutput with the final video path and the SRT path (if any)

        Raises:
            JobCancelled: should_cancel returned True before a stage
            StageFailure / StageTimeout: a stage failed; later stages never run
        """
        stages = [
            (StageNames.CONCATENATE, self._concatenate),
            (StageNames.MIX_VOICEOVER, self._mix_voiceover),
            (StageNames.MIX_MUSIC, self._mix_music),
            (StageNames.OVERLAY_LOGO, self._overlay_logo),
            (StageNames.MUX_SUBTITLES, self._mux_subtitles),
        ]
        output = RenderOutput(video_path="")
        log = self.logger.bind(job_id=asset_manager.job_id)

        for number, (stage, handler) in enumerate(stages, start=1):
            if should_cancel is not None and should_cancel():
                log.info("render_cancelled", before_stage=stage)
                raise JobCancelled(stage)

            started = time.monotonic()
            target = str(asset_manager.get_file_path(f"stage_{number}_{stage}.mp4", "render"))
            produced = await handler(timeline, output, target, asset_manager)
            skipped = produced is None

            if skipped:
                produced = output.video_path
            elif not asset_manager.validate_file(produced):
                raise StageFailure(stage, "ffmpeg produced no output")

            result = StageResult(
                stage=stage,
                number=number,
                total=len(stages),
                output_path=produced,
                skipped=skipped,
                elapsed_seconds=round(time.monotonic() - started, 3),
            )
            output.video_path = produced
            output.stages.append(result)

            log.info(
                "render_stage_completed",
                stage=stage,
                skipped=skipped,
                elapsed_seconds=result.elapsed_seconds
            )
            if on_stage_complete is not None:
                on_stage_complete(result)

        return output

    # Each handler returns the path it wrote, or None when it has nothing to do

    async def _concatenate(self, timeline, output, target, asset_manager) -> Optional[str]:
        await self.runner.run(
            StageNames.CONCATENATE,
            build_concatenate_command(timeline, target, self.settings)
        )
        return target

    async def _mix_voiceover(self, timeline, output, target, asset_manager) -> Optional[str]:
        if not timeline.has_voiceovers:
            return None
        await self.runner.run(
            StageNames.MIX_VOICEOVER,
            build_voiceover_command(timeline, output.video_path, target, self.settings)
        )
        return target

    async def _mix_music(self, timeline, output, target, asset_manager) -> Optional[str]:
        if not timeline.music.items:
            return None
        await self.runner.run(
            StageNames.MIX_MUSIC,
            build_music_command(timeline, output.video_path, target, self.settings)
        )
        return target

    async def _overlay_logo(self, timeline, output, target, asset_manager) -> Optional[str]:
        if timeline.overlay is None:
            return None
        await self.runner.run(
            StageNames.OVERLAY_LOGO,
            build_overlay_command(timeline, output.video_path, target, self.settings)
        )
        return target

    async def _mux_subtitles(self, timeline, output, target, asset_manager) -> Optional[str]:
        if not timeline.subtitles:
            return None
        srt_path = await asset_manager.save_file(
            render_srt(timeline.subtitles).encode("utf-8"),
            "subtitles.srt",
            "render"
        )
        output.subtitle_path = srt_path
        await self.runner.run(
            StageNames.MUX_SUBTITLES,
            build_subtitle_command(timeline, output.video_path, srt_path, target)
        )
        return target
