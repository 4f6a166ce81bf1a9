"""FFmpeg runner with process isolation, timeout enforcement, and progress monitoring.

This module drives the external encoder engine for one HLS rendition at a time.
It is a blocking call that returns an FfmpegResult; progress is reported on a
separate channel (a callback fed by a stderr monitor thread).

Key Features:
- Process isolation with subprocess.Popen
- Dual timeout enforcement (global + no-progress)
- Real-time progress parsing from FFmpeg `-progress` output
- Process tree cleanup (psutil, with a POSIX process-group fallback)
- Error classification (permanent / transient / hardware / timeout)
- Artifact preservation on failure
"""

import logging
import os
import re
import signal
import subprocess
import tempfile
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, List, Optional

import imageio_ffmpeg
import psutil

logger = logging.getLogger(__name__)


class FfmpegErrorType(Enum):
    """FFmpeg error classification."""
    PERMANENT = "permanent"     # File not found, invalid input, bad arguments
    TRANSIENT = "transient"     # Disk I/O stall, temporary resource shortage
    HARDWARE = "hardware"       # Accelerated codec/device unavailable
    TIMEOUT = "timeout"         # Global or no-progress timeout
    PROCESS_KILLED = "killed"   # Terminated by a signal


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Current output position in seconds
    total_duration_s: float = 0.0    # Source duration (if known)
    fps: float = 0.0                 # Instantaneous encode rate
    bitrate_kbps: float = 0.0
    speed: float = 0.0               # Multiple of realtime (e.g., 2.5x)
    frame: int = 0
    last_update: float = 0.0         # Timestamp of last update

    @property
    def fraction(self) -> float:
        """Fractional completion in [0, 1] (0 if the duration is unknown)."""
        if self.total_duration_s <= 0:
            return 0.0
        return min(1.0, max(0.0, self.current_time_s / self.total_duration_s))


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)

    @property
    def reason(self) -> str:
        """Short human-readable failure reason."""
        if self.success:
            return ""
        kind = self.error_type.value if self.error_type else "error"
        tail = [line for line in self.stderr.strip().splitlines() if line.strip()]
        detail = tail[-1] if tail else f"exit code {self.returncode}"
        return f"{kind}: {detail}"[:300]


_TIME_RE = re.compile(r"out_time=(\d+):(\d+):(\d+)(?:\.(\d+))?")
_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+)kbits/s")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")

# Lines emitted by `-progress`; these are not kept in the stderr tail
_PROGRESS_KEYS = (
    "frame=", "fps=", "stream_", "bitrate=", "total_size=", "out_time",
    "dup_frames=", "drop_frames=", "speed=", "progress=",
)


class FfmpegRunner:
    """FFmpeg orchestration with timeouts and zombie prevention.

    Example:
        >>> runner = FfmpegRunner(progress_callback=lambda p: print(f"{p.fraction:.0%}"))
        >>> result = runner.encode_hls(
        ...     source_path="input.mp4",
        ...     index_path="out/720p/playlist.m3u8",
        ...     segment_pattern="out/720p/segment_%03d.ts",
        ...     width=1280, height=720, codec="libx264",
        ...     bitrate_kbps=2500, preset="medium", crf=23,
        ...     segment_duration_s=10, expected_duration=600.0,
        ... )
        >>> result.success
        True
    """

    def __init__(
        self,
        global_timeout_s: int = 7200,
        no_progress_timeout_s: int = 300,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        ffmpeg_loglevel: str = "error",
        temp_dir: Optional[str] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
        progress_interval_s: float = 1.0,
        stderr_tail_lines: int = 200,
    ):
        """Initialize FFmpeg runner.

        Args:
            global_timeout_s: Maximum duration for any FFmpeg operation
            no_progress_timeout_s: Kill if no progress update in N seconds
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save logs and commands on failure
            ffmpeg_loglevel: FFmpeg log level (error, warning, info, verbose)
            temp_dir: Directory for failure artifacts (None = system temp)
            progress_callback: Optional callback for progress updates
            progress_interval_s: Minimum seconds between callback invocations
            stderr_tail_lines: Number of diagnostic stderr lines kept
        """
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.temp_dir = temp_dir
        self.progress_callback = progress_callback
        self.progress_interval_s = progress_interval_s

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()
        self._stderr_tail: Deque[str] = deque(maxlen=stderr_tail_lines)
        self._stop_monitoring = threading.Event()
        self._monitor_thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, runner_config, progress_callback=None) -> "FfmpegRunner":
        """Build a runner from a RunnerConfig."""
        return cls(
            global_timeout_s=runner_config.global_timeout_s,
            no_progress_timeout_s=runner_config.no_progress_timeout_s,
            kill_grace_period_s=runner_config.kill_grace_period_s,
            save_artifacts_on_failure=runner_config.save_artifacts_on_failure,
            ffmpeg_loglevel=runner_config.ffmpeg_loglevel,
            temp_dir=runner_config.temp_dir,
            progress_callback=progress_callback,
        )

    def build_hls_command(
        self,
        source_path: str,
        index_path: str,
        segment_pattern: str,
        width: int,
        height: int,
        codec: str,
        bitrate_kbps: int,
        preset: str,
        crf: int,
        segment_duration_s: int,
        audio_codec: str = "aac",
        audio_bitrate: str = "128k",
        audio_sample_rate: int = 48000,
    ) -> List[str]:
        """Build the command for one segmented HLS rendition."""
        cmd = [
            self._get_ffmpeg_exe(),
            "-y",
            "-i", source_path,
            "-vf", f"scale={width}:{height}",
            "-c:v", codec,
            "-b:v", f"{bitrate_kbps}k",
            "-maxrate", f"{bitrate_kbps}k",
            "-bufsize", f"{bitrate_kbps * 2}k",
        ]
        cmd.extend(_quality_args(codec, preset, crf))
        cmd.extend([
            "-pix_fmt", "yuv420p",
            "-force_key_frames", f"expr:gte(t,n_forced*{segment_duration_s})",
            "-c:a", audio_codec,
            "-ar", str(audio_sample_rate),
            "-b:a", audio_bitrate,
            "-f", "hls",
            "-hls_time", str(segment_duration_s),
            "-hls_list_size", "0",
            "-hls_playlist_type", "vod",
            "-hls_segment_filename", segment_pattern,
            "-progress", "pipe:2",
            "-nostats",
            "-loglevel", self.ffmpeg_loglevel,
            index_path,
        ])
        return cmd

    def encode_hls(self, expected_duration: Optional[float] = None, **kwargs) -> FfmpegResult:
        """Encode one HLS rendition (see build_hls_command for arguments)."""
        cmd = self.build_hls_command(**kwargs)
        return self._run_ffmpeg(cmd, expected_duration=expected_duration)

    def extract_frame(
        self,
        source_path: str,
        output_path: str,
        seek_s: float = 0.0,
        size: Optional[str] = None,
    ) -> FfmpegResult:
        """Grab a single frame as an image (used for thumbnails)."""
        cmd = [
            self._get_ffmpeg_exe(),
            "-y",
            "-ss", str(seek_s),
            "-i", source_path,
            "-frames:v", "1",
        ]
        if size:
            cmd.extend(["-s", size])
        cmd.extend([
            "-progress", "pipe:2",
            "-nostats",
            "-loglevel", self.ffmpeg_loglevel,
            output_path,
        ])
        return self._run_ffmpeg(cmd)

    def _run_ffmpeg(
        self,
        cmd: List[str],
        expected_duration: Optional[float] = None
    ) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement and progress monitoring.

        Args:
            cmd: FFmpeg command as list
            expected_duration: Source duration for fractional progress

        Returns:
            FfmpegResult with execution details
        """
        start_time = time.time()
        self._progress = FfmpegProgress(
            total_duration_s=expected_duration or 0.0, last_update=start_time
        )
        self._stderr_tail.clear()

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,  # Line buffered for real-time progress
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            return FfmpegResult(
                success=False,
                returncode=-1,
                stderr=str(e),
                duration_s=time.time() - start_time,
                error_type=FfmpegErrorType.PERMANENT,
                final_progress=self._progress,
            )

        try:
            self._stop_monitoring.clear()
            self._monitor_thread = threading.Thread(
                target=self._monitor_progress,
                args=(self._process.stderr,),
                daemon=True
            )
            self._monitor_thread.start()

            timeout_type = None
            while self._process.poll() is None:
                now = time.time()
                if now - start_time > self.global_timeout_s:
                    timeout_type = "global"
                elif now - self._progress.last_update > self.no_progress_timeout_s:
                    timeout_type = "no_progress"
                if timeout_type:
                    logger.warning(
                        "FFmpeg %s timeout, killing pid %s", timeout_type, self._process.pid
                    )
                    self._kill_process_tree()
                    break
                time.sleep(0.2)

            returncode = self._process.wait()
            if self._monitor_thread:
                self._monitor_thread.join(timeout=2)

            stderr = "\n".join(self._stderr_tail)
            if timeout_type:
                stderr += f"\n{timeout_type} timeout exceeded"

            error_type = None
            if timeout_type:
                error_type = FfmpegErrorType.TIMEOUT
            elif returncode < 0:
                error_type = FfmpegErrorType.PROCESS_KILLED
            elif returncode != 0:
                error_type = self._classify_error(stderr)

            success = returncode == 0 and timeout_type is None
            artifacts = []
            if not success and self.save_artifacts_on_failure:
                artifacts = self._save_failure_artifacts(cmd, stderr)

            return FfmpegResult(
                success=success,
                returncode=returncode,
                stderr=stderr,
                duration_s=time.time() - start_time,
                error_type=error_type,
                final_progress=self._progress,
                artifacts_saved=artifacts
            )

        except BaseException:
            # Never leave an orphaned encoder behind
            self._kill_process_tree()
            raise

        finally:
            self._stop_monitoring.set()
            self._process = None

    def _monitor_progress(self, stderr_stream) -> None:
        """Parse FFmpeg `-progress` output and invoke the callback.

        Progress format (one key per line):
            frame=123
            fps=25.00
            bitrate=1234.5kbits/s
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue

        Other lines are kept in a bounded tail for error classification.
        """
        last_callback = 0.0

        try:
            for line in stderr_stream:
                if self._stop_monitoring.is_set():
                    break

                stripped = line.strip()
                if not stripped:
                    continue
                if not stripped.startswith(_PROGRESS_KEYS):
                    self._stderr_tail.append(stripped)
                    continue

                match = _TIME_RE.search(stripped)
                if match:
                    h, m, s, frac = match.groups()
                    seconds = int(h) * 3600 + int(m) * 60 + int(s)
                    if frac:
                        seconds += int(frac) / (10 ** len(frac))
                    self._progress.current_time_s = seconds
                    self._progress.last_update = time.time()
                    continue

                match = _FRAME_RE.search(stripped)
                if match:
                    self._progress.frame = int(match.group(1))
                    self._progress.last_update = time.time()

                match = _FPS_RE.search(stripped)
                if match:
                    self._progress.fps = float(match.group(1))

                match = _BITRATE_RE.search(stripped)
                if match:
                    self._progress.bitrate_kbps = float(match.group(1))

                match = _SPEED_RE.search(stripped)
                if match:
                    self._progress.speed = float(match.group(1))

                # A progress block ends with progress=...; report at most once per interval
                if stripped.startswith("progress=") and self.progress_callback:
                    now = time.time()
                    if now - last_callback >= self.progress_interval_s or stripped == "progress=end":
                        last_callback = now
                        try:
                            self.progress_callback(self._progress)
                        except Exception:
                            logger.exception("Progress callback failed")
        except (OSError, ValueError) as e:
            # Stream closed underneath us (process killed)
            logger.debug("Progress monitoring stopped: %s", e)

    def _kill_process_tree(self) -> None:
        """Kill the FFmpeg process and all of its children.

        Kill sequence:
        1. SIGTERM to the process and its children
        2. Wait grace period
        3. SIGKILL survivors
        """
        if not self._process or self._process.poll() is not None:
            return

        try:
            parent = psutil.Process(self._process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        if alive and os.name == "posix":
            try:
                os.killpg(os.getpgid(self._process.pid), signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass

    def _classify_error(self, stderr: str) -> FfmpegErrorType:
        """Classify an FFmpeg failure from its stderr output."""
        stderr_lower = stderr.lower()

        hardware_patterns = [
            "cannot load libcuda",
            "cannot load nvcuda",
            "no nvenc capable devices found",
            "openencodesessionex failed",
            "no device available for encoder",
            "error creating a mfx session",
            "error initializing an internal mfx session",
            "failed to initialise vaapi",
            "device creation failed",
            "unknown encoder",
            "cannot create compression session",
            "hardware",
        ]
        for pattern in hardware_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.HARDWARE

        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unsupported codec",
            "invalid codec",
            "moov atom not found",
            "does not contain any stream",
            "corrupt",
        ]
        for pattern in permanent_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.PERMANENT

        # I/O errors, disk full and anything unrecognised
        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Save debugging artifacts on FFmpeg failure.

        Creates:
        - ffmpeg_error_{timestamp}.log: Command + stderr tail
        - ffmpeg_cmd_{timestamp}.sh: Reproducible command script
        """
        artifacts = []
        temp_dir = self._get_temp_dir()
        stamp = f"{int(time.time())}_{os.getpid()}_{threading.get_ident()}"

        log_path = temp_dir / f"ffmpeg_error_{stamp}.log"
        try:
            with open(log_path, "w", encoding="utf-8") as f:
                f.write("=" * 80 + "\n")
                f.write("FFmpeg Error Log\n")
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write(f"PID: {os.getpid()}\n")
                f.write("=" * 80 + "\n\n")
                f.write("COMMAND:\n")
                f.write(" ".join(cmd) + "\n\n")
                f.write("STDERR:\n")
                f.write(stderr or "(empty)\n")
            artifacts.append(log_path)
        except OSError as e:
            logger.warning("Failed to save error log: %s", e)

        script_path = temp_dir / f"ffmpeg_cmd_{stamp}.sh"
        try:
            with open(script_path, "w", encoding="utf-8") as f:
                f.write("#!/bin/bash\n")
                f.write("# Reproducible FFmpeg command\n")
                f.write("# Generated: " + time.ctime() + "\n\n")
                escaped_cmd = []
                for arg in cmd:
                    if " " in arg or any(c in arg for c in ["$", "`", '"', "\\", "(", ")", "*"]):
                        escaped_cmd.append(f"'{arg}'")
                    else:
                        escaped_cmd.append(arg)
                f.write(" \\\n  ".join(escaped_cmd) + "\n")
            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError as e:
            logger.warning("Failed to save command script: %s", e)

        return artifacts

    def _get_temp_dir(self) -> Path:
        temp_dir = Path(self.temp_dir) if self.temp_dir else Path(tempfile.gettempdir())
        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir

    @staticmethod
    def _get_ffmpeg_exe() -> str:
        """Get FFmpeg executable path."""
        return imageio_ffmpeg.get_ffmpeg_exe()


def _quality_args(codec: str, preset: str, crf: int) -> List[str]:
    """Codec-specific preset and constant-quality flags."""
    if "nvenc" in codec:
        return ["-preset", preset, "-rc", "vbr", "-cq", str(crf)]
    if "qsv" in codec:
        return ["-preset", preset, "-global_quality", str(crf)]
    if "videotoolbox" in codec:
        # No presets; quality scale is 1-100 (higher is better)
        return ["-q:v", str(max(1, min(100, 100 - crf * 2)))]
    if "vaapi" in codec:
        return ["-qp", str(crf)]
    return ["-preset", preset, "-crf", str(crf)]


def get_ffmpeg_exe() -> str:
    return imageio_ffmpeg.get_ffmpeg_exe()


def get_ffprobe_exe() -> str:
    """ffprobe lives next to ffmpeg; fall back to PATH lookup."""
    ffmpeg_exe = get_ffmpeg_exe()
    candidate = Path(ffmpeg_exe).with_name(Path(ffmpeg_exe).name.replace("ffmpeg", "ffprobe"))
    if candidate.exists():
        return str(candidate)
    return "ffprobe"


def check_ffmpeg() -> bool:
    """Verify ffmpeg and ffprobe run."""
    try:
        for exe in (get_ffmpeg_exe(), get_ffprobe_exe()):
            subprocess.run(
                [exe, "-version"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=True,
            )
        return True
    except (FileNotFoundError, subprocess.CalledProcessError, OSError, RuntimeError):
        return False
