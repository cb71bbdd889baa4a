#!/usr/bin/env python3

import argparse
import functools
import hashlib
import json
import logging
import os
import pathlib
import re
import shlex
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field
from typing import (
    IO,
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    TypedDict,
    Union,
    cast,
)

DEFAULT_CODEC = "mkv,h264,18,medium,opus,192"
DEFAULT_ENCODER = "ffmpeg"
DEFAULT_FFPROBE = "ffprobe"
DEFAULT_FILE_CMD = "file"
ON_FAILURE_CHOICES = ("continue", "abort")

TIME_PATTERN = r"time=([0-9]+):([0-9]+):([0-9]+\.[0-9]+)"
READ_CHUNK = 2048
TIME_MATCH_WINDOW = 256

# Fixed so that a later run derives the same temp names as an interrupted one.
TEMP_HASH_KEY = b"vconvert.tmp"
TEMP_HASH_BYTES = 8

MIME_ALLOW = frozenset(
    [
        "application/octet-stream",
        "audio/mpeg",
        "audio/ogg",
        "audio/x-wav",
        "video/mp4",
        "video/mpeg",
        "video/quicktime",
        "video/webm",
        "video/x-flv",
        "video/x-m4v",
        "video/x-matroska",
        "video/x-ms-asf",
        "video/x-msvideo",
    ]
)
MIME_DENY = frozenset(
    [
        "application/CDFV2",
        "application/pdf",
        "application/x-7z-compressed",
        "application/x-executable",
        "application/x-sharedlib",
        "application/x-shockwave-flash",
        "application/zip",
        "image/gif",
        "image/jpeg",
        "image/png",
        "image/svg+xml",
        "image/x-icon",
        "image/x-ms-bmp",
        "image/x-xcf",
        "inode/socket",
        "inode/x-empty",
        "regular file, no read permission",
        "text/html",
        "text/plain",
        "text/xml",
    ]
)

FORMAT_ALLOW = frozenset(
    [
        "aac",
        "asf",
        "avi",
        "flac",
        "flv",
        "matroska,webm",
        "mov,mp4,m4a,3gp,3g2,mj2",
        "mp3",
        "mpeg",
        "mpegts",
        "ogg",
        "wav",
    ]
)
FORMAT_DENY = frozenset(
    [
        "ass",
        "bmp_pipe",
        "gif",
        "image2",
        "jpeg_pipe",
        "png_pipe",
        "srt",
        "svg_pipe",
        "tty",
        "webvtt",
    ]
)

X264_SPEEDS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
    "placebo",
)


class ConvertError(Exception):
    description = "Conversion error"

    def __init__(self, path: Any = None, detail: str = "") -> None:
        self.path = path
        self.detail = detail
        super().__init__(str(self))

    def __str__(self) -> str:
        text = self.description
        if self.detail:
            text = f"{text} ({self.detail})"
        if self.path is not None:
            text = f"{text}: {self.path}"
        return text


class PathResolutionError(ConvertError):
    description = "Could not resolve path"


class SniffError(ConvertError):
    description = "Could not determine file type"


class ProbeError(ConvertError):
    description = "Could not probe media metadata"


class TargetConflictError(ConvertError):
    description = "Target file exists"


class EncoderSpawnError(ConvertError):
    description = "Could not spawn encoder"


class FilesystemError(ConvertError):
    description = "Filesystem operation failed"


class StreamReadError(ConvertError):
    description = "Could not read encoder output"


class EncoderRuntimeError(ConvertError):
    description = "Encoder produced unexpected output"

    def __init__(
        self,
        path: Any = None,
        returncode: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        detail = f"exit status {returncode}" if returncode else "no progress reported"
        super().__init__(path, detail)

    @property
    def output(self) -> str:
        return self.stderr + self.stdout


class StatusTransitionError(ValueError):
    pass


class CodecError(ValueError):
    pass


@dataclass(frozen=True)
class Pending:
    weight: float


@dataclass(frozen=True)
class Running:
    begin: float
    weight: float
    processed: float = 0.0


@dataclass(frozen=True)
class Done:
    begin: float
    duration: float
    weight: float


@dataclass(frozen=True)
class Failed:
    begin: float
    duration: float
    weight: float


Status = Union[Pending, Running, Done, Failed]

_STATUS_RANK = {Pending: 0, Running: 1, Done: 2, Failed: 3}


def _now(now: Optional[float]) -> float:
    return time.monotonic() if now is None else now


def start(status: Status, now: Optional[float] = None) -> Running:
    if not isinstance(status, Pending):
        raise StatusTransitionError(f"cannot start from {type(status).__name__}")
    return Running(begin=_now(now), weight=status.weight)


def advance(status: Status, processed: float) -> Running:
    if not isinstance(status, Running):
        raise StatusTransitionError(f"cannot advance {type(status).__name__}")
    processed = min(max(processed, status.processed), status.weight)
    return Running(begin=status.begin, weight=status.weight, processed=processed)


def finish(status: Status, now: Optional[float] = None) -> Done:
    if not isinstance(status, Running):
        raise StatusTransitionError(f"cannot finish {type(status).__name__}")
    duration = max(_now(now) - status.begin, 0.0)
    return Done(begin=status.begin, duration=duration, weight=status.weight)


def fail(status: Status, now: Optional[float] = None) -> Failed:
    if not isinstance(status, Running):
        raise StatusTransitionError(f"cannot fail {type(status).__name__}")
    duration = max(_now(now) - status.begin, 0.0)
    return Failed(begin=status.begin, duration=duration, weight=status.weight)


def weight_of(status: Status) -> float:
    return status.weight


def processed_of(status: Status) -> float:
    if isinstance(status, Pending):
        return 0.0
    if isinstance(status, Running):
        return status.processed
    return status.weight


def begin_of(status: Status) -> Optional[float]:
    if isinstance(status, Pending):
        return None
    return status.begin


def percentage(status: Status) -> float:
    if isinstance(status, Pending):
        return 0.0
    if isinstance(status, Running):
        if status.weight <= 0:
            return 0.0
        return min(max(status.processed / status.weight, 0.0), 1.0) * 100.0
    return 100.0


def eta(status: Status, now: Optional[float] = None) -> Optional[float]:
    if not isinstance(status, Running):
        return None
    elapsed = _now(now) - status.begin
    if status.processed <= 0 or elapsed <= 0:
        return None
    if status.processed >= status.weight:
        return 0.0
    rate = status.processed / elapsed
    return (status.weight - status.processed) / rate


def merge(a: Status, b: Status) -> Status:
    # Rank order: Pending, Running, Done, Failed.
    if _STATUS_RANK[type(a)] > _STATUS_RANK[type(b)]:
        return merge(b, a)

    weight = a.weight + b.weight
    processed = processed_of(a) + processed_of(b)

    if isinstance(a, Pending):
        if isinstance(b, Pending):
            return Pending(weight)
        return Running(
            begin=cast(float, begin_of(b)), weight=weight, processed=processed
        )
    if isinstance(a, Running):
        return Running(
            begin=min(a.begin, cast(float, begin_of(b))),
            weight=weight,
            processed=processed,
        )

    # Both terminal from here on.
    b_terminal = cast(Union[Done, Failed], b)
    begin = min(a.begin, b_terminal.begin)
    duration = a.duration + b_terminal.duration
    if isinstance(a, Done) and isinstance(b, Done):
        return Done(begin=begin, duration=duration, weight=weight)
    return Failed(begin=begin, duration=duration, weight=weight)


def merge_all(statuses: Iterable[Status]) -> Optional[Status]:
    items = list(statuses)
    if not items:
        return None
    return functools.reduce(merge, items)


def status_label(status: Status) -> str:
    if isinstance(status, Done):
        return "Done"
    if isinstance(status, Failed):
        return "Failed"
    if isinstance(status, Running):
        return f"{percentage(status):6.2f}%"
    return ""


def _complete_utf8_prefix(data: bytes) -> int:
    end = len(data)
    for back in range(1, min(4, end) + 1):
        byte = data[end - back]
        if byte & 0xC0 == 0x80:
            continue
        if byte >= 0xC0:
            need = 2 if byte < 0xE0 else 3 if byte < 0xF0 else 4
            if need > back:
                return end - back
        return end
    return end


class StreamMatcher:
    def __init__(
        self,
        pattern: Union[str, "re.Pattern[str]"],
        stream: IO[bytes],
        chunk_size: int = READ_CHUNK,
        window: Optional[int] = None,
    ) -> None:
        self.regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        self.stream = stream
        self.chunk_size = chunk_size
        # Longest match that must still be found when it straddles chunks.
        self.window = window
        self.captured = bytearray()
        self.matches = 0
        self._text = ""
        self._tail = b""
        self._dirty = False
        self._eof = False

    def __iter__(self) -> "StreamMatcher":
        return self

    def __next__(self) -> Tuple[Optional[str], ...]:
        while True:
            groups = self._search()
            if groups is not None:
                self.matches += 1
                return groups
            if self._eof:
                raise StopIteration
            self._fill()

    @property
    def text(self) -> str:
        return self.captured.decode("utf-8", "replace")

    def _read(self) -> bytes:
        read1 = getattr(self.stream, "read1", None)
        if read1 is not None:
            return cast(bytes, read1(self.chunk_size))
        return cast(bytes, self.stream.read(self.chunk_size))

    def _fill(self) -> None:
        try:
            chunk = self._read()
        except OSError as exc:
            self._eof = True
            self._text = ""
            self._tail = b""
            self._dirty = False
            raise StreamReadError(getattr(self.stream, "name", None), str(exc)) from exc
        self._dirty = True
        if not chunk:
            self._eof = True
            self._text += self._tail.decode("utf-8", "surrogateescape")
            self._tail = b""
            return
        self.captured.extend(chunk)
        data = self._tail + chunk
        complete = _complete_utf8_prefix(data)
        self._text += data[:complete].decode("utf-8", "surrogateescape")
        self._tail = data[complete:]

    def _search(self) -> Optional[Tuple[Optional[str], ...]]:
        # Only text added since the last miss can produce a new match.
        if not self._dirty:
            return None
        match = self.regex.search(self._text)
        if match is None:
            self._dirty = False
            if self.window is not None and len(self._text) > self.window:
                self._text = self._text[-self.window :]
            return None
        # A match touching the end could still grow with the next chunk.
        if match.end() == len(self._text) and not self._eof:
            self._dirty = False
            return None
        self._text = self._text[match.end() :]
        return match.groups()


def elapsed_seconds(groups: Sequence[Optional[str]]) -> float:
    hours, minutes, seconds = (float(g or 0) for g in groups[:3])
    return hours * 3600 + minutes * 60 + seconds


@dataclass(frozen=True)
class BasedPath:
    path: pathlib.Path
    base: pathlib.Path

    @property
    def relative(self) -> pathlib.Path:
        return pathlib.Path(os.path.relpath(self.path, self.base))


@dataclass(frozen=True)
class VideoInfo:
    width: int
    height: int
    fps: float
    codec: str


@dataclass(frozen=True)
class AudioInfo:
    codec: str


@dataclass(frozen=True)
class Source:
    path: BasedPath
    format_name: str
    duration: float
    video: Optional[VideoInfo] = None
    audio: Optional[AudioInfo] = None

    @property
    def weight(self) -> float:
        if self.video is None:
            return 0.0
        frames = self.video.fps * self.duration
        return float(self.video.width * self.video.height) * frames


class ProbeInfo(TypedDict):
    format_name: str
    duration: float
    video: Optional[VideoInfo]
    audio: Optional[AudioInfo]


class DiscoveryResult(TypedDict):
    sources: List[Source]
    skipped: List[BasedPath]
    errors: List[ConvertError]


def _print_command(cmd: Sequence[str]) -> None:
    logging.debug("+ %s", " ".join(shlex.quote(str(c)) for c in cmd))


def _classify(value: str, allow: frozenset, deny: frozenset) -> Optional[bool]:
    if value in deny:
        return False
    if value in allow:
        return True
    return None


def _should_ignore_name(name: str) -> bool:
    return name.startswith("._")


def expand_paths(paths: Iterable[pathlib.Path]) -> List[pathlib.Path]:
    files = []
    for p in paths:
        if p.is_dir():
            for root, dirs, fn in os.walk(p):
                dirs[:] = sorted(d for d in dirs if not _should_ignore_name(d))
                for f in fn:
                    if _should_ignore_name(f):
                        continue
                    fp = pathlib.Path(root) / f
                    if not fp.is_dir():
                        files.append(fp)
        elif not _should_ignore_name(p.name):
            files.append(p)
    return sorted(set(files))


def sniff_mime_type(path: pathlib.Path, file_cmd: str = DEFAULT_FILE_CMD) -> str:
    cmd = [file_cmd, "--mime-type", "-b", "--dereference", str(path)]
    _print_command(cmd)
    try:
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as exc:
        raise SniffError(path, f"cannot run {file_cmd!r}: {exc}") from exc
    stdout = proc.stdout.decode("utf-8", "replace")
    if proc.returncode != 0:
        err = proc.stderr.decode("utf-8", "replace").strip()
        raise SniffError(path, f"{file_cmd} exited with {proc.returncode}: {err}")
    mime = stdout.strip()
    if not mime or "\n" in mime:
        raise SniffError(path, f"unparsable output {stdout!r}")
    return mime


def probe_json(
    path: pathlib.Path, ffprobe_cmd: str = DEFAULT_FFPROBE
) -> Dict[str, Any]:
    cmd = [
        ffprobe_cmd,
        "-print_format",
        "json",
        "-hide_banner",
        "-loglevel",
        "error",
        "-show_streams",
        "-show_format",
        str(path),
    ]
    _print_command(cmd)
    try:
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as exc:
        raise ProbeError(path, f"cannot run {ffprobe_cmd!r}: {exc}") from exc
    stdout = proc.stdout.decode("utf-8", "replace")
    if proc.returncode != 0:
        err = proc.stderr.decode("utf-8", "replace").strip() or stdout.strip()
        raise ProbeError(path, f"{ffprobe_cmd} exited with {proc.returncode}: {err}")
    try:
        data = json.loads(stdout)
    except ValueError as exc:
        raise ProbeError(path, f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ProbeError(path, "invalid JSON: expected an object")
    return cast(Dict[str, Any], data)


def _parse_fraction(value: Any) -> Optional[float]:
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    if not isinstance(value, str):
        return None
    s = value.strip()
    if "/" in s:
        num, den = s.split("/", 1)
        try:
            result = float(num) / float(den)
        except (ValueError, ZeroDivisionError):
            return None
    else:
        try:
            result = float(s)
        except ValueError:
            return None
    return result if result > 0 else None


def _parse_duration(value: Any) -> Optional[float]:
    try:
        duration = float(value)
    except (TypeError, ValueError):
        return None
    if duration != duration or duration <= 0:
        return None
    return duration


def _is_attached_picture(stream: Dict[str, Any]) -> bool:
    disposition = stream.get("disposition")
    return isinstance(disposition, dict) and disposition.get("attached_pic") == 1


def _first_stream(streams: List[Any], codec_type: str) -> Optional[Dict[str, Any]]:
    for stream in streams:
        if not isinstance(stream, dict) or stream.get("codec_type") != codec_type:
            continue
        if codec_type == "video" and _is_attached_picture(stream):
            continue
        return stream
    return None


def _video_info(path: Any, stream: Dict[str, Any]) -> VideoInfo:
    width = stream.get("width")
    height = stream.get("height")
    if not isinstance(width, int) or width <= 0:
        raise ProbeError(path, "video stream has no width")
    if not isinstance(height, int) or height <= 0:
        raise ProbeError(path, "video stream has no height")
    fps = _parse_fraction(stream.get("avg_frame_rate"))
    if fps is None:
        fps = _parse_fraction(stream.get("r_frame_rate"))
    if fps is None:
        raise ProbeError(path, "video stream has no frame rate")
    codec = stream.get("codec_name")
    if not isinstance(codec, str) or not codec:
        raise ProbeError(path, "video stream has no codec name")
    return VideoInfo(width=width, height=height, fps=fps, codec=codec)


def _audio_info(path: Any, stream: Dict[str, Any]) -> AudioInfo:
    codec = stream.get("codec_name")
    if not isinstance(codec, str) or not codec:
        raise ProbeError(path, "audio stream has no codec name")
    return AudioInfo(codec=codec)


def parse_probe(
    path: Any, data: Dict[str, Any], strict: bool = True
) -> Optional[ProbeInfo]:
    fmt = data.get("format")
    if not isinstance(fmt, dict):
        raise ProbeError(path, "missing format section")
    format_name = fmt.get("format_name")
    if not isinstance(format_name, str) or not format_name:
        raise ProbeError(path, "missing format name")

    verdict = _classify(format_name, FORMAT_ALLOW, FORMAT_DENY)
    if verdict is None:
        if strict:
            raise ProbeError(path, f"unknown container format {format_name!r}")
        logging.warning("unknown container format %r, skipping: %s", format_name, path)
        return None
    if not verdict:
        logging.info("not a media container (%s): %s", format_name, path)
        return None

    duration = _parse_duration(fmt.get("duration"))
    if duration is None:
        logging.info("no usable duration, skipping: %s", path)
        return None

    streams = data.get("streams")
    if streams is None:
        streams = []
    if not isinstance(streams, list):
        raise ProbeError(path, "malformed streams section")

    video_stream = _first_stream(streams, "video")
    audio_stream = _first_stream(streams, "audio")
    return {
        "format_name": format_name,
        "duration": duration,
        "video": _video_info(path, video_stream) if video_stream else None,
        "audio": _audio_info(path, audio_stream) if audio_stream else None,
    }


def _resolve_inside(path: pathlib.Path, base: pathlib.Path) -> pathlib.Path:
    try:
        resolved = path.resolve(strict=True)
    except OSError as exc:
        raise PathResolutionError(path, exc.strerror or str(exc)) from exc
    if resolved != base and base not in resolved.parents:
        raise PathResolutionError(path, f"outside of {base}")
    return resolved


def discover_sources(
    paths: Iterable[Union[str, pathlib.Path]],
    base_dir: Union[str, pathlib.Path],
    *,
    strict: bool = True,
    file_cmd: str = DEFAULT_FILE_CMD,
    ffprobe_cmd: str = DEFAULT_FFPROBE,
) -> DiscoveryResult:
    try:
        base = pathlib.Path(base_dir).resolve(strict=True)
    except OSError as exc:
        raise PathResolutionError(base_dir, exc.strerror or str(exc)) from exc
    if not base.is_dir():
        raise PathResolutionError(base_dir, "not a directory")

    result: DiscoveryResult = {"sources": [], "skipped": [], "errors": []}

    roots: List[pathlib.Path] = []
    for p in paths:
        try:
            roots.append(_resolve_inside(pathlib.Path(p), base))
        except PathResolutionError as exc:
            logging.error("%s", exc)
            result["errors"].append(exc)

    candidates: List[pathlib.Path] = []
    for path in expand_paths(roots):
        try:
            mime = sniff_mime_type(path, file_cmd)
        except SniffError as exc:
            logging.error("%s", exc)
            result["errors"].append(exc)
            continue
        verdict = _classify(mime, MIME_ALLOW, MIME_DENY)
        if verdict is None and strict:
            err = SniffError(path, f"unknown mime type {mime!r}")
            logging.error("%s", err)
            result["errors"].append(err)
        elif not verdict:
            if verdict is None:
                logging.warning("unknown mime type %r, skipping: %s", mime, path)
            else:
                logging.info("not media (%s): %s", mime, path)
            result["skipped"].append(BasedPath(path, base))
        else:
            candidates.append(path)

    sources: Dict[pathlib.Path, Source] = {}
    for path in candidates:
        try:
            info = parse_probe(path, probe_json(path, ffprobe_cmd), strict)
        except ProbeError as exc:
            logging.error("%s", exc)
            result["errors"].append(exc)
            continue
        if info is None:
            result["skipped"].append(BasedPath(path, base))
            continue
        sources[path] = Source(
            path=BasedPath(path, base),
            format_name=info["format_name"],
            duration=info["duration"],
            video=info["video"],
            audio=info["audio"],
        )

    result["sources"] = [sources[p] for p in sorted(sources)]
    result["skipped"].sort(key=lambda bp: bp.path)
    logging.info(
        "discovered %d sources (%d skipped, %d errors)",
        len(result["sources"]),
        len(result["skipped"]),
        len(result["errors"]),
    )
    return result


@dataclass(frozen=True)
class H264Codec:
    crf: int = 18
    speed: str = "medium"

    def ffmpeg_args(self) -> List[str]:
        return [
            "-c:v",
            "libx264",
            "-level",
            "4.1",
            "-preset",
            self.speed,
            "-crf",
            str(self.crf),
        ]


@dataclass(frozen=True)
class OpusCodec:
    bitrate: int = 192

    def ffmpeg_args(self) -> List[str]:
        return ["-c:a", "libopus", "-b:a", f"{self.bitrate}k"]


@dataclass(frozen=True)
class MatroskaCodec:
    video: H264Codec = field(default_factory=H264Codec)
    audio: OpusCodec = field(default_factory=OpusCodec)
    extension: str = ".mkv"

    def encoder_args(self, source: Source, target: "Target") -> List[str]:
        return ["-f", "matroska"] + self.video.ffmpeg_args() + self.audio.ffmpeg_args()


def _take(args: List[str], what: str) -> str:
    if not args:
        raise CodecError(f"too few arguments: missing {what}")
    return args.pop(0)


def _parse_int(raw: str, low: int, high: int, what: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise CodecError(f"invalid argument {raw!r}: {what} must be a number") from None
    if not low <= value <= high:
        raise CodecError(
            f"invalid argument {raw!r}: {what} must be between {low} and {high}"
        )
    return value


def parse_codec(selector: Optional[str]) -> MatroskaCodec:
    if not selector:
        return MatroskaCodec()
    args = [a.strip() for a in selector.split(",")]

    container = _take(args, "container")
    if container != "mkv":
        raise CodecError(f"invalid argument {container!r}: unsupported container")

    video_name = _take(args, "video codec")
    if video_name != "h264":
        raise CodecError(f"invalid argument {video_name!r}: unsupported video codec")
    crf = _parse_int(_take(args, "crf"), 0, 51, "CRF")
    speed = _take(args, "speed")
    if speed not in X264_SPEEDS:
        raise CodecError(
            f"invalid argument {speed!r}: speed must be one of {', '.join(X264_SPEEDS)}"
        )

    audio_name = _take(args, "audio codec")
    if audio_name != "opus":
        raise CodecError(f"invalid argument {audio_name!r}: unsupported audio codec")
    bitrate = _parse_int(_take(args, "bitrate"), 6, 255, "bitrate")

    if args:
        raise CodecError(f"too many arguments: {','.join(args)}")
    return MatroskaCodec(video=H264Codec(crf, speed), audio=OpusCodec(bitrate))


@dataclass(frozen=True)
class Target:
    path: pathlib.Path
    tmp_path: pathlib.Path


def temp_hash(path: Union[str, pathlib.Path]) -> str:
    data = os.fsencode(str(path))
    return hashlib.blake2b(
        data, digest_size=TEMP_HASH_BYTES, key=TEMP_HASH_KEY
    ).hexdigest()


def temp_path_for(path: pathlib.Path) -> pathlib.Path:
    return path.with_name(f"{path.stem} - {temp_hash(path)}{path.suffix}")


def resolve_target(
    root: Union[str, pathlib.Path],
    relative: Union[str, pathlib.Path],
    extension: str,
) -> Target:
    if extension and not extension.startswith("."):
        extension = "." + extension
    joined = pathlib.Path(root) / pathlib.Path(relative).with_suffix(extension)
    final = pathlib.Path(os.path.abspath(joined))
    if os.path.lexists(final):
        raise TargetConflictError(final)
    return Target(path=final, tmp_path=temp_path_for(final))


def remove_stale_temp(target: Target) -> bool:
    try:
        os.remove(target.tmp_path)
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise FilesystemError(
            target.tmp_path, f"cannot remove temporary file: {exc}"
        ) from exc
    logging.info("removed stale temporary file: %s", target.tmp_path)
    return True


def ensure_parent_dirs(target: Target) -> None:
    try:
        target.path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FilesystemError(
            target.path.parent, f"cannot create directory: {exc}"
        ) from exc


def commit_target(target: Target) -> None:
    try:
        os.replace(target.tmp_path, target.path)
    except OSError as exc:
        raise FilesystemError(
            target.path, f"cannot move {target.tmp_path} into place: {exc}"
        ) from exc


class Conversion(TypedDict):
    id: int
    source: Source
    target: Target
    status: Status


def resolve_target_root(target_root: Union[str, pathlib.Path]) -> pathlib.Path:
    root = pathlib.Path(os.path.abspath(target_root))
    if root.exists() and not root.is_dir():
        raise PathResolutionError(target_root, "target root is not a directory")
    return root


def build_conversions(
    sources: Iterable[Source],
    target_root: Union[str, pathlib.Path],
    codec: MatroskaCodec,
) -> Tuple[List[Conversion], List[pathlib.Path]]:
    root = resolve_target_root(target_root)
    conversions: List[Conversion] = []
    skipped: List[pathlib.Path] = []
    claimed = set()
    for source in sources:
        try:
            target = resolve_target(root, source.path.relative, codec.extension)
            if target.path in claimed:
                raise TargetConflictError(target.path, "already claimed in this batch")
        except TargetConflictError as exc:
            logging.info("%s", exc)
            skipped.append(cast(pathlib.Path, exc.path))
            continue
        claimed.add(target.path)
        conversions.append(
            {
                "id": len(conversions),
                "source": source,
                "target": target,
                "status": Pending(source.weight),
            }
        )
    return conversions, skipped


def total_status(conversions: Sequence[Conversion]) -> Optional[Status]:
    return merge_all(c["status"] for c in conversions)


def build_encoder_command(
    conversion: Conversion,
    codec: MatroskaCodec,
    encoder: str = DEFAULT_ENCODER,
    dry_run: bool = False,
) -> List[str]:
    source = conversion["source"]
    target = conversion["target"]
    cmd = [encoder, "-i", str(source.path.path)]
    cmd += codec.encoder_args(source, target)
    if dry_run:
        cmd += ["-y", os.devnull]
    else:
        cmd.append(str(target.tmp_path))
    return cmd


def encode_progress(cmd: Sequence[str], path: Any = None) -> Iterator[float]:
    _print_command(cmd)
    with tempfile.TemporaryFile() as stdout_file:
        try:
            proc = subprocess.Popen(
                list(cmd),
                stdin=subprocess.DEVNULL,
                stdout=stdout_file,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise EncoderSpawnError(cmd[0], exc.strerror or str(exc)) from exc

        assert proc.stderr is not None
        matcher = StreamMatcher(TIME_PATTERN, proc.stderr, window=TIME_MATCH_WINDOW)
        read_error: Optional[StreamReadError] = None
        try:
            try:
                for groups in matcher:
                    yield elapsed_seconds(groups)
            except StreamReadError as exc:
                read_error = exc
            returncode = proc.wait()
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            proc.stderr.close()

        if read_error is not None:
            raise read_error
        if returncode != 0 or matcher.matches == 0:
            stdout_file.seek(0)
            stdout = stdout_file.read().decode("utf-8", "replace")
            raise EncoderRuntimeError(path, returncode, stdout, matcher.text)


UpdateCallback = Callable[[List[Conversion], Optional[Status]], None]


def convert_one(
    conversions: List[Conversion],
    index: int,
    codec: MatroskaCodec,
    *,
    encoder: str = DEFAULT_ENCODER,
    dry_run: bool = False,
    on_update: Optional[UpdateCallback] = None,
) -> None:
    conversion = conversions[index]
    source = conversion["source"]
    target = conversion["target"]

    def notify() -> None:
        if on_update is not None:
            on_update(conversions, total_status(conversions))

    conversion["status"] = start(conversion["status"])
    notify()

    cmd = build_encoder_command(conversion, codec, encoder, dry_run)
    if not dry_run:
        ensure_parent_dirs(target)
        remove_stale_temp(target)

    for elapsed in encode_progress(cmd, source.path.path):
        processed = elapsed / source.duration * source.weight
        conversion["status"] = advance(conversion["status"], processed)
        notify()

    if not dry_run:
        commit_target(target)
    conversion["status"] = finish(conversion["status"])
    notify()
    logging.info("converted: %s -> %s", source.path.path, target.path)


def convert(
    conversions: List[Conversion],
    codec: MatroskaCodec,
    *,
    encoder: str = DEFAULT_ENCODER,
    dry_run: bool = False,
    on_failure: str = "continue",
    on_update: Optional[UpdateCallback] = None,
) -> List[Tuple[Conversion, ConvertError]]:
    if on_failure not in ON_FAILURE_CHOICES:
        raise ValueError(f"unknown failure policy: {on_failure}")
    failures: List[Tuple[Conversion, ConvertError]] = []
    for index, conversion in enumerate(conversions):
        try:
            convert_one(
                conversions,
                index,
                codec,
                encoder=encoder,
                dry_run=dry_run,
                on_update=on_update,
            )
        except ConvertError as exc:
            if isinstance(conversion["status"], Running):
                conversion["status"] = fail(conversion["status"])
            if on_update is not None:
                on_update(conversions, total_status(conversions))
            logging.error("conversion failed: %s", exc)
            failures.append((conversion, exc))
            if on_failure == "abort" or isinstance(exc, EncoderSpawnError):
                raise
    return failures


_CENTI_MINUTE = 60 * 100
_CENTI_HOUR = 60 * _CENTI_MINUTE
_CENTI_DAY = 24 * _CENTI_HOUR
_CENTI_YEAR = 365 * _CENTI_DAY


def format_centiseconds(num: int) -> str:
    sign = "-" if num < 0 else ""
    num = abs(num)
    years, rest = divmod(num, _CENTI_YEAR)
    days, rest = divmod(rest, _CENTI_DAY)
    hours, rest = divmod(rest, _CENTI_HOUR)
    minutes, rest = divmod(rest, _CENTI_MINUTE)
    seconds, centis = divmod(rest, 100)
    parts = [sign]
    if num >= _CENTI_YEAR:
        parts.append(f"{years}y ")
    if num >= _CENTI_DAY:
        parts.append(f"{days}d ")
    if num >= _CENTI_HOUR:
        parts.append(f"{hours:02}:")
    if num >= _CENTI_MINUTE:
        parts.append(f"{minutes:02}:")
    parts.append(f"{seconds:02}.{centis:02}")
    return "".join(parts)


def format_seconds(seconds: float) -> str:
    return format_centiseconds(int(round(seconds * 100)))


def truncate_left(text: str, max_width: int, filler: str = "...") -> str:
    if len(text) <= max_width:
        return text
    if max_width < len(filler) + 1:
        return text[:max_width]
    return filler + text[len(text) - max_width + len(filler) :]


def _time_cell(status: Status, now: Optional[float]) -> str:
    if isinstance(status, (Done, Failed)):
        return format_seconds(status.duration)
    remaining = eta(status, now)
    return "" if remaining is None else format_seconds(remaining)


def _display_path(path: pathlib.Path) -> str:
    try:
        return os.path.relpath(path)
    except ValueError:
        return str(path)


def status_rows(
    conversions: Sequence[Conversion], now: Optional[float] = None
) -> List[List[str]]:
    rows = [
        [
            truncate_left(_display_path(c["target"].path), 60),
            status_label(c["status"]),
            _time_cell(c["status"], now),
        ]
        for c in conversions
    ]
    total = total_status(conversions)
    if total is not None:
        rows.append([])
        rows.append(["Total", status_label(total), _time_cell(total, now)])
    return rows


def render_table(
    rows: Sequence[Sequence[str]], headers: Optional[Sequence[str]] = None
) -> List[str]:
    table = [list(headers)] if headers else []
    table += [list(r) for r in rows]
    ncols = max((len(r) for r in table), default=0)
    if ncols == 0:
        return []
    widths = [0] * ncols
    for row in table:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    lines = []
    for row in table:
        cells = list(row) + [""] * (ncols - len(row))
        lines.append(" | ".join(cell.ljust(widths[i]) for i, cell in enumerate(cells)))
    return lines


class ProgressTable:
    def __init__(self, stream: Optional[IO[str]] = None) -> None:
        self.stream = stream if stream is not None else sys.stdout
        self.lines = 0

    def erase(self) -> None:
        self.stream.write("\x1b[2K\x1b[A" * self.lines + "\r")
        self.lines = 0

    def draw(
        self, conversions: Sequence[Conversion], now: Optional[float] = None
    ) -> None:
        self.erase()
        lines = render_table(status_rows(conversions, now), ["Path", "Status", "Eta"])
        for line in lines:
            self.stream.write(line.rstrip() + "\n")
        self.stream.flush()
        self.lines = len(lines)

    def __call__(self, conversions: List[Conversion], total: Optional[Status]) -> None:
        self.draw(conversions)


def prompt_continue() -> bool:
    try:
        answer = input("Continue? [Y/n] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("", "y", "yes")


def _print_skipped(title: str, paths: Sequence[Any]) -> None:
    if not paths:
        return
    print(title)
    for path in paths:
        print(f"      {path}")
    print("")


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        description="Convert audio/video files to Matroska (H.264 + Opus) with ffmpeg."
    )
    ap.add_argument("target_dir", help="Directory receiving the converted files.")
    ap.add_argument("paths", nargs="+", help="Files or directories to convert.")
    ap.add_argument(
        "--source-dir",
        default=os.getenv("VCONVERT_SOURCE_DIR", "."),
        help="Base directory; inputs must live below it and keep their layout.",
    )
    ap.add_argument(
        "--codec",
        default=os.getenv("VCONVERT_CODEC", DEFAULT_CODEC),
        help=f"Codec selector (e.g. {DEFAULT_CODEC}).",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Run the encoder but discard its output.",
    )
    ap.add_argument(
        "-y", "--yes", action="store_true", help="Do not ask before converting."
    )
    ap.add_argument(
        "--on-failure",
        choices=ON_FAILURE_CHOICES,
        default=os.getenv("VCONVERT_ON_FAILURE", "continue"),
        help="Keep going or stop after a failed conversion.",
    )
    ap.add_argument(
        "--skip-unknown",
        action="store_true",
        help="Skip files of unrecognized type or container instead of failing.",
    )
    ap.add_argument("--encoder", default=os.getenv("VCONVERT_FFMPEG", DEFAULT_ENCODER))
    ap.add_argument("--ffprobe", default=os.getenv("VCONVERT_FFPROBE", DEFAULT_FFPROBE))
    ap.add_argument("--file-cmd", default=os.getenv("VCONVERT_FILE", DEFAULT_FILE_CMD))
    ap.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv).",
    )
    args = ap.parse_args(argv)

    level = (
        logging.WARNING
        if args.verbose == 0
        else (logging.INFO if args.verbose == 1 else logging.DEBUG)
    )
    logging.basicConfig(
        level=level, stream=sys.stderr, format="%(levelname)s: %(message)s"
    )

    # argparse does not check choices against environment defaults.
    if args.on_failure not in ON_FAILURE_CHOICES:
        logging.error(
            "--on-failure: invalid choice %r (choose from %s)",
            args.on_failure,
            ", ".join(ON_FAILURE_CHOICES),
        )
        return 1

    try:
        codec = parse_codec(args.codec)
    except CodecError as exc:
        logging.error("--codec: %s", exc)
        return 1

    try:
        discovery = discover_sources(
            args.paths,
            args.source_dir,
            strict=not args.skip_unknown,
            file_cmd=args.file_cmd,
            ffprobe_cmd=args.ffprobe,
        )
        conversions, existing = build_conversions(
            discovery["sources"], args.target_dir, codec
        )
    except PathResolutionError as exc:
        logging.error("%s", exc)
        return 1

    errors = discovery["errors"]
    if errors and args.on_failure == "abort":
        logging.error("aborting: %d input(s) could not be examined", len(errors))
        return 1

    _print_skipped(
        "Skipping non video/audio files:", [bp.relative for bp in discovery["skipped"]]
    )
    _print_skipped("Skipping existing targets:", existing)

    if not conversions:
        logging.warning("no sources found")
        return 1 if errors else 0

    print(f"Converting to {resolve_target_root(args.target_dir)}:")
    for c in conversions:
        print(f"{c['id']:>4}: {c['source'].path.relative}")
    print("")

    if not args.yes and not prompt_continue():
        return 1 if errors else 0
    print("")

    table = ProgressTable()
    try:
        failures = convert(
            conversions,
            codec,
            encoder=args.encoder,
            dry_run=args.dry_run,
            on_failure=args.on_failure,
            on_update=table,
        )
    except ConvertError as exc:
        table.draw(conversions)
        logging.error("aborted: %s", exc)
        if isinstance(exc, EncoderRuntimeError) and exc.output.strip():
            print(exc.output.rstrip(), file=sys.stderr)
        return 1
    table.draw(conversions)

    for conversion, exc in failures:
        logging.error("%s: %s", conversion["source"].path.relative, exc)
        if isinstance(exc, EncoderRuntimeError) and exc.output.strip():
            print(exc.output.rstrip(), file=sys.stderr)

    logging.warning(
        "converted (this run): %d / %d",
        len(conversions) - len(failures),
        len(conversions),
    )
    return 1 if failures or errors else 0


if __name__ == "__main__":
    sys.exit(main())
