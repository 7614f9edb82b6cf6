# === NAVMAP v1 ===
# {
#   "module": "RangeRelay.pipeline",
#   "purpose": "Download, remux, and upload with all three stages overlapping",
#   "sections": [
#     {"id": "transcoder", "name": "Transcoder", "anchor": "class-transcoder", "kind": "class"},
#     {"id": "ffmpegremuxer", "name": "FFmpegRemuxer", "anchor": "class-ffmpegremuxer", "kind": "class"},
#     {"id": "relayresult", "name": "RelayResult", "anchor": "class-relayresult", "kind": "class"},
#     {"id": "relaypipeline", "name": "RelayPipeline", "anchor": "class-relaypipeline", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""End-to-end relay job.

A job downloads a video stream and an audio stream in parallel, exposes both
through a :class:`~RangeRelay.server.PartialContentServer`, lets an external
transcoder mux them into one output file, and uploads that output while the
transcoder is still writing it.

Stage coupling:

- The transcoder starts once both inputs are sized and partitioned.  Its
  HTTP reads are gated on part availability, so it never sees unwritten bytes.
- The upload stream starts with the transcoder and finishes after the
  transcoder exits successfully, which fires the completion signal.
- The first failure in any stage cancels the others.  The server is always
  closed; partial files stay on disk for the caller to discard.
"""

from __future__ import annotations

import logging
import subprocess
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

import httpx

from .cancellation import CancellationToken, ensure_token
from .download import ChunkDownloadEngine, DownloadReport
from .errors import CancellationError, TranscodeError
from .formats import MediaSource
from .invoker_pool import InvokerPool
from .network.client import create_http_client
from .partitioned_file import PartitionedFile
from .server import PartialContentServer
from .settings import RelaySettings, get_settings
from .upload import StreamUploader, UploadSummary

logger = logging.getLogger(__name__)

VIDEO_ROUTE = "/video"
AUDIO_ROUTE = "/audio"


class Transcoder(Protocol):
    """External process turning input URLs into one output file."""

    def run(self, inputs: Sequence[str], output: Path, token: CancellationToken) -> None: ...


class FFmpegRemuxer:
    """Stream-copy remux through the ``ffmpeg`` executable.

    The output is written as fragmented MP4 so it only ever grows, which is
    what the growing-file upload expects.
    """

    DEFAULT_OUTPUT_ARGS = ("-f", "mp4", "-movflags", "frag_keyframe+empty_moov")

    def __init__(
        self,
        executable: str = "ffmpeg",
        *,
        output_args: Sequence[str] = DEFAULT_OUTPUT_ARGS,
        poll_interval: float = 0.1,
    ) -> None:
        self.executable = executable
        self.output_args = list(output_args)
        self.poll_interval = poll_interval

    def build_command(self, inputs: Sequence[str], output: Path) -> List[str]:
        command = [self.executable, "-hide_banner", "-loglevel", "error", "-nostdin"]
        for source in inputs:
            command.extend(["-i", source])
        for index in range(len(inputs)):
            command.extend(["-map", str(index)])
        command.extend(["-c", "copy", *self.output_args, "-y", str(output)])
        return command

    def run(self, inputs: Sequence[str], output: Path, token: CancellationToken) -> None:
        command = self.build_command(inputs, output)
        logger.info("transcoder starting", extra={"command": command})
        with tempfile.TemporaryFile() as stderr:
            try:
                process = subprocess.Popen(
                    command, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=stderr
                )
            except OSError as exc:
                raise TranscodeError(f"Cannot start {self.executable}: {exc}") from exc

            while True:
                try:
                    returncode = process.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    if token.is_cancelled():
                        process.terminate()
                        try:
                            process.wait(timeout=5)
                        except subprocess.TimeoutExpired:
                            process.kill()
                            process.wait()
                        raise CancellationError("transcoder cancelled")

            if returncode != 0:
                stderr.seek(0)
                detail = stderr.read().decode("utf-8", errors="replace").strip()
                raise TranscodeError(
                    f"{self.executable} exited with status {returncode}: {detail}",
                    returncode=returncode,
                    stderr=detail,
                )
        logger.info("transcoder finished", extra={"output": str(output)})


@dataclass(frozen=True)
class RelayResult:
    output: Path
    video: DownloadReport
    audio: DownloadReport
    upload: Optional[UploadSummary] = None


class RelayPipeline:
    """Run one download, remux, and upload job.

    Args:
        settings: Relay settings; process-wide settings when omitted.
        transcoder: Transcoder reading the two served inputs.
        pool: Upload destinations.  Without a pool the output is only written.
        client: Shared HTTP client for the downloads; created when omitted.
    """

    def __init__(
        self,
        settings: Optional[RelaySettings] = None,
        *,
        transcoder: Optional[Transcoder] = None,
        pool: Optional[InvokerPool] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.transcoder = transcoder or FFmpegRemuxer()
        self.pool = pool
        self._client = client

    def run(
        self,
        video: MediaSource,
        audio: MediaSource,
        *,
        work_dir: Optional[Path] = None,
        output_name: str = "output.mp4",
        token: Optional[CancellationToken] = None,
    ) -> RelayResult:
        """Execute the job and return what was produced.

        Raises:
            RangeRelayError: The first failure of any stage.
        """
        token = ensure_token(token)
        scope = token.child()
        work_dir = Path(work_dir or self.settings.work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        video_file = PartitionedFile(work_dir / f"video.{video.ext or 'mp4'}")
        audio_file = PartitionedFile(work_dir / f"audio.{audio.ext or 'm4a'}")
        output = work_dir / output_name
        output.unlink(missing_ok=True)

        client = self._client
        owns_client = client is None
        if client is None:
            client = create_http_client(self.settings.download)
        engine = ChunkDownloadEngine(self.settings.download, client=client)
        server = PartialContentServer(
            self.settings.server.model_copy(update={"gate_on_availability": True}),
            poll_interval=self.settings.streaming.availability_poll_interval_sec,
            token=scope,
        )
        done = threading.Event()
        downloads: List[Future] = []
        uploads: List[Future] = []

        def _cancel_on_failure(future: Future) -> None:
            if future.exception() is not None:
                scope.cancel()

        executor = ThreadPoolExecutor(max_workers=3, thread_name_prefix="rangerelay-job")
        try:
            server.start()
            server.add_file(VIDEO_ROUTE, video_file)
            server.add_file(AUDIO_ROUTE, audio_file)
            for source, target in ((video, video_file), (audio, audio_file)):
                future = executor.submit(engine.download, source, target, token=scope)
                future.add_done_callback(_cancel_on_failure)
                downloads.append(future)

            self._wait_until_partitioned((video_file, audio_file), downloads, scope)

            if self.pool is not None:
                uploader = StreamUploader(
                    self.pool,
                    part_size=self.settings.streaming.upload_part_size,
                    concurrency=self.settings.streaming.upload_concurrency,
                    poll_interval=self.settings.streaming.poll_interval_sec,
                )
                future = executor.submit(uploader.upload, output, done, token=scope)
                future.add_done_callback(_cancel_on_failure)
                uploads.append(future)

            self.transcoder.run(
                [server.url_for(VIDEO_ROUTE), server.url_for(AUDIO_ROUTE)], output, scope
            )
            done.set()

            video_report = downloads[0].result()
            audio_report = downloads[1].result()
            summary = uploads[0].result() if uploads else None
        except Exception as exc:
            scope.cancel()
            executor.shutdown(wait=True)
            failure = _first_failure(downloads + uploads, exc)
            if failure is exc:
                raise
            raise failure from exc
        finally:
            executor.shutdown(wait=True)
            server.close()
            if owns_client:
                client.close()
            token.remove_child(scope)

        logger.info("relay complete", extra={"output": str(output)})
        return RelayResult(output=output, video=video_report, audio=audio_report, upload=summary)

    def _wait_until_partitioned(
        self,
        files: Sequence[PartitionedFile],
        downloads: Sequence[Future],
        token: CancellationToken,
    ) -> None:
        interval = self.settings.streaming.poll_interval_sec
        while not all(pfile.partitioned for pfile in files):
            for future in downloads:
                if future.done() and future.exception() is not None:
                    raise future.exception()
            if token.wait(interval):
                raise CancellationError("relay cancelled before inputs were sized")


def _first_failure(futures: Sequence[Future], fallback: BaseException) -> BaseException:
    """Prefer the root cause over the cancellations it triggered elsewhere."""
    for future in futures:
        if future.done() and not future.cancelled():
            error = future.exception()
            if error is not None and not isinstance(error, CancellationError):
                return error
    return fallback


__all__ = [
    "AUDIO_ROUTE",
    "FFmpegRemuxer",
    "RelayPipeline",
    "RelayResult",
    "Transcoder",
    "VIDEO_ROUTE",
]
