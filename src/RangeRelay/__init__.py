"""Chunked range downloads, partial-content serving, and streaming uploads.

Public entry points:

- :class:`ChunkDownloadEngine` fills a :class:`PartitionedFile` with parallel
  range requests and per-part retry.
- :class:`PartialContentServer` exposes files that are still downloading over
  HTTP byte ranges.
- :class:`GrowingFileStreamer` and :class:`StreamUploader` forward a file that
  is still being written, chunk by chunk, through an :class:`InvokerPool`.
- :class:`RelayPipeline` wires the three together around an external
  transcoder.
"""

from .cancellation import CancellationToken
from .download import ChunkDownloadEngine, DownloadReport, download_chunked
from .errors import (
    AllocationError,
    BadStatusError,
    CancellationError,
    ConfigurationError,
    NoClientsError,
    RangeRelayError,
    RetryExhaustedError,
    SizeUnknownError,
    TranscodeError,
    TransientIOError,
)
from .formats import MediaSource, best_audio, best_video, select_formats
from .invoker_pool import HttpInvoker, Invoker, InvokerPool
from .partitioned_file import Part, PartitionedFile
from .pipeline import FFmpegRemuxer, RelayPipeline, RelayResult, Transcoder
from .server import PartialContentServer
from .settings import (
    DownloadConfiguration,
    LoggingConfiguration,
    RelaySettings,
    ServerConfiguration,
    StreamingConfiguration,
    get_settings,
    load_settings,
)
from .streaming import GrowingFileStreamer, StreamChunk, stream_growing_file
from .upload import StreamUploader, UploadPartRequest, UploadSummary

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "AllocationError",
    "BadStatusError",
    "CancellationError",
    "CancellationToken",
    "ChunkDownloadEngine",
    "ConfigurationError",
    "DownloadConfiguration",
    "DownloadReport",
    "FFmpegRemuxer",
    "GrowingFileStreamer",
    "HttpInvoker",
    "Invoker",
    "InvokerPool",
    "LoggingConfiguration",
    "MediaSource",
    "NoClientsError",
    "PartialContentServer",
    "Part",
    "PartitionedFile",
    "RangeRelayError",
    "RelayPipeline",
    "RelayResult",
    "RelaySettings",
    "RetryExhaustedError",
    "ServerConfiguration",
    "SizeUnknownError",
    "StreamChunk",
    "StreamUploader",
    "StreamingConfiguration",
    "Transcoder",
    "TranscodeError",
    "TransientIOError",
    "UploadPartRequest",
    "UploadSummary",
    "best_audio",
    "best_video",
    "download_chunked",
    "get_settings",
    "load_settings",
    "select_formats",
    "stream_growing_file",
]
