"""Embedded video download for link bookmarks using the yt-dlp binary."""
import asyncio
import logging
import mimetypes
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from services.exceptions import TransientUpstreamError

logger = logging.getLogger(__name__)

# yt-dlp messages meaning the page simply has no downloadable video
NO_VIDEO_MARKERS = (
    "Unsupported URL",
    "No video formats found",
    "Requested format is not available",
    "There's no video in this",
)


@dataclass(frozen=True)
class VideoDownload:
    """A downloaded video."""

    data: bytes
    content_type: str


class VideoExtractor(Protocol):
    """Capability that downloads the video embedded in a page, if any."""

    async def extract(self, url: str) -> VideoDownload | None:
        """
        Download the page's video.

        Returns:
            The video, or None if the page has none (or none small enough).

        Raises:
            TransientUpstreamError: Download failed or timed out.
        """
        ...


class YtDlpVideoExtractor:
    """VideoExtractor running yt-dlp in a subprocess."""

    def __init__(
        self,
        binary: str = "yt-dlp",
        *,
        max_size_mb: int = 50,
        timeout: float = 300.0,
    ) -> None:
        self.binary = binary
        self.max_size_mb = max_size_mb
        self.timeout = timeout

    @staticmethod
    def is_available(binary: str) -> bool:
        """Whether the yt-dlp binary can be found on PATH."""
        return shutil.which(binary) is not None

    async def extract(self, url: str) -> VideoDownload | None:
        """Download the best format under the size limit into a temp dir."""
        with tempfile.TemporaryDirectory(prefix="video-") as tmp:
            output = Path(tmp) / "video.%(ext)s"
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                url,
                "--no-playlist",
                "--quiet",
                "--no-warnings",
                "-f",
                f"best[filesize<{self.max_size_mb}M]",
                "-o",
                str(output),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
            except TimeoutError as e:
                proc.kill()
                await proc.wait()
                raise TransientUpstreamError(f"Video download timed out: {url}") from e

            if proc.returncode != 0:
                message = stderr.decode(errors="replace").strip()
                if any(marker in message for marker in NO_VIDEO_MARKERS):
                    logger.info("No downloadable video at %s", url)
                    return None
                raise TransientUpstreamError(
                    f"yt-dlp exited with {proc.returncode}: {message[:300]}",
                )

            files = sorted(Path(tmp).glob("video.*"))
            if not files:
                return None
            data = await asyncio.to_thread(files[0].read_bytes)
            content_type = mimetypes.guess_type(files[0].name)[0] or "video/mp4"
            return VideoDownload(data=data, content_type=content_type)
