"""Download model files from remote sources with progress and cancellation."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from collections.abc import Callable
from pathlib import Path

import httpx

from quill_local.cancel import CancelToken
from quill_local.errors import (
    DownloadCancelledError,
    DownloadFailedError,
    IncompleteDownloadError,
)
from quill_local.models.registry import ModelConfig, models_dir, resolve_uri

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

_CHUNK_SIZE = 131_072
_TIMEOUT = httpx.Timeout(30, read=300)


class DownloadCoordinator:
    """Fetch a registry entry into ``<root>/models/<file_name>``.

    Downloads are idempotent: an existing file is returned without any
    network access.  The transfer streams into a ``.part`` file that is
    renamed into place only once it is complete and verified, so the
    final path never holds a partial artifact.

    Args:
        root: Application data directory (default: ``data_dir()``).
        transport: Optional httpx transport, e.g. ``httpx.MockTransport``.
    """

    def __init__(
        self,
        root: Path | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        chunk_size: int = _CHUNK_SIZE,
    ) -> None:
        self._root = root
        self._transport = transport
        self._chunk_size = chunk_size

    def target_path(self, config: ModelConfig) -> Path:
        return models_dir(self._root) / config.file_name

    async def download(
        self,
        config: ModelConfig,
        on_progress: ProgressCallback,
        cancel: CancelToken,
    ) -> Path:
        """Return the local path for *config*, downloading if necessary.

        Raises ``DownloadCancelledError`` when *cancel* fires,
        ``IncompleteDownloadError`` when the file is short or missing after
        the transfer, and ``DownloadFailedError`` for any other failure.
        """
        dest = self.target_path(config)
        if dest.is_file():
            logger.info("Model %s already present at %s", config.id, dest)
            on_progress(100)
            return dest

        if cancel.cancelled:
            raise DownloadCancelledError(f"Download of {config.id!r} cancelled")

        url = resolve_uri(config.uri)
        part = dest.with_name(dest.name + ".part")
        logger.info(
            "Downloading %s (~%d MB) from %s",
            config.display_name,
            config.size_bytes // 1_000_000,
            url,
        )

        # Cancelling the task interrupts a transfer stalled on the socket,
        # not just one that is between chunks.
        loop = asyncio.get_running_loop()
        transfer = asyncio.ensure_future(
            self._transfer(url, part, config, on_progress, cancel)
        )
        remove_cb = cancel.add_callback(
            lambda: loop.call_soon_threadsafe(transfer.cancel)
        )
        try:
            await transfer
            os.replace(part, dest)
        except asyncio.CancelledError:
            if not cancel.cancelled:
                raise
            logger.info("Download of %s cancelled", config.id)
            raise DownloadCancelledError(
                f"Download of {config.id!r} cancelled"
            ) from None
        except (DownloadFailedError, DownloadCancelledError):
            raise
        except httpx.HTTPStatusError as exc:
            msg = f"HTTP {exc.response.status_code} fetching {url}"
            raise DownloadFailedError(msg) from exc
        except httpx.HTTPError as exc:
            raise DownloadFailedError(f"Transport error fetching {url}: {exc}") from exc
        except OSError as exc:
            raise DownloadFailedError(f"Could not write {part}: {exc}") from exc
        finally:
            remove_cb()
            part.unlink(missing_ok=True)

        if not dest.is_file():
            msg = f"Model {config.id!r} downloaded but {dest} does not exist"
            raise IncompleteDownloadError(msg)

        logger.info("Model download complete: %s", dest)
        on_progress(100)
        return dest

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    async def _transfer(
        self,
        url: str,
        part: Path,
        config: ModelConfig,
        on_progress: ProgressCallback,
        cancel: CancelToken,
    ) -> None:
        part.parent.mkdir(parents=True, exist_ok=True)
        digest = hashlib.sha256() if config.sha256 else None

        async with httpx.AsyncClient(
            transport=self._transport, follow_redirects=True, timeout=_TIMEOUT
        ) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                total = int(response.headers.get("content-length", 0))
                downloaded = 0

                with part.open("wb") as f:
                    async for chunk in response.aiter_bytes(self._chunk_size):
                        if cancel.cancelled:
                            raise DownloadCancelledError(
                                f"Download of {config.id!r} cancelled"
                            )
                        f.write(chunk)
                        if digest is not None:
                            digest.update(chunk)
                        downloaded += len(chunk)
                        if total > 0:
                            pct = min(100, int(downloaded * 100 / total + 0.5))
                            logger.debug(
                                "Download progress %d%% (%d / %d bytes)",
                                pct,
                                downloaded,
                                total,
                            )
                            on_progress(pct)

                    f.flush()
                    os.fsync(f.fileno())

        if total > 0 and downloaded != total:
            msg = f"Incomplete download: got {downloaded} bytes, expected {total}"
            raise IncompleteDownloadError(msg)

        if digest is not None and digest.hexdigest() != config.sha256:
            msg = (
                f"Checksum mismatch for {config.id!r}: "
                f"expected {config.sha256}, got {digest.hexdigest()}"
            )
            raise DownloadFailedError(msg)
