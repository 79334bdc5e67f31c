"""Retrying HTTP downloads for directly linked archives.

The companion morphologic archive is served from a plain download link, so
it bypasses the browser and is fetched with :func:`download_with_retry`.
Attempts are driven by a Tenacity ``Retrying`` loop that waits ``2**attempt``
seconds between failures and gives up after ``max_attempts`` tries.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional, Union

import requests
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
)

from .errors import DownloadError

__all__ = ["DEFAULT_CHUNK_SIZE", "backoff_seconds", "download_with_retry", "stream_to_file"]

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1 << 20
_USER_AGENT = "labtaxa (+https://github.com/brownag/labtaxa)"


def backoff_seconds(retry_state: RetryCallState) -> float:
    """Return the delay after a failed attempt: ``2 ** attempt_number`` seconds."""

    return float(2 ** retry_state.attempt_number)


def stream_to_file(
    session: requests.Session,
    url: str,
    destination: Path,
    *,
    timeout: float,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> int:
    """Stream ``url`` into ``destination`` in binary mode, returning bytes written."""

    written = 0
    with session.get(
        url,
        stream=True,
        timeout=timeout,
        headers={"User-Agent": _USER_AGENT},
    ) as response:
        response.raise_for_status()
        with destination.open("wb") as handle:
            for chunk in response.iter_content(chunk_size):
                if not chunk:
                    continue
                handle.write(chunk)
                written += len(chunk)
    return written


def download_with_retry(
    url: str,
    destination: Union[str, os.PathLike],
    max_attempts: int = 3,
    verbose: bool = True,
    *,
    timeout: float = 3600,
    session: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Download ``url`` to ``destination``, retrying with exponential backoff.

    Each failed attempt may leave a partial file behind; the next attempt
    truncates and rewrites it.

    Args:
        url: Source URL.
        destination: Local file path to write.
        max_attempts: Total number of attempts before giving up.
        verbose: Emit progress messages when true.
        timeout: Per-attempt connect/read timeout in seconds.
        session: Optional ``requests`` session (a fresh one is used otherwise).
        sleep: Sleep function used between attempts.

    Returns:
        ``True`` once the file has been written.

    Raises:
        DownloadError: If every attempt failed.
        ValueError: If ``max_attempts`` is smaller than one.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    target = Path(destination)
    target.parent.mkdir(parents=True, exist_ok=True)
    owns_session = session is None
    http = session if session is not None else requests.Session()

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Download attempt %d failed: %s",
            retry_state.attempt_number,
            exc,
            extra={"stage": "download", "url": url, "attempt": retry_state.attempt_number},
        )
        if verbose:
            logger.info(
                "Retrying in %d seconds...",
                int(backoff_seconds(retry_state)),
                extra={"stage": "download"},
            )

    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=backoff_seconds,
        retry=retry_if_exception_type((requests.RequestException, OSError)),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=False,
    )

    try:
        for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                if verbose and number > 1:
                    logger.info(
                        "Download attempt %d/%d for %s",
                        number,
                        max_attempts,
                        target.name,
                        extra={"stage": "download", "attempt": number},
                    )
                written = stream_to_file(http, url, target, timeout=timeout)
    except RetryError as exc:
        last = exc.last_attempt.exception()
        logger.warning(
            "Download attempt %d failed: %s",
            max_attempts,
            last,
            extra={"stage": "download", "url": url, "attempt": max_attempts},
        )
        raise DownloadError(
            f"Failed to download {url} after {max_attempts} attempts. "
            "Please check the URL and your internet connection.",
            url=url,
            attempts=max_attempts,
        ) from last
    finally:
        if owns_session:
            http.close()

    if verbose:
        logger.info(
            "Successfully downloaded %s (%d bytes)",
            target.name,
            written,
            extra={"stage": "download", "size_bytes": written},
        )
    return True
