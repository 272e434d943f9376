import os
from typing import Optional, Tuple

import requests

from ..domain.errors import EmptyResponse, HttpError, NetworkTimeout
from ..domain.normalize import normalize_url
from ..logging import get_logger

LOG = get_logger("orchestrator-fetch")

CHUNK_SIZE = 64 * 1024


class MediaFetcher:
    """Download remote images/audio into a scratch directory.

    URLs are normalized first (doubled slashes, broken `scheme:/`). A download
    that leaves a missing or zero-byte file is an error, and a partial file is
    removed before any error propagates.
    """

    def __init__(
        self,
        scratch_dir: str,
        *,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.scratch_dir = scratch_dir
        self.timeout = float(timeout)
        self.session = session or requests.Session()

    def _get(self, url: str) -> requests.Response:
        try:
            r = self.session.get(url, stream=True, timeout=self.timeout)
        except requests.Timeout as e:
            raise NetworkTimeout(f"Request timed out fetching {url}: {e}") from e
        except requests.ConnectionError as e:
            raise NetworkTimeout(f"Connection failed fetching {url}: {e}") from e
        if r.status_code == 429:
            r.close()
            raise HttpError(429, f"API rate limit reached (429) fetching {url}")
        if r.status_code != 200:
            r.close()
            raise HttpError(r.status_code, f"Failed to fetch {url}: HTTP {r.status_code}")
        return r

    def fetch_to_file(self, url: str, dest_name: str) -> str:
        """Stream `url` into `<scratch_dir>/<dest_name>` and return the local path."""
        fixed = normalize_url(url)
        os.makedirs(self.scratch_dir, exist_ok=True)
        dest = os.path.join(self.scratch_dir, os.path.basename(dest_name))
        LOG.info(f"Downloading {fixed} -> {dest}")
        try:
            r = self._get(fixed)
            try:
                with open(dest, "wb") as fh:
                    for chunk in r.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            fh.write(chunk)
            finally:
                r.close()
            if not os.path.isfile(dest):
                raise EmptyResponse(f"Download produced no file: {dest}")
            size = os.path.getsize(dest)
            if size <= 0:
                raise EmptyResponse(f"Empty response received when fetching {fixed}")
        except requests.Timeout as e:
            _remove_quietly(dest)
            raise NetworkTimeout(f"Request timed out reading {fixed}: {e}") from e
        except requests.ConnectionError as e:
            _remove_quietly(dest)
            raise NetworkTimeout(f"Connection dropped reading {fixed}: {e}") from e
        except BaseException:
            _remove_quietly(dest)
            raise
        LOG.info(f"Downloaded {size} bytes to {dest}")
        return dest

    def fetch_bytes(self, url: str) -> Tuple[bytes, str]:
        """Return (content, mime type) for a small resource such as a receipt image."""
        fixed = normalize_url(url)
        LOG.info(f"Fetching {fixed}")
        r = self._get(fixed)
        try:
            data = b"".join(c for c in r.iter_content(chunk_size=CHUNK_SIZE) if c)
        except requests.Timeout as e:
            raise NetworkTimeout(f"Request timed out reading {fixed}: {e}") from e
        except requests.ConnectionError as e:
            raise NetworkTimeout(f"Connection dropped reading {fixed}: {e}") from e
        finally:
            r.close()
        if not data:
            raise EmptyResponse(f"Empty response received when fetching {fixed}")
        mime = (r.headers.get("Content-Type") or "").split(";")[0].strip() or "image/jpeg"
        LOG.debug(f"Received {len(data)} bytes ({mime})")
        return data, mime


def _remove_quietly(path: str) -> None:
    try:
        if os.path.exists(path):
            os.remove(path)
            LOG.info(f"Removed partial file {path}")
    except OSError as e:
        LOG.warning(f"Could not remove partial file {path}: {e}")
