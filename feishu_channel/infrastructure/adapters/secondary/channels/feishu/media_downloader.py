"""Message resource downloads and tenant token handling over the Feishu REST API."""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from types import TracebackType

import aiohttp

logger = logging.getLogger(__name__)

_FILENAME_PATTERN = re.compile(r'filename[*]?=["\']?([^"\';\s]+)')


class FeishuResourceDownloadError(Exception):
    """Raised when a token or resource request fails."""


@dataclass(frozen=True)
class DownloadedResource:
    content: bytes
    file_name: str
    mime_type: str | None


class FeishuResourceDownloader:
    """Download message resources (image, file, audio, video, sticker).

    Holds one tenant access token per account, refreshed five minutes before
    it expires. Downloads are retried with exponential backoff.
    """

    _MAX_RETRIES = 3
    _RETRY_DELAY_SECONDS = 1.0
    _TIMEOUT_SECONDS = 30
    _TOKEN_TIMEOUT_SECONDS = 10
    _TOKEN_REFRESH_MARGIN_SECONDS = 300
    _MAX_FILE_SIZE_BYTES = 50 * 1024 * 1024

    def __init__(self, app_id: str, app_secret: str, api_base_url: str) -> None:
        self._app_id = app_id
        self._app_secret = app_secret
        self._api_base_url = api_base_url.rstrip("/")
        self._tenant_access_token: str | None = None
        self._token_expires_at: float = 0
        self._session: aiohttp.ClientSession | None = None
        self._token_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "FeishuResourceDownloader":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def fetch_tenant_access_token(self, timeout_seconds: float | None = None) -> str:
        """Request a fresh tenant access token, bypassing the cache.

        Raises:
            FeishuResourceDownloadError: If the token endpoint fails
        """
        url = f"{self._api_base_url}/open-apis/auth/v3/tenant_access_token/internal"
        payload = {"app_id": self._app_id, "app_secret": self._app_secret}
        timeout = timeout_seconds or self._TOKEN_TIMEOUT_SECONDS

        try:
            session = await self._get_session()
            async with session.post(
                url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                if response.status != 200:
                    raise FeishuResourceDownloadError(
                        f"Failed to get tenant access token: HTTP {response.status}"
                    )
                data = await response.json()
        except TimeoutError:
            raise FeishuResourceDownloadError("Timeout getting tenant access token") from None
        except aiohttp.ClientError as e:
            raise FeishuResourceDownloadError(f"Error getting tenant access token: {e}") from e

        if data.get("code") != 0:
            raise FeishuResourceDownloadError(f"Feishu API error: {data.get('msg', 'Unknown error')}")

        self._tenant_access_token = data["tenant_access_token"]
        self._token_expires_at = time.time() + data.get("expire", 7200)
        return self._tenant_access_token

    async def get_tenant_access_token(self) -> str:
        async with self._token_lock:
            if (
                self._tenant_access_token
                and time.time() < self._token_expires_at - self._TOKEN_REFRESH_MARGIN_SECONDS
            ):
                return self._tenant_access_token
            return await self.fetch_tenant_access_token()

    async def download_resource(
        self,
        message_id: str,
        file_key: str,
        resource_type: str,
        file_name: str | None = None,
    ) -> DownloadedResource:
        """Download a resource attached to a chat message.

        GET /open-apis/im/v1/messages/{message_id}/resources/{file_key}?type={type}

        Stickers and images are both fetched with ``type=image``; everything
        else uses ``type=file``.
        """
        api_type = "image" if resource_type in ("image", "sticker") else "file"
        url = (
            f"{self._api_base_url}/open-apis/im/v1/messages/{message_id}"
            f"/resources/{file_key}?type={api_type}"
        )
        return await self._download_with_retry(url, file_name or f"{resource_type}_{file_key}")

    async def _download_with_retry(self, url: str, default_filename: str) -> DownloadedResource:
        last_error: Exception | None = None

        for attempt in range(self._MAX_RETRIES):
            try:
                return await self._download_once(url, default_filename)
            except FeishuResourceDownloadError as e:
                last_error = e
                logger.warning(
                    f"[FeishuDownloader] Attempt {attempt + 1}/{self._MAX_RETRIES} failed: {e}"
                )
                if attempt < self._MAX_RETRIES - 1:
                    await asyncio.sleep(self._RETRY_DELAY_SECONDS * (2**attempt))

        raise FeishuResourceDownloadError(
            f"Failed after {self._MAX_RETRIES} retries: {last_error}"
        )

    async def _download_once(self, url: str, default_filename: str) -> DownloadedResource:
        token = await self.get_tenant_access_token()
        headers = {"Authorization": f"Bearer {token}"}

        try:
            session = await self._get_session()
            async with session.get(
                url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self._TIMEOUT_SECONDS),
            ) as response:
                if response.status != 200:
                    text = await response.text()
                    raise FeishuResourceDownloadError(
                        f"Download failed: HTTP {response.status}, {text[:200]}"
                    )

                content_length = response.content_length
                if content_length and content_length > self._MAX_FILE_SIZE_BYTES:
                    raise FeishuResourceDownloadError(
                        f"File too large: {content_length} bytes "
                        f"(max: {self._MAX_FILE_SIZE_BYTES})"
                    )
                content = await response.read()
                content_type = response.headers.get("Content-Type", "")
                content_disposition = response.headers.get("Content-Disposition", "")
        except TimeoutError:
            raise FeishuResourceDownloadError(
                f"Download timeout after {self._TIMEOUT_SECONDS}s"
            ) from None
        except aiohttp.ClientError as e:
            raise FeishuResourceDownloadError(f"HTTP client error: {e}") from e

        file_name = default_filename
        match = _FILENAME_PATTERN.search(content_disposition)
        if match:
            file_name = match.group(1)
        mime_type = content_type.split(";")[0].strip() or None

        logger.info(
            f"[FeishuDownloader] Downloaded {file_name}: {len(content)} bytes, {mime_type}"
        )
        return DownloadedResource(content=content, file_name=file_name, mime_type=mime_type)
