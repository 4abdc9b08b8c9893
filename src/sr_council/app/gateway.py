"""Client of the local Ollama inference service.

The gateway caches connectivity. `is_connected` only reflects the last
`check_connection`; generation and model requests never flip the flag.

Model downloads run as one asyncio task per model name. All shared state (the
connectivity flag and the in-flight download map) is mutated from the event loop with
no ``await`` between a check and the matching update.

Examples:
    ```python
    async with OllamaGateway("http://localhost:11434") as gateway:
        if await gateway.check_connection():
            text = await gateway.generate("llama3.2:3b", prompt, system, 0.3)
    ```
"""

from __future__ import annotations

import asyncio
import json
import typing as t

import httpx
from loguru import logger
from pydantic import ValidationError

from sr_council.core.constants import RECOMMENDED_MODELS
from sr_council.core.exceptions import (
    DownloadCancelledError,
    DownloadFailedError,
    DownloadInProgressError,
    ModelError,
    ModelTimeoutError,
    ModelUnreachableError,
)
from sr_council.core.schemas import (
    AvailableModel,
    DownloadProgress,
    InferenceStatus,
    InstalledModel,
    ModelStatus,
)

if t.TYPE_CHECKING:
    from collections.abc import Callable

DEFAULT_BASE_URL = "http://localhost:11434"


class TextGenerator(t.Protocol):
    """What the council and the extraction coordinator need from a gateway."""

    def is_connected(self) -> bool: ...

    async def generate(
        self, model: str, prompt: str, system_prompt: str, temperature: float
    ) -> str: ...


def canonical_model_name(name: str) -> str:
    """Ollama lists untagged models with the ``latest`` tag."""
    return name if ":" in name else f"{name}:latest"


class OllamaGateway:
    """Async HTTP client of the Ollama API.

    Args:
        base_url: Service URL.
        connect_timeout: Seconds allowed to connect, also the whole time limit of
            `check_connection`.
        request_timeout: Seconds allowed for one generation.
        transport: Optional httpx transport, e.g. `httpx.MockTransport` in tests.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        connect_timeout: float = 5.0,
        request_timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(request_timeout, connect=connect_timeout),
            transport=transport,
        )
        self._connected = False
        self._version: str | None = None
        self._downloads: dict[str, asyncio.Task[None]] = {}
        self._cancel_requested: set[asyncio.Task[None]] = set()
        self._cancelling: dict[str, asyncio.Task[None]] = {}

    async def __aenter__(self) -> t.Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        pending = [self.cancel_download(name) for name in list(self._downloads)]
        await asyncio.gather(*pending)
        await self._client.aclose()

    # --- Connectivity ---

    def is_connected(self) -> bool:
        """Connectivity as of the last `check_connection`."""
        return self._connected

    @property
    def version(self) -> str | None:
        return self._version

    async def check_connection(self) -> bool:
        """Refresh connectivity with ``GET /api/version``."""
        try:
            response = await self._client.get(
                "/api/version", timeout=self.connect_timeout
            )
            response.raise_for_status()
            version = response.json().get("version")
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.bind(base_url=self.base_url).warning(
                "Ollama not reachable: {}", exc
            )
            self._connected = False
            self._version = None
            return False

        self._connected = True
        self._version = str(version) if version is not None else None
        logger.bind(base_url=self.base_url).debug(
            "Ollama connected, version {}", self._version
        )
        return True

    async def get_status(self) -> InferenceStatus:
        """Refresh connectivity and list installed model names."""
        if not await self.check_connection():
            return InferenceStatus(connected=False)
        models = await self.list_models()
        return InferenceStatus(
            connected=True,
            version=self._version,
            models=[model.name for model in models],
        )

    # --- Requests ---

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        model: str | None = None,
        **kwargs: t.Any,
    ) -> dict[str, t.Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            msg = f"Cannot reach Ollama at {self.base_url}: {exc}"
            raise ModelUnreachableError(msg, model=model) from exc
        except httpx.TimeoutException as exc:
            msg = f"Ollama did not respond within {self.request_timeout:g}s"
            raise ModelTimeoutError(msg, model=model) from exc
        except httpx.HTTPError as exc:
            msg = f"Ollama request {method} {path} failed: {exc}"
            raise ModelError(msg, model=model) from exc

        if response.is_error:
            msg = f"Ollama returned HTTP {response.status_code}: {response.text[:500]}"
            raise ModelError(msg, model=model)
        try:
            data = response.json()
        except ValueError as exc:
            msg = f"Undecodable Ollama response from {path}"
            raise ModelError(msg, model=model) from exc
        if not isinstance(data, dict):
            msg = f"Unexpected Ollama response from {path}: {type(data).__name__}"
            raise ModelError(msg, model=model)
        if data.get("error"):
            raise ModelError(str(data["error"]), model=model)
        return data

    async def generate(
        self, model: str, prompt: str, system_prompt: str, temperature: float
    ) -> str:
        """Run one non-streaming JSON-mode generation and return the raw text.

        Raises:
            ModelUnreachableError: The service cannot be reached.
            ModelTimeoutError: No response within ``request_timeout``.
            ModelError: Any other failure reported by the service.
        """
        payload = {
            "model": model,
            "prompt": prompt,
            "system": system_prompt,
            "stream": False,
            "format": "json",
            "options": {"temperature": temperature},
        }
        log = logger.bind(model=model)
        log.debug("Generating with temperature {}", temperature)
        data = await self._request_json(
            "POST", "/api/generate", model=model, json=payload
        )
        text = data.get("response")
        if not isinstance(text, str):
            msg = "Ollama response has no text"
            raise ModelError(msg, model=model)
        log.debug("Generated {} characters", len(text))
        return text

    async def list_models(self) -> list[InstalledModel]:
        """Installed models, ``GET /api/tags``."""
        data = await self._request_json("GET", "/api/tags")
        return [InstalledModel.model_validate(m) for m in data.get("models") or []]

    async def get_model_info(self, name: str) -> dict[str, t.Any]:
        """Model details, ``POST /api/show``."""
        return await self._request_json(
            "POST", "/api/show", model=name, json={"name": name}
        )

    def available_models(self) -> tuple[AvailableModel, ...]:
        """Static catalogue of recommended models."""
        return RECOMMENDED_MODELS

    async def is_installed(self, name: str) -> bool:
        wanted = canonical_model_name(name)
        models = await self.list_models()
        return any(canonical_model_name(m.name) == wanted for m in models)

    async def model_status(self, name: str) -> ModelStatus:
        installed = await self.is_installed(name)
        return ModelStatus(
            name=name, installed=installed, in_progress=name in self._downloads
        )

    # --- Downloads ---

    def is_downloading(self, name: str) -> bool:
        return name in self._downloads

    async def download_model(
        self,
        name: str,
        on_progress: Callable[[DownloadProgress], None] | None = None,
    ) -> None:
        """Pull ``name`` and wait for completion.

        Raises:
            DownloadInProgressError: A download of ``name`` is already in flight.
            DownloadCancelledError: `cancel_download` was called for this download.
            DownloadFailedError: The service reported an error or the transfer broke.
        """
        if (cancelling := self._cancelling.get(name)) is not None:
            await asyncio.wait({cancelling})
        if name in self._downloads:
            msg = f"Download of {name} already in progress"
            raise DownloadInProgressError(msg, model_name=name)
        task = asyncio.create_task(self._pull(name, on_progress), name=f"pull:{name}")
        self._downloads[name] = task
        logger.bind(model=name).info("Started model download")

        try:
            await task
        except asyncio.CancelledError:
            if task not in self._cancel_requested:
                raise
            msg = f"Download of {name} cancelled"
            raise DownloadCancelledError(msg, model_name=name) from None
        finally:
            self._cancel_requested.discard(task)
            if self._downloads.get(name) is task:
                del self._downloads[name]
        logger.bind(model=name).success("Model download complete")

    async def cancel_download(self, name: str) -> bool:
        """Cancel the in-flight download of ``name`` and wait for its cleanup.

        The name leaves the in-flight set immediately. This returns once the partial
        model has been removed, and the awaiting `download_model` call raises
        `DownloadCancelledError`. A new download of ``name`` started meanwhile waits
        for the cleanup too. Returns False if nothing was in flight.
        """
        task = self._downloads.pop(name, None)
        if task is None:
            return False
        self._cancel_requested.add(task)
        self._cancelling[name] = task
        task.cancel()
        logger.bind(model=name).info("Model download cancelled")
        try:
            await asyncio.wait({task})
        finally:
            if self._cancelling.get(name) is task:
                del self._cancelling[name]
        return True

    async def _pull(
        self,
        name: str,
        on_progress: Callable[[DownloadProgress], None] | None,
    ) -> None:
        try:
            was_installed = await self.is_installed(name)
        except ModelError:
            was_installed = False

        try:
            await self._stream_pull(name, on_progress)
        except asyncio.CancelledError:
            if not was_installed:
                await self._delete_partial(name)
            raise

    async def _stream_pull(
        self,
        name: str,
        on_progress: Callable[[DownloadProgress], None] | None,
    ) -> None:
        log = logger.bind(model=name)
        try:
            async with self._client.stream(
                "POST",
                "/api/pull",
                json={"name": name, "stream": True},
                timeout=httpx.Timeout(None, connect=self.connect_timeout),
            ) as response:
                if response.is_error:
                    await response.aread()
                    msg = f"Ollama returned HTTP {response.status_code}: {response.text[:500]}"
                    raise DownloadFailedError(msg, model_name=name)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        payload = json.loads(line)
                    except json.JSONDecodeError:
                        log.debug("Skipping undecodable progress line: {!r}", line)
                        continue
                    if not isinstance(payload, dict):
                        continue
                    if payload.get("error"):
                        raise DownloadFailedError(str(payload["error"]), model_name=name)
                    try:
                        progress = DownloadProgress.model_validate(payload)
                    except ValidationError:
                        log.debug("Skipping malformed progress line: {!r}", line)
                        continue
                    if on_progress is not None:
                        on_progress(progress)
        except httpx.HTTPError as exc:
            msg = f"Download of {name} failed: {exc}"
            raise DownloadFailedError(msg, model_name=name) from exc

    async def _delete_partial(self, name: str) -> None:
        """Remove whatever a cancelled pull registered, ``DELETE /api/delete``."""
        log = logger.bind(model=name)
        try:
            response = await self._client.request(
                "DELETE",
                "/api/delete",
                json={"name": name},
                timeout=self.connect_timeout,
            )
        except httpx.HTTPError as exc:
            log.warning("Could not remove partial download: {}", exc)
            return
        if response.is_error and response.status_code != httpx.codes.NOT_FOUND:
            log.warning(
                "Could not remove partial download: HTTP {}", response.status_code
            )
