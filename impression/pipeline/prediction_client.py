from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from .uploads import DEFAULT_EXTENSION, guess_extension

TOKEN_ENV = "REPLICATE_API_TOKEN"
SUCCEEDED = "succeeded"
FAILED_STATES = ("failed", "canceled")


class MissingCredential(RuntimeError):
    def __init__(self) -> None:
        super().__init__(f"{TOKEN_ENV} is not configured")


class PredictionError(RuntimeError):
    pass


class PredictionTimeout(PredictionError):
    pass


class PredictionCancelled(PredictionError):
    pass


def first_output_url(prediction: Dict[str, Any]) -> str:
    output = prediction.get("output")
    if isinstance(output, list):
        output = next((o for o in output if isinstance(o, str) and o), None)
    if not isinstance(output, str) or not output.startswith(("http://", "https://")):
        raise PredictionError(f"prediction {prediction.get('id')} returned no usable output URL")
    return output


class PredictionClient:
    """Async client for a Replicate-style prediction API.

    Holds two connection pools: one authenticated for the API itself and one
    anonymous for output downloads, so the token never leaves the API host.
    """

    def __init__(
        self,
        api_token: Optional[str],
        api_base: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_token:
            raise MissingCredential()
        self._api = httpx.AsyncClient(
            base_url=api_base,
            headers={"Authorization": f"Bearer {api_token}", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )
        self._downloads = httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True)

    async def __aenter__(self) -> "PredictionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._api.aclose()
        await self._downloads.aclose()

    @staticmethod
    def _json(resp: httpx.Response) -> Dict[str, Any]:
        if resp.status_code >= 400:
            raise PredictionError(
                f"{resp.request.method} {resp.request.url.path} returned {resp.status_code}: {resp.text[:300]}"
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise PredictionError(f"malformed response from {resp.request.url.path}") from exc
        if not isinstance(data, dict):
            raise PredictionError(f"malformed response from {resp.request.url.path}")
        return data

    async def create_prediction(self, version: str, model_input: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self._api.post("/predictions", json={"version": version, "input": model_input})
        prediction = self._json(resp)
        if not prediction.get("id"):
            raise PredictionError("create prediction response has no id")
        return prediction

    async def get_prediction(self, prediction_id: str) -> Dict[str, Any]:
        resp = await self._api.get(f"/predictions/{prediction_id}")
        return self._json(resp)

    async def cancel_prediction(self, prediction_id: str) -> None:
        resp = await self._api.post(f"/predictions/{prediction_id}/cancel")
        self._json(resp)

    async def wait_for_prediction(
        self,
        prediction_id: str,
        interval: float,
        timeout: float,
        stop_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """Poll until a terminal status; ``timeout`` bounds the whole wait, slow polls included."""
        try:
            return await asyncio.wait_for(self._poll(prediction_id, interval, stop_event), timeout=timeout)
        except asyncio.TimeoutError:
            raise PredictionTimeout(f"prediction {prediction_id} did not finish within {timeout:g}s") from None

    async def _poll(
        self, prediction_id: str, interval: float, stop_event: Optional[asyncio.Event]
    ) -> Dict[str, Any]:
        while True:
            await self._pause(interval, stop_event)
            prediction = await self.get_prediction(prediction_id)
            status = prediction.get("status")
            logging.debug("Prediction %s status %s", prediction_id, status)
            if status == SUCCEEDED:
                return prediction
            if status in FAILED_STATES:
                detail = prediction.get("error") or "no details"
                raise PredictionError(f"prediction {status}: {detail}")

    @staticmethod
    async def _pause(delay: float, stop_event: Optional[asyncio.Event]) -> None:
        if stop_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise PredictionCancelled("service is shutting down")

    async def download(self, url: str, dest_dir: Path, stem: str) -> Path:
        """Stream ``url`` into ``dest_dir/<stem><ext>``; nothing is left behind on failure."""
        dest_dir.mkdir(parents=True, exist_ok=True)
        part = dest_dir / f"{stem}.part"
        try:
            async with self._downloads.stream("GET", url) as resp:
                if resp.status_code >= 400:
                    raise PredictionError(f"download of {url} returned {resp.status_code}")
                url_ext = guess_extension(None, urlparse(url).path)
                ext = url_ext if url_ext != DEFAULT_EXTENSION else guess_extension(resp.headers.get("content-type"), None)
                with part.open("wb") as fh:
                    async for chunk in resp.aiter_bytes():
                        fh.write(chunk)
            dest = dest_dir / f"{stem}{ext}"
            os.replace(part, dest)
            return dest
        except BaseException:
            part.unlink(missing_ok=True)
            raise
