"""Fal.ai job clients, used as the fallback backend.

Images and text come back synchronously from ``fal.run``; video goes
through the queue API (``queue.fal.run``), which hands back a request id
and a status URL to poll.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import requests

from ..config import (
    FAL_IMAGE_ENDPOINT,
    FAL_POLL_POLICY,
    FAL_QUEUE_HOST,
    FAL_REQUEST_TIMEOUT,
    FAL_SYNC_HOST,
    FAL_TEXT_ENDPOINT,
    FAL_TEXT_MODEL,
    FAL_VIDEO_ENDPOINT,
    FAL_VIDEO_FAST_ENDPOINT,
    TRANSIENT_RETRY_DELAY,
    Config,
    PollPolicy,
)
from ..errors import MalformedResponseError, ProviderError, TransientProviderError
from ..jobs import ImageRequest, JobHandle, PollStatus, TextRequest, VideoRequest

log = logging.getLogger(__name__)

# Status-check responses that just mean "ask again later"
_RETRYABLE_STATUS = {404, 502, 503, 504}


class FalClient:
    """Base class: subclasses map a request onto an endpoint + payload and parse the result."""

    name = "fal"
    queued = False
    poll_policy: PollPolicy = FAL_POLL_POLICY

    def __init__(self, config: Config, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    # -- subclass hooks ----------------------------------------------------

    def endpoint_for(self, request: Any) -> str:
        raise NotImplementedError

    def build_payload(self, request: Any) -> dict:
        raise NotImplementedError

    def parse_result(self, data: dict) -> Any:
        raise NotImplementedError

    # -- HTTP ----------------------------------------------------------------

    def _headers(self) -> dict:
        if not self.config.fal_api_key:
            raise ValueError("FAL_API_KEY is not set.")
        return {
            "Authorization": f"Key {self.config.fal_api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _url(self, endpoint: str) -> str:
        host = FAL_QUEUE_HOST if self.queued else FAL_SYNC_HOST
        return f"{host}/{endpoint.strip('/')}"

    def _post(self, url: str, payload: dict) -> dict:
        headers = self._headers()
        try:
            resp = self.session.post(url, json=payload, headers=headers, timeout=FAL_REQUEST_TIMEOUT)
        except requests.ConnectionError as e:
            # One retry for a dropped connection on submit
            log.warning("Fal.ai initial connection failed, retrying: %s", e)
            time.sleep(TRANSIENT_RETRY_DELAY)
            try:
                resp = self.session.post(url, json=payload, headers=headers, timeout=FAL_REQUEST_TIMEOUT)
            except requests.ConnectionError as retry_err:
                raise TransientProviderError(f"Fal.ai connection failed: {retry_err}") from retry_err

        if not resp.ok:
            raise ProviderError(f"Fal.ai Error ({resp.status_code}): {resp.text[:500]}")
        return _json(resp)

    def _get_status(self, url: str) -> dict:
        resp = self.session.get(url, headers=self._headers(), timeout=FAL_REQUEST_TIMEOUT)
        if resp.status_code in _RETRYABLE_STATUS:
            raise TransientProviderError(f"Fal.ai status check returned {resp.status_code}")
        if not resp.ok:
            raise ProviderError(f"Fal.ai Status Error: {resp.status_code}")
        return _json(resp)

    def _get_result(self, url: str) -> dict | None:
        # Signed result URLs reject extra auth headers
        try:
            resp = self.session.get(url, timeout=FAL_REQUEST_TIMEOUT)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            log.warning("Fal result fetch failed, using status payload: %s", e)
            return None

    # -- JobClient -------------------------------------------------------------

    async def submit(self, request: Any) -> Any:
        endpoint = self.endpoint_for(request)
        data = await asyncio.to_thread(self._post, self._url(endpoint), self.build_payload(request))
        if not self.queued:
            return self.parse_result(data)

        request_id = data.get("request_id")
        status_url = data.get("status_url")
        if not request_id and not status_url:
            # Result came back immediately
            return self.parse_result(data)
        status_url = status_url or f"{FAL_QUEUE_HOST}/{endpoint.strip('/')}/requests/{request_id}/status"
        return JobHandle(
            job_id=request_id or status_url,
            backend=self.name,
            data={"status_url": status_url, "response_url": data.get("response_url")},
        )

    async def poll(self, handle: JobHandle) -> PollStatus:
        status = await asyncio.to_thread(self._get_status, handle.data["status_url"])
        state = status.get("status")

        if state == "COMPLETED":
            result_url = status.get("response_url") or handle.data.get("response_url")
            payload = None
            if result_url:
                payload = await asyncio.to_thread(self._get_result, result_url)
            return PollStatus.done(self.parse_result(payload or status))
        if state == "FAILED":
            return PollStatus.failed(str(status.get("error") or "Unknown error"))
        # IN_QUEUE / IN_PROGRESS
        return PollStatus.pending()


def _json(resp: requests.Response) -> dict:
    try:
        data = resp.json()
    except ValueError as e:
        raise MalformedResponseError(f"Fal.ai returned invalid JSON: {resp.text[:200]}") from e
    if not isinstance(data, dict):
        raise MalformedResponseError(f"Fal.ai returned unexpected payload: {data!r:.200}")
    return data


class FalImageClient(FalClient):
    name = "fal-imagen3"

    def endpoint_for(self, request: ImageRequest) -> str:
        return FAL_IMAGE_ENDPOINT

    def build_payload(self, request: ImageRequest) -> dict:
        if request.source_image:
            return {"prompt": request.prompt, "image_url": request.source_image, "strength": 0.75}
        return {
            "prompt": request.prompt,
            "aspect_ratio": request.aspect_ratio,
            "image_size": "landscape_4_3",
        }

    def parse_result(self, data: dict) -> str:
        images = data.get("images") or []
        url = images[0].get("url") if images and isinstance(images[0], dict) else None
        if not url:
            raise MalformedResponseError("No image URL in Fal response")
        return url


class FalTextClient(FalClient):
    name = "fal-any-llm"

    def endpoint_for(self, request: TextRequest) -> str:
        return FAL_TEXT_ENDPOINT

    def build_payload(self, request: TextRequest) -> dict:
        prompt = request.prompt
        if request.json_schema is not None:
            prompt += "\nIMPORTANT: Return ONLY valid JSON."
        return {"prompt": prompt, "model": FAL_TEXT_MODEL}

    def parse_result(self, data: dict) -> str:
        text = data.get("output") or data.get("data")
        if not isinstance(text, str):
            raise MalformedResponseError("No text output in Fal response")
        return text


class FalVideoClient(FalClient):
    name = "fal-veo"
    queued = True

    def endpoint_for(self, request: VideoRequest) -> str:
        return FAL_VIDEO_FAST_ENDPOINT if "fast" in request.model else FAL_VIDEO_ENDPOINT

    def build_payload(self, request: VideoRequest) -> dict:
        # Images go by reference (URL or data URI) rather than inline bytes
        payload = {"prompt": request.prompt, "image_url": request.start_image}
        if request.end_image:
            payload["end_image_url"] = request.end_image
        return payload

    def parse_result(self, data: dict) -> str:
        video = data.get("video")
        url = video.get("url") if isinstance(video, dict) else None
        url = url or data.get("url")
        if not url:
            raise MalformedResponseError("No video URL in Fal response")
        return url
