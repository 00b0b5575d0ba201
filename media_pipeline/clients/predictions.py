from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from media_pipeline.errors import ErrorCode, PipelineError, classify_exception, from_http_status


class PredictionClient:
    """Thin async client for a Replicate-style prediction API.

    Predictions are created and then read back by id; the provider never calls
    us back. Responses keep the provider's status model verbatim::

        status: "starting" | "processing" | "succeeded" | "failed" | "canceled"
        output: str | list[str] | None
        error:  str | None
    """

    def __init__(
        self,
        api_token: str | None,
        base_url: str = "https://api.replicate.com/v1",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.api_token = (api_token or "").strip()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.log = logger or logging.getLogger(__name__)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def enabled(self) -> bool:
        return bool(self.api_token)

    async def create_prediction(self, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        if ":" in model:
            body = {"version": model.split(":", 1)[1], "input": payload}
            path = "/predictions"
        else:
            body = {"input": payload}
            path = f"/models/{model}/predictions"
        prediction = await self._request("POST", path, json=body)
        if not prediction.get("id"):
            raise PipelineError(ErrorCode.PREDICTION_FAILED, "provider returned a prediction without id", retryable=True)
        self.log.info(
            "prediction created",
            extra={"prediction_id": prediction["id"], "model": model, "status": prediction.get("status")},
        )
        return prediction

    async def get_prediction(self, prediction_id: str) -> dict[str, Any]:
        if not prediction_id:
            raise PipelineError(ErrorCode.VALIDATION_ERROR, "prediction id is required")
        return await self._request("GET", f"/predictions/{prediction_id}")

    async def cancel_prediction(self, prediction_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/predictions/{prediction_id}/cancel")

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.enabled():
            raise PipelineError(
                ErrorCode.AUTHENTICATION_FAILED,
                "prediction provider token is not configured",
            )
        client = self._get_client()
        try:
            response = await client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            self.log.warning(
                "prediction request failed",
                extra={"method": method, "path": path, "error": str(exc)},
            )
            raise classify_exception(exc) from exc
        if response.status_code >= 400:
            body = response.text[:1000]
            self.log.error(
                "prediction provider HTTP error",
                extra={"method": method, "path": path, "status": response.status_code, "body": body},
            )
            raise from_http_status(response.status_code, f"provider HTTP {response.status_code}: {body}")
        try:
            return response.json()
        except ValueError as exc:
            raise PipelineError(
                ErrorCode.GENERATION_FAILED,
                "provider returned a non-JSON response",
                retryable=True,
            ) from exc

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.api_token}",
                    "Content-Type": "application/json",
                },
            )
        return self._client
