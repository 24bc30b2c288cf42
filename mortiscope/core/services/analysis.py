"""HTTP client for the detection / PMI estimation service."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel, ConfigDict

from mortiscope.core.logging import get_logger
from mortiscope.core.models.app import AnalysisServiceConfig
from mortiscope.core.models.records import AnalysisOutcome
from mortiscope.core.utils.db import mentions_upstream_database_error

logger = get_logger('analysis')


class AnalysisServiceError(Exception):
    """Raised when the analysis service answers with a non-2xx status or is unreachable."""

    def __init__(
        self, message: str, *, status_code: int | None = None, body: str = ''
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class PmiEstimation(BaseModel):
    model_config = ConfigDict(extra='ignore', frozen=True)

    source_image_key: Optional[str] = None
    pmi_days: Optional[float] = None
    pmi_hours: Optional[float] = None
    pmi_minutes: Optional[float] = None
    stage_used_for_calculation: Optional[str] = None
    temperature_provided: Optional[float] = None
    calculated_adh: Optional[float] = None
    ldt_used: Optional[float] = None


class AggregatedResults(BaseModel):
    model_config = ConfigDict(extra='ignore', frozen=True)

    total_counts: Optional[dict[str, Any]] = None
    oldest_stage_detected: Optional[str] = None


class DetectionResponse(BaseModel):
    model_config = ConfigDict(extra='ignore', frozen=True)

    aggregated_results: Optional[AggregatedResults] = None
    pmi_estimation: Optional[PmiEstimation] = None
    explanation: Optional[str] = None

    @property
    def has_detections(self) -> bool:
        """False for a valid empty result: no counts or no oldest stage."""
        aggregated = self.aggregated_results
        return (
            aggregated is not None
            and aggregated.total_counts is not None
            and bool(aggregated.oldest_stage_detected)
        )

    def to_outcome(self) -> AnalysisOutcome:
        if not self.has_detections:
            raise ValueError('detection response has no results to persist')
        aggregated = self.aggregated_results
        assert aggregated is not None and aggregated.total_counts is not None
        pmi = self.pmi_estimation or PmiEstimation()
        return AnalysisOutcome(
            total_counts=dict(aggregated.total_counts),
            oldest_stage_detected=str(aggregated.oldest_stage_detected),
            explanation=self.explanation,
            pmi_source_image_key=pmi.source_image_key,
            pmi_days=pmi.pmi_days,
            pmi_hours=pmi.pmi_hours,
            pmi_minutes=pmi.pmi_minutes,
            stage_used_for_calculation=pmi.stage_used_for_calculation,
            temperature_provided=pmi.temperature_provided,
            calculated_adh=pmi.calculated_adh,
            ldt_used=pmi.ldt_used,
        )


class AnalysisServiceClient:
    """Calls the analysis service with the shared secret in `X-Api-Key`.

    Configuration is checked on every call, so a missing URL or secret fails
    the calling step (and is retried and compensated like any step failure)
    rather than preventing the worker from starting.
    """

    def __init__(
        self,
        config: AnalysisServiceConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._transport = transport
        self._sleep = sleep

    async def detect(self, case_id: str) -> dict[str, Any]:
        """Run detection and PMI estimation for every image of a case.

        Retried in place when the service reports that its own database
        connection dropped; any other failure raises immediately.
        """
        attempts = self.config.transient_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await self._post(
                    '/v1/detect', {'case_id': case_id}, label='analysis endpoint'
                )
            except AnalysisServiceError as exc:
                if attempt >= attempts or not mentions_upstream_database_error(exc.body):
                    raise
                delay = self.config.transient_retry_base_seconds * 2 ** (attempt - 1)
                logger.warning(
                    f'Analysis service database error for case {case_id} '
                    f'(attempt {attempt}/{attempts}), retrying in {delay:.1f}s'
                )
                await self._sleep(delay)
        raise AssertionError('unreachable')

    async def recalculate(self, case_id: str) -> dict[str, Any]:
        return await self._post(
            '/v1/computation/recalculate',
            {'case_id': case_id},
            label='recalculation endpoint',
        )

    async def export(
        self,
        export_id: str,
        format: str,
        *,
        case_id: str | None = None,
        upload_id: str | None = None,
    ) -> dict[str, Any]:
        """Dispatch an export job; exactly one of case_id / upload_id is sent."""
        if (case_id is None) == (upload_id is None):
            raise ValueError('export needs exactly one of case_id or upload_id')
        body: dict[str, Any] = {'export_id': export_id, 'format': format}
        if case_id is not None:
            body['case_id'] = case_id
            label = 'export worker'
        else:
            body['upload_id'] = upload_id
            label = 'image export worker'
        return await self._post('/v1/export/', body, label=label)

    async def _post(
        self, path: str, payload: dict[str, Any], *, label: str
    ) -> dict[str, Any]:
        base_url, secret = self.config.require()
        url = f'{base_url}{path}'
        headers = {'Content-Type': 'application/json', 'X-Api-Key': secret}

        logger.debug(f'POST {url}')
        async with httpx.AsyncClient(
            timeout=self.config.timeout_seconds, transport=self._transport
        ) as client:
            try:
                response = await client.post(url, json=payload, headers=headers)
            except httpx.TimeoutException as exc:
                raise AnalysisServiceError(
                    f'Analysis service {label} timed out after '
                    f'{self.config.timeout_seconds:.0f}s'
                ) from exc
            except httpx.HTTPError as exc:
                raise AnalysisServiceError(
                    f'Analysis service {label} unreachable: {exc}'
                ) from exc

        if response.is_error:
            body = response.text
            logger.warning(
                f'Analysis service {label} returned {response.status_code}',
                extra={'context': {'url': url, 'body': body[:500]}},
            )
            raise AnalysisServiceError(
                f'Analysis service {label} failed: {body}',
                status_code=response.status_code,
                body=body,
            )

        if not response.content:
            return {}
        data = response.json()
        return data if isinstance(data, dict) else {'result': data}
