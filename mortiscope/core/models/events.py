# mortiscope/core/models/events.py
"""Trigger events and their typed payloads.

Every event a workflow can be triggered by is one member of the tagged union
`TriggerEvent`, discriminated by `name`. Payload keys are camelCase on the wire
(as emitted by the web layer) and snake_case in Python.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from mortiscope.core.types.result import Err, Ok, Result


class EventPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra='ignore')


class CasePayload(EventPayload):
    case_id: str = Field(alias='caseId', min_length=1)


class CaseExportPayload(EventPayload):
    export_id: str = Field(alias='exportId', min_length=1)
    case_id: str = Field(alias='caseId', min_length=1)
    format: str = Field(min_length=1)


class ImageExportPayload(EventPayload):
    export_id: str = Field(alias='exportId', min_length=1)
    upload_id: str = Field(alias='uploadId', min_length=1)
    format: str = Field(min_length=1)


class DeletionConfirmedPayload(EventPayload):
    token: str = Field(min_length=1)


class DeletionExecutePayload(EventPayload):
    user_id: str = Field(alias='userId', min_length=1)


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    def wire_data(self) -> dict[str, Any]:
        """Payload as the camelCase JSON object stored with the run."""
        data: EventPayload = getattr(self, 'data')
        return data.model_dump(mode='json', by_alias=True)


class AnalysisRequested(_Event):
    name: Literal['analysis/request.sent'] = 'analysis/request.sent'
    data: CasePayload


class RecalculationRequested(_Event):
    name: Literal['recalculation/case.requested'] = 'recalculation/case.requested'
    data: CasePayload


class CaseExportRequested(_Event):
    name: Literal['export/case.data.requested'] = 'export/case.data.requested'
    data: CaseExportPayload


class ImageExportRequested(_Event):
    name: Literal['export/image.data.requested'] = 'export/image.data.requested'
    data: ImageExportPayload


class AccountDeletionConfirmed(_Event):
    name: Literal['account/deletion.confirmed'] = 'account/deletion.confirmed'
    data: DeletionConfirmedPayload


class AccountDeletionExecute(_Event):
    name: Literal['account/deletion.execute'] = 'account/deletion.execute'
    data: DeletionExecutePayload


TriggerEvent = Annotated[
    Union[
        AnalysisRequested,
        RecalculationRequested,
        CaseExportRequested,
        ImageExportRequested,
        AccountDeletionConfirmed,
        AccountDeletionExecute,
    ],
    Field(discriminator='name'),
]

_TRIGGER_EVENT_ADAPTER: TypeAdapter[TriggerEvent] = TypeAdapter(TriggerEvent)

EVENT_TYPES: dict[str, type[_Event]] = {
    cls.model_fields['name'].default: cls
    for cls in (
        AnalysisRequested,
        RecalculationRequested,
        CaseExportRequested,
        ImageExportRequested,
        AccountDeletionConfirmed,
        AccountDeletionExecute,
    )
}


def parse_trigger_event(
    name: str, data: Any
) -> Result[TriggerEvent, ValidationError]:
    """Validate loosely-typed event data into its tagged union member."""
    try:
        return Ok(_TRIGGER_EVENT_ADAPTER.validate_python({'name': name, 'data': data}))
    except ValidationError as exc:
        return Err(exc)


@dataclass(frozen=True)
class EventEnvelope:
    """An event as stored on a run: name plus raw JSON payload.

    Failure hooks receive this (not the parsed model) because the payload of a
    run that failed may be the very thing that was malformed.
    """

    id: str
    name: str
    data: dict[str, Any] = field(default_factory=lambda: {})
    ts: datetime | None = None

    def parse(self) -> Result[TriggerEvent, ValidationError]:
        return parse_trigger_event(self.name, self.data)
