"""Request/response models — the contract between relay and clients."""

from __future__ import annotations

import time
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class CompletionRequest(BaseModel):
    """Body of the prompt endpoints."""

    prompt: str
    model: str | None = None


class ModelSelection(BaseModel):
    """Per-step model overrides for the research pipeline."""

    model_config = ConfigDict(extra="allow", protected_namespaces=())

    parsing: str | None = None
    research: str | None = None
    analysis: str | None = None
    content: str | None = None


class ResearchRequest(BaseModel):
    input: str
    models: ModelSelection = Field(default_factory=ModelSelection)
    prompts: dict[str, str] = {}


class ScopeStackAuthRequest(BaseModel):
    """Accepts both the short and the ``scopeStack``-prefixed field names."""

    api_key: str
    api_url: str | None = None
    account_slug: str | None = None


class ScopeStackHealthRequest(BaseModel):
    url: str
    token: str


class ServiceItem(BaseModel):
    """One generated service, as produced by the research ``content`` step."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1)
    description: str = ""
    hours: float = Field(default=0, ge=0)
    phase: str | None = None
    position: int | None = Field(default=None, ge=1)
    service_description: str | None = Field(default=None, alias="serviceDescription")
    key_assumptions: str = Field(default="", alias="keyAssumptions")
    client_responsibilities: str = Field(default="", alias="clientResponsibilities")
    out_of_scope: str = Field(default="", alias="outOfScope")


class PushRequest(BaseModel):
    """Body of the push endpoint: where the content goes and what it is."""

    model_config = ConfigDict(populate_by_name=True)

    project_name: str = Field(alias="projectName")
    client_name: str = Field(alias="clientName")
    executive_summary: str = Field(default="", alias="executiveSummary")
    services: list[ServiceItem]


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


def _now_ms() -> int:
    return int(time.time() * 1000)


class SuccessEnvelope(BaseModel):
    success: Literal[True] = True
    data: Any
    timestamp: int = Field(default_factory=_now_ms)


class CompletionTestResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    model: str
    response_length: int = Field(serialization_alias="responseLength")
    usage: dict[str, Any] | None = None
    test_time: str = Field(serialization_alias="testTime")


class AccountInfo(BaseModel):
    """``data.attributes`` of a ScopeStack ``/v1/me`` response."""

    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    account_id: str | int | None = Field(default=None, alias="account-id")
    account_slug: str | None = Field(default=None, alias="account-slug")
    email: str | None = None


class ServiceFailure(BaseModel):
    name: str
    code: str
    message: str


class PushResult(BaseModel):
    """Outcome of a push. ``success`` is False when any service failed."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    project_id: str = Field(serialization_alias="projectId")
    project_url: str | None = Field(default=None, serialization_alias="projectUrl")
    client_id: str = Field(serialization_alias="clientId")
    services_created: int = Field(serialization_alias="servicesCreated")
    failed_services: list[ServiceFailure] = Field(default_factory=list, serialization_alias="failedServices")


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


class StepEvent(BaseModel):
    """Progress of one pipeline step."""

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    type: Literal["step"] = "step"
    step_id: str = Field(alias="stepId")
    status: Literal["active", "completed"]
    progress: int = Field(ge=0, le=100)
    model: str | None = None
    sources: list[str] | None = None


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    content: dict[str, Any]
    progress: int = 100


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    code: str
    message: str


StreamEvent = Annotated[Union[StepEvent, CompleteEvent, ErrorEvent], Field(discriminator="type")]

stream_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)

TERMINAL_EVENT_TYPES = frozenset({"complete", "error"})


def event_payload(event: StepEvent | CompleteEvent | ErrorEvent) -> dict[str, Any]:
    """Wire form of an event: camelCase aliases, unset optionals dropped."""
    return event.model_dump(by_alias=True, exclude_none=True)
