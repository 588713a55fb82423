"""ScopeStack API client — account lookup, health check and content push.

Docs: https://api.scopestack.io (JSON:API; ``application/vnd.api+json``)
Bearer-token auth. The base URL and token can come per request, since the
auth-check endpoint verifies credentials the caller is about to save.
Account-scoped resources live under ``{api_url}/{account_slug}/v1/...``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from pydantic import ValidationError

from relay.config import RetryPolicy, ScopeStackConfig
from relay.errors import ErrorCode, ErrorKind, RelayError, as_relay_error, create_upstream_error, timeout_error
from relay.resilience import CallObserver, call_with_policy
from relay.schemas import AccountInfo, PushRequest, PushResult, ServiceFailure, ServiceItem

logger = logging.getLogger(__name__)

_JSON_API = "application/vnd.api+json"

_STATUS_MESSAGES = {
    401: "Invalid API key. Please check your API key and try again.",
    404: "API endpoint not found. Please check the API URL.",
}


def _mask(token: str) -> str:
    if len(token) <= 14:
        return "***"
    return f"{token[:10]}...{token[-4:]}"


def _ref(kind: str, id_: str | int) -> dict[str, Any]:
    return {"data": {"type": kind, "id": str(id_)}}


def _service_resource(project_id: str, service: ServiceItem, position: int) -> dict[str, Any]:
    return {
        "data": {
            "type": "project-services",
            "attributes": {
                "name": service.name,
                "description": service.description,
                "total-hours": service.hours,
                "position": service.position or position,
                "service-description": service.service_description or service.description,
                "key-assumptions": service.key_assumptions,
                "client-responsibilities": service.client_responsibilities,
                "out-of-scope": service.out_of_scope,
                "active": True,
            },
            "relationships": {"project": _ref("projects", project_id)},
        }
    }


class ScopeStackClient:
    def __init__(
        self,
        config: ScopeStackConfig,
        retry: RetryPolicy,
        http: httpx.AsyncClient,
        *,
        observer: CallObserver | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._config = config
        self._retry = retry
        self._http = http
        self._observer = observer
        self._sleep = sleep

    async def _request_once(
        self,
        method: str,
        url: str,
        token: str,
        accept: str,
        payload: dict[str, Any] | None,
    ) -> httpx.Response:
        try:
            resp = await self._http.request(
                method,
                url,
                json=payload,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": accept,
                    "Accept": accept,
                },
                timeout=self._config.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise timeout_error("ScopeStack API request timed out", seconds=self._config.timeout_seconds) from e
        except httpx.TransportError as e:
            raise create_upstream_error(f"ScopeStack request failed: {e!r}") from e

        if not resp.is_success:
            message = _STATUS_MESSAGES.get(
                resp.status_code,
                f"ScopeStack API error: {resp.status_code} {resp.reason_phrase}",
            )
            raise create_upstream_error(message, resp.status_code, resp.text)
        return resp

    async def _call(
        self,
        method: str,
        url: str,
        token: str,
        name: str,
        *,
        accept: str = _JSON_API,
        payload: dict[str, Any] | None = None,
    ) -> httpx.Response:
        return await call_with_policy(
            lambda: self._request_once(method, url, token, accept, payload),
            name,
            self._retry,
            timeout=self._config.timeout_seconds,
            timeout_message="ScopeStack API request timed out",
            context=url,
            observer=self._observer,
            sleep=self._sleep,
        )

    async def _data(self, method: str, url: str, token: str, name: str, payload: dict | None = None) -> Any:
        """JSON:API ``data`` member of a successful response."""
        resp = await self._call(method, url, token, name, payload=payload)
        try:
            return resp.json()["data"]
        except (ValueError, KeyError, TypeError) as e:
            raise RelayError(
                ErrorKind.UPSTREAM_HTTP,
                f"Unexpected response shape from ScopeStack ({name})",
                code=ErrorCode.API_INVALID_RESPONSE,
                status=resp.status_code,
                detail=resp.text[:500],
            ) from e

    async def get_current_user(self, token: str | None = None, base_url: str | None = None) -> AccountInfo:
        """``GET /v1/me`` — who the token belongs to."""
        token = token or self._config.require_api_token()
        base = (base_url or self._config.api_url).rstrip("/")
        logger.info(f"Testing ScopeStack authentication: base={base}, token={_mask(token)}")

        resp = await self._call("GET", f"{base}/v1/me", token, "ScopeStack auth")
        try:
            attributes = resp.json()["data"]["attributes"]
            account = AccountInfo.model_validate(attributes)
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            raise RelayError(
                ErrorKind.UPSTREAM_HTTP,
                "Unexpected response shape from ScopeStack /v1/me",
                code=ErrorCode.API_INVALID_RESPONSE,
                status=resp.status_code,
                detail=resp.text[:500],
            ) from e

        logger.info(
            f"Authentication successful: user={account.name}, "
            f"account={account.account_slug} ({account.account_id})"
        )
        return account

    async def check_health(self, url: str, token: str) -> None:
        """``GET {url}/api/health``; raises when ScopeStack is unreachable."""
        await self._call("GET", f"{url.rstrip('/')}/api/health", token, "ScopeStack health", accept="application/json")

    # -----------------------------------------------------------------------
    # Content push
    # -----------------------------------------------------------------------

    async def _default_id(self, scoped: str, token: str, resource: str) -> str | None:
        """Id of the account's default rate table / payment term, if any."""
        try:
            items = await self._data("GET", f"{scoped}/v1/{resource}?filter[active]=true", token, f"ScopeStack {resource}")
        except RelayError as e:
            logger.warning(f"Could not read default {resource}, project will use account defaults: {e.message}")
            return None
        for item in items or []:
            if (item.get("attributes") or {}).get("default") is True:
                return str(item["id"])
        return None

    async def find_or_create_client(self, scoped: str, token: str, name: str, account_id: str) -> str:
        """Id of the active client called ``name``, created when missing."""
        clients = await self._data(
            "GET",
            str(httpx.URL(f"{scoped}/v1/clients", params={"filter[active]": "true", "filter[name]": name})),
            token,
            "ScopeStack client search",
        )
        for client in clients or []:
            if str((client.get("attributes") or {}).get("name", "")).lower() == name.lower():
                logger.info(f"Using existing ScopeStack client '{name}' ({client['id']})")
                return str(client["id"])

        created = await self._data(
            "POST",
            f"{scoped}/v1/clients",
            token,
            "ScopeStack create client",
            {
                "data": {
                    "type": "clients",
                    "attributes": {"name": name, "active": True},
                    "relationships": {"account": _ref("accounts", account_id)},
                }
            },
        )
        logger.info(f"Created ScopeStack client '{name}' ({created['id']})")
        return str(created["id"])

    async def create_project(
        self,
        scoped: str,
        token: str,
        *,
        name: str,
        client_id: str,
        account_id: str,
        executive_summary: str = "",
    ) -> str:
        relationships: dict[str, Any] = {
            "client": _ref("clients", client_id),
            "account": _ref("accounts", account_id),
        }
        rate_table = await self._default_id(scoped, token, "rate-tables")
        if rate_table:
            relationships["rate-table"] = _ref("rate-tables", rate_table)
        payment_term = await self._default_id(scoped, token, "payment-terms")
        if payment_term:
            relationships["payment-term"] = _ref("payment-terms", payment_term)

        project = await self._data(
            "POST",
            f"{scoped}/v1/projects",
            token,
            "ScopeStack create project",
            {
                "data": {
                    "type": "projects",
                    "attributes": {"project-name": name, "executive-summary": executive_summary},
                    "relationships": relationships,
                }
            },
        )
        logger.info(f"Created ScopeStack project '{name}' ({project['id']})")
        return str(project["id"])

    async def add_services(
        self,
        scoped: str,
        token: str,
        project_id: str,
        services: list[ServiceItem],
    ) -> tuple[int, list[ServiceFailure]]:
        """Create each service in order. One failure does not stop the rest."""
        created = 0
        failures: list[ServiceFailure] = []
        for position, service in enumerate(services, start=1):
            try:
                await self._call(
                    "POST",
                    f"{scoped}/v1/project-services",
                    token,
                    f"ScopeStack add service '{service.name}'",
                    payload=_service_resource(project_id, service, position),
                )
            except Exception as e:
                error = as_relay_error(e)
                logger.warning(f"Service '{service.name}' was not added to project {project_id}: {error!r}")
                body = error.to_dict()["error"]
                failures.append(ServiceFailure(name=service.name, code=body["code"], message=body["message"]))
                continue
            created += 1
        return created, failures

    async def push_content(self, request: PushRequest) -> PushResult:
        """Create (or reuse) the client, create a project, then add services.

        Client or project failures raise. Service failures are reported in
        the result so the caller can see exactly what is missing.
        """
        token = self._config.require_api_token()
        account = await self.get_current_user(token)
        slug = self._config.account_slug or account.account_slug
        if not slug or account.account_id is None:
            raise RelayError(
                ErrorKind.UPSTREAM_HTTP,
                "ScopeStack /v1/me did not return an account",
                code=ErrorCode.API_INVALID_RESPONSE,
            )
        scoped = f"{self._config.api_url}/{slug}"
        account_id = str(account.account_id)

        client_id = await self.find_or_create_client(scoped, token, request.client_name, account_id)
        project_id = await self.create_project(
            scoped,
            token,
            name=request.project_name,
            client_id=client_id,
            account_id=account_id,
            executive_summary=request.executive_summary,
        )
        created, failures = await self.add_services(scoped, token, project_id, request.services)
        logger.info(f"Pushed project {project_id}: {created} service(s) created, {len(failures)} failed")

        return PushResult(
            success=not failures,
            project_id=project_id,
            project_url=f"{self._config.app_url}/projects/{project_id}" if self._config.app_url else None,
            client_id=client_id,
            services_created=created,
            failed_services=failures,
        )
