import asyncio
import json
import logging
import re
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlencode, urlparse, urlunparse

import requests
from asgiref.sync import sync_to_async
from requests import Response
from urllib3.filepost import encode_multipart_formdata

from tinybird_sdk.config import (
    CLIENT_FROM_PARAM,
    DEFAULT_API_HOST,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_POLL_MAX_ATTEMPTS,
    DEFAULT_TIMEOUT_SECONDS,
)

# Every resource in a build or deploy bundle is sent under this multipart field
DATA_PROJECT_FIELD = "data_project://"

TOKEN_PATTERN = re.compile(r"p\.ey[A-Za-z0-9-_\.]+")


class TransportException(Exception):
    pass


class RequestTimeoutException(TransportException):
    pass


class ApiError(Exception):
    """Raised for any non-2xx response. Keeps the raw body around for diagnostics."""

    def __init__(
        self,
        message: str,
        status_code: int,
        body: Optional[str] = None,
        response: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.response = response

    @property
    def documentation(self) -> Optional[str]:
        return (self.response or {}).get("documentation")


class OperationCanNotBePerformed(ApiError):
    pass


class AuthException(ApiError):
    pass


class DoesNotExistException(ApiError):
    pass


class AlreadyExistsException(ApiError):
    pass


class ResponseParseException(Exception):
    def __init__(self, message: str, status_code: int, body: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class JobException(Exception):
    pass


class PollTimeoutException(Exception):
    pass


API_ERRORS_BY_STATUS = {
    400: OperationCanNotBePerformed,
    401: AuthException,
    403: AuthException,
    404: DoesNotExistException,
    409: AlreadyExistsException,
}


def obfuscate_tokens(value: str) -> str:
    return TOKEN_PATTERN.sub(lambda m: f"{m.group(0)[:4]}...{m.group(0)[-8:]}", value)


def parse_error_response(response: Response) -> ApiError:
    body = response.text
    content: Optional[Dict[str, Any]] = None
    try:
        parsed = json.loads(body) if body else None
        if isinstance(parsed, dict):
            content = parsed
    except json.decoder.JSONDecodeError:
        pass

    if content and content.get("error"):
        message = str(content["error"])
    elif body:
        message = f"Request failed with status {response.status_code}: {body}"
    else:
        message = f"Request failed with status {response.status_code}"

    error_class = API_ERRORS_BY_STATUS.get(response.status_code, ApiError)
    return error_class(message, response.status_code, body or None, content)


def parse_json_body(response: Response) -> Any:
    raw_body = response.text
    try:
        return json.loads(raw_body)
    except json.decoder.JSONDecodeError:
        raise ResponseParseException(
            f"Failed to parse response from Tinybird API: {response.status_code} {response.reason}\nBody: {raw_body}",
            response.status_code,
            raw_body,
        )


def with_client_param(url: str) -> str:
    parts = urlparse(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "from"]
    query.append(("from", CLIENT_FROM_PARAM))
    return urlunparse(parts._replace(query=urlencode(query)))


def encode_data_project(files: Iterable[Tuple[str, str]]) -> Tuple[bytes, str]:
    """Builds the multipart body for /v1/build and /v1/deploy.

    An empty bundle still produces a valid multipart body with zero parts.
    """
    fields = [(DATA_PROJECT_FIELD, (filename, content.encode("utf-8"), "text/plain")) for filename, content in files]
    return encode_multipart_formdata(fields)


def _serialize_param(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class TinyB:
    MAX_GET_LENGTH = 4096

    def __init__(
        self,
        token: Optional[str],
        host: str = DEFAULT_API_HOST,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        disable_ssl_checks: bool = False,
    ):
        self.token = token
        self.host = host
        self.timeout = timeout
        self.disable_ssl_checks = disable_ssl_checks

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            url = endpoint
        else:
            url = f"{self.host.strip('/')}/{endpoint.lstrip('/')}"
        return with_client_param(url)

    async def _request(
        self,
        endpoint: str,
        method: str = "GET",
        data: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        use_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Response:
        url = self._url(endpoint)
        request_headers = dict(headers or {})
        token_to_use = use_token if use_token else self.token
        if token_to_use and not any(k.lower() == "authorization" for k in request_headers):
            request_headers["Authorization"] = f"Bearer {token_to_use}"

        request_timeout = timeout if timeout is not None else self.timeout
        logging.debug(f"== {method} {url} ==")
        try:
            with requests.Session() as session:
                response = await sync_to_async(session.request, thread_sensitive=False)(
                    method,
                    url,
                    data=data,
                    headers=request_headers,
                    timeout=request_timeout,
                    verify=not self.disable_ssl_checks,
                )
        except requests.exceptions.Timeout as e:
            raise RequestTimeoutException(f"{method} {url} timed out after {request_timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise TransportException(f"{method} {url} failed: {e}") from e

        logging.debug("== server response ==")
        logging.debug(f"{response.status_code} {obfuscate_tokens(response.text)}")
        logging.debug("==      end        ==")
        return response

    async def _req(self, endpoint: str, method: str = "GET", **kwargs: Any) -> Any:
        response = await self._request(endpoint, method=method, **kwargs)
        if not response.ok:
            raise parse_error_response(response)
        if response.status_code in (204, 205) or not response.content:
            return None
        if "text/plain" in response.headers.get("Content-Type", "") or "text/csv" in response.headers.get(
            "Content-Type", ""
        ):
            return response.text
        return parse_json_body(response)

    async def workspace_info(self) -> Dict[str, Any]:
        return await self._req("/v1/workspace")

    async def create_branch(self, name: str) -> Dict[str, Any]:
        return await self._req(f"/v1/environments?{urlencode({'name': name})}", method="POST", data=b"")

    async def branches(self) -> Dict[str, Any]:
        return await self._req("/v1/environments")

    async def branch(self, name: str, with_token: bool = True) -> Dict[str, Any]:
        params = {"with_token": "true" if with_token else "false"}
        return await self._req(f"/v0/environments/{quote(name, safe='')}?{urlencode(params)}")

    async def delete_branch(self, name: str) -> None:
        await self._req(f"/v1/environments/{quote(name, safe='')}", method="DELETE")

    async def job(self, job_id: str) -> Dict[str, Any]:
        return await self._req(f"/v0/jobs/{job_id}")

    async def wait_for_job(
        self,
        job_id: str,
        status_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> Dict[str, Any]:
        for attempt in range(max_attempts):
            res = await self.job(job_id)
            status = res.get("status")

            if status_callback:
                status_callback(res)

            if status == "done":
                return res
            if status == "error":
                raise JobException(f"Job '{job_id}' failed: {res.get('error') or 'Unknown error'}")
            if status == "cancelled":
                raise JobException(f"Job '{job_id}' has been cancelled")

            if attempt < max_attempts - 1:
                await asyncio.sleep(interval_seconds)

        raise PollTimeoutException(f"Job '{job_id}' did not finish after {max_attempts} attempts")

    async def build(self, files: Iterable[Tuple[str, str]]) -> Response:
        body, content_type = encode_data_project(files)
        return await self._request("/v1/build", method="POST", data=body, headers={"Content-Type": content_type})

    async def deploy(
        self, files: Iterable[Tuple[str, str]], check: bool = False, allow_destructive_operations: bool = False
    ) -> Response:
        params = {}
        if check:
            params["check"] = "true"
        if allow_destructive_operations:
            params["allow_destructive_operations"] = "true"
        endpoint = f"/v1/deploy?{urlencode(params)}" if params else "/v1/deploy"
        body, content_type = encode_data_project(files)
        return await self._request(endpoint, method="POST", data=body, headers={"Content-Type": content_type})

    async def deployments(self) -> Dict[str, Any]:
        return await self._req("/v1/deployments")

    async def deployment(self, deployment_id: str) -> Dict[str, Any]:
        return await self._req(f"/v1/deployments/{deployment_id}")

    async def delete_deployment(self, deployment_id: str) -> None:
        await self._req(f"/v1/deployments/{deployment_id}", method="DELETE")

    async def set_live(self, deployment_id: str) -> Response:
        return await self._request(f"/v1/deployments/{deployment_id}/set-live", method="POST", data=b"")

    async def local_tokens(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        return await self._req("/tokens", timeout=timeout)

    async def user_workspaces(self, with_organization: bool = True) -> Dict[str, Any]:
        params = {"with_organization": "true" if with_organization else "false"}
        return await self._req(f"/v1/user/workspaces?{urlencode(params)}")

    async def create_workspace(self, name: str, organization_id: Optional[str] = None) -> Dict[str, Any]:
        data = {"name": name}
        if organization_id:
            data["assign_to_organization_id"] = organization_id
        return await self._req("/v1/workspaces", method="POST", data=data)

    async def delete_workspace(self, workspace_id: str) -> None:
        await self._req(f"/v1/workspaces/{workspace_id}", method="DELETE")

    async def query(self, pipe: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        query_params: List[Tuple[str, str]] = []
        for key, value in (params or {}).items():
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                query_params.extend((key, _serialize_param(v)) for v in value)
            else:
                query_params.append((key, _serialize_param(value)))
        endpoint = f"/v0/pipes/{quote(pipe, safe='')}.json"
        if query_params:
            endpoint += f"?{urlencode(query_params)}"
        return await self._req(endpoint)

    async def sql(self, sql: str) -> Dict[str, Any]:
        if len(sql) > TinyB.MAX_GET_LENGTH:
            return await self._req("/v0/sql", method="POST", data={"q": sql})
        return await self._req(f"/v0/sql?q={quote(sql, safe='')}")

    async def ingest(self, datasource: str, event: Dict[str, Any]) -> Dict[str, Any]:
        return await self.ingest_batch(datasource, [event])

    async def ingest_batch(self, datasource: str, events: List[Dict[str, Any]]) -> Dict[str, Any]:
        if not events:
            return {"successful_rows": 0, "quarantined_rows": 0}
        data = "\n".join(json.dumps(event, default=_serialize_param) for event in events)
        params = {"name": datasource, "wait": "true"}
        return await self._req(
            f"/v0/events?{urlencode(params)}",
            method="POST",
            data=data.encode("utf-8"),
            headers={"Content-Type": "application/x-ndjson"},
        )
