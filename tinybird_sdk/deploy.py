"""Pushing resource bundles to Tinybird.

Branches and Tinybird Local take the synchronous `/v1/build` endpoint. The main
workspace goes through `/v1/deploy`, which creates a deployment that is polled
until its data is ready and then promoted to live.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from requests import Response

from tinybird_sdk.client import ApiError, TinyB, parse_json_body
from tinybird_sdk.config import DEFAULT_POLL_INTERVAL_SECONDS, DEFAULT_POLL_MAX_ATTEMPTS
from tinybird_sdk.resources import GeneratedResources

RESULT_SUCCESS = "success"
RESULT_FAILED = "failed"
RESULT_NO_CHANGES = "no_changes"

DEPLOYMENT_DATA_READY = "data_ready"
DEPLOYMENT_LIVE = "live"
DEPLOYMENT_FAILED_STATUSES = ("failed", "error")


class BuildConfigException(Exception):
    pass


def validate_build_config(base_url: Optional[str], token: Optional[str]) -> None:
    if not base_url:
        raise BuildConfigException("Missing base URL for the Tinybird API")
    if not token:
        raise BuildConfigException("Missing token for the Tinybird API")


@dataclass
class ResourceChanges:
    changed: List[str] = field(default_factory=list)
    created: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]], kind: str) -> "ResourceChanges":
        payload = payload or {}
        return cls(
            changed=list(payload.get(f"changed_{kind}_names") or []),
            created=list(payload.get(f"new_{kind}_names") or []),
            deleted=list(payload.get(f"deleted_{kind}_names") or []),
        )


@dataclass
class BuildResult:
    success: bool
    result: str
    error: Optional[str] = None
    datasource_count: int = 0
    pipe_count: int = 0
    connection_count: int = 0
    build_id: Optional[str] = None
    datasources: ResourceChanges = field(default_factory=ResourceChanges)
    pipes: ResourceChanges = field(default_factory=ResourceChanges)
    connections: ResourceChanges = field(default_factory=ResourceChanges)
    pushed: bool = True


@dataclass
class StructuredFeedback:
    entries: List[Dict[str, Any]]


@dataclass
class ErrorList:
    errors: List[Any]


@dataclass
class SingleError:
    message: str


@dataclass
class RawHttpFailure:
    status_code: int
    reason: str
    body: Optional[str] = None


ApiFailure = Union[StructuredFeedback, ErrorList, SingleError, RawHttpFailure]


def classify_failure(
    response: Response, body: Dict[str, Any], raw_body: str, with_feedback: bool = False
) -> ApiFailure:
    if with_feedback:
        deployment = body.get("deployment")
        feedback = (deployment.get("feedback") if isinstance(deployment, dict) else None) or []
        errors = [f for f in feedback if isinstance(f, dict) and f.get("level") == "ERROR"]
        if errors:
            return StructuredFeedback(errors)
    if body.get("errors"):
        return ErrorList(list(body["errors"]))
    if body.get("error"):
        return SingleError(str(body["error"]))
    return RawHttpFailure(response.status_code, response.reason, raw_body if with_feedback else None)


def format_failure(failure: ApiFailure) -> str:
    if isinstance(failure, StructuredFeedback):
        lines = []
        for entry in failure.entries:
            # "Datasource events.datasource" -> "events.datasource"
            resource = (entry.get("resource") or "").split(" ")[-1]
            lines.append(f"{resource}: {entry.get('message')}")
        return "\n".join(lines)
    if isinstance(failure, ErrorList):
        lines = []
        for error in failure.errors:
            if isinstance(error, dict):
                prefix = f"[{error['filename']}] " if error.get("filename") else ""
                lines.append(f"{prefix}{error.get('error')}")
            else:
                lines.append(str(error))
        return "\n".join(lines)
    if isinstance(failure, SingleError):
        return failure.message
    message = f"HTTP {failure.status_code}: {failure.reason}"
    if failure.body is not None:
        message += f"\nResponse: {failure.body}"
    return message


def _json_object(response: Response) -> Dict[str, Any]:
    body = parse_json_body(response)
    return body if isinstance(body, dict) else {}


def _result(resources: GeneratedResources, success: bool, result: str, **kwargs: Any) -> BuildResult:
    return BuildResult(
        success=success,
        result=result,
        datasource_count=len(resources.datasources),
        pipe_count=len(resources.pipes),
        connection_count=len(resources.connections),
        **kwargs,
    )


async def build_to_tinybird(client: TinyB, resources: GeneratedResources, dry_run: bool = False) -> BuildResult:
    validate_build_config(client.host, client.token)
    if dry_run:
        return _result(resources, True, RESULT_SUCCESS, pushed=False)

    response = await client.build(resources.files())
    body = _json_object(response)

    if not response.ok or body.get("result") == RESULT_FAILED:
        failure = classify_failure(response, body, response.text)
        return _result(resources, False, RESULT_FAILED, error=format_failure(failure))

    build = body.get("build") or {}
    return _result(
        resources,
        True,
        body.get("result") or RESULT_SUCCESS,
        build_id=build.get("id"),
        datasources=ResourceChanges.from_payload(build, "datasource"),
        pipes=ResourceChanges.from_payload(build, "pipe"),
        connections=ResourceChanges.from_payload(build, "connection"),
    )


class DeployStage(Enum):
    VALIDATING = "validating"
    WAITING_FOR_READY = "waiting_for_ready"
    READY = "ready"
    WAITING_FOR_PROMOTE = "waiting_for_promote"
    LIVE = "live"


@dataclass
class DeployProgress:
    stage: DeployStage
    deployment_id: Optional[str] = None


DeployListener = Callable[[DeployProgress], None]


def _notify(listener: Optional[DeployListener], stage: DeployStage, deployment_id: Optional[str] = None) -> None:
    if not listener:
        return
    try:
        listener(DeployProgress(stage, deployment_id))
    except Exception as e:
        logging.warning(f"Deploy progress listener failed on {stage.value}: {e}")


async def cleanup_stale_deployments(client: TinyB) -> None:
    try:
        response = await client.deployments()
    except Exception as e:
        logging.warning(f"Failed to list deployments for cleanup: {e}")
        return

    stale = [
        d
        for d in (response or {}).get("deployments") or []
        if not d.get("live") and d.get("status") != DEPLOYMENT_LIVE
    ]
    for deployment in stale:
        logging.debug(f"Cleaning up stale deployment: {deployment.get('id')} (status: {deployment.get('status')})")
        try:
            await client.delete_deployment(deployment["id"])
        except Exception as e:
            logging.warning(f"Failed to delete stale deployment {deployment.get('id')}: {e}")


async def deploy_to_main(
    client: TinyB,
    resources: GeneratedResources,
    check: bool = False,
    allow_destructive_operations: bool = False,
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    max_poll_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
    listener: Optional[DeployListener] = None,
) -> BuildResult:
    validate_build_config(client.host, client.token)

    await cleanup_stale_deployments(client)

    response = await client.deploy(
        resources.files(), check=check, allow_destructive_operations=allow_destructive_operations
    )
    raw_body = response.text
    body = _json_object(response)

    def failed(error: str, deployment_id: Optional[str] = None) -> BuildResult:
        return _result(resources, False, RESULT_FAILED, error=error, build_id=deployment_id)

    if not response.ok:
        return failed(format_failure(classify_failure(response, body, raw_body, with_feedback=True)))

    if check:
        _notify(listener, DeployStage.VALIDATING)
        if body.get("result") == RESULT_FAILED:
            return failed(format_failure(classify_failure(response, body, raw_body, with_feedback=True)))
        return _result(resources, True, body.get("result") or RESULT_SUCCESS)

    if body.get("result") == RESULT_NO_CHANGES:
        return _result(resources, True, RESULT_NO_CHANGES)

    deployment = body.get("deployment")
    deployment_id = deployment.get("id") if isinstance(deployment, dict) else None
    if body.get("result") == RESULT_FAILED or not deployment_id:
        return failed(format_failure(classify_failure(response, body, raw_body, with_feedback=True)))

    logging.debug(f"Deployment created with id: {deployment_id}")

    status = deployment.get("status")
    attempts = 0
    _notify(listener, DeployStage.WAITING_FOR_READY, deployment_id)
    while status != DEPLOYMENT_DATA_READY and attempts < max_poll_attempts:
        await asyncio.sleep(poll_interval_seconds)
        attempts += 1
        logging.debug(f"Polling deployment {deployment_id} (attempt {attempts})")

        try:
            status_body = await client.deployment(deployment_id)
        except ApiError as e:
            return failed(f"Failed to check deployment status: {e.status_code}\n{e.body or ''}".rstrip(), deployment_id)

        status = ((status_body or {}).get("deployment") or {}).get("status")
        logging.debug(f"Deployment {deployment_id} status: {status}")
        if status in DEPLOYMENT_FAILED_STATUSES:
            return failed(f"Deployment failed with status: {status}", deployment_id)

    if status != DEPLOYMENT_DATA_READY:
        return failed(
            f"Deployment timed out after {max_poll_attempts} attempts. Last status: {status}", deployment_id
        )

    _notify(listener, DeployStage.READY, deployment_id)
    _notify(listener, DeployStage.WAITING_FOR_PROMOTE, deployment_id)

    set_live_response = await client.set_live(deployment_id)
    if not set_live_response.ok:
        return failed(
            f"Failed to set deployment as live: {set_live_response.status_code} {set_live_response.reason}\n"
            f"{set_live_response.text}",
            deployment_id,
        )

    logging.debug(f"Deployment {deployment_id} is now live")
    _notify(listener, DeployStage.LIVE, deployment_id)

    return _result(
        resources,
        True,
        RESULT_SUCCESS,
        build_id=deployment_id,
        datasources=ResourceChanges.from_payload(deployment, "datasource"),
        pipes=ResourceChanges.from_payload(deployment, "pipe"),
        connections=ResourceChanges.from_payload(deployment, "connection"),
    )
