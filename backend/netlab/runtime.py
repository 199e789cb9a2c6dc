"""Capability client for the remote lab control plane."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union

import requests
from fastapi import Request

# purpose: start, stop and observe remote lab runtimes behind a narrow interface
# status: active
# depends_on: requests, LAB_RUNTIME_* env vars

logger = logging.getLogger(__name__)

LAB_RUNTIME_BASE_URL = os.getenv("LAB_RUNTIME_BASE_URL", "http://localhost:8081")
LAB_RUNTIME_TOKEN = os.getenv("LAB_RUNTIME_TOKEN")
LAB_RUNTIME_TIMEOUT_SECONDS = float(os.getenv("LAB_RUNTIME_TIMEOUT_SECONDS", "15"))
LAB_RUNTIME_VERIFY_TLS = os.getenv("LAB_RUNTIME_VERIFY_TLS", "1") != "0"

STOPPED_STATES = {"STOPPED", "DEFINED_ON_CORE"}


@dataclass(frozen=True)
class RuntimeContext:
    """Credentials and transport settings for one unit of work."""

    base_url: str
    token: Optional[str] = None
    timeout: float = LAB_RUNTIME_TIMEOUT_SECONDS
    verify_tls: bool = True


@dataclass(frozen=True)
class RuntimeOk:
    lab_ref: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RuntimeState:
    lab_ref: str
    state: str

    @property
    def is_stopped(self) -> bool:
        return self.state.upper() in STOPPED_STATES


@dataclass(frozen=True)
class RuntimeFailure:
    lab_ref: str
    code: str
    message: str
    status: Optional[int] = None
    retryable: bool = True


RuntimeResult = Union[RuntimeOk, RuntimeFailure]
StateResult = Union[RuntimeState, RuntimeFailure]


def is_stopped_state(state: Optional[str]) -> bool:
    """A lab never observed counts as stopped."""

    return state is None or state.upper() in STOPPED_STATES


class LabRuntimeClient(Protocol):
    def start(self, context: RuntimeContext, lab_ref: str) -> RuntimeResult: ...

    def stop(self, context: RuntimeContext, lab_ref: str) -> RuntimeResult: ...

    def get_state(self, context: RuntimeContext, lab_ref: str) -> StateResult: ...


class HttpLabRuntimeClient:
    """Talks to the control plane's ``/api/v0/labs`` endpoints."""

    def __init__(self, session: Optional[requests.Session] = None) -> None:
        self._session = session or requests.Session()

    def start(self, context: RuntimeContext, lab_ref: str) -> RuntimeResult:
        return self._command(context, lab_ref, "start")

    def stop(self, context: RuntimeContext, lab_ref: str) -> RuntimeResult:
        return self._command(context, lab_ref, "stop")

    def get_state(self, context: RuntimeContext, lab_ref: str) -> StateResult:
        response = self._call(context, "GET", lab_ref, "state")
        if isinstance(response, RuntimeFailure):
            return response
        try:
            data = response.json()
        except ValueError:
            data = response.text.strip().strip('"')
        if isinstance(data, dict):
            data = data.get("state")
        if not isinstance(data, str) or not data:
            return RuntimeFailure(
                lab_ref=lab_ref,
                code="malformed_state",
                message="Control plane returned no runtime state",
                status=response.status_code,
                retryable=False,
            )
        return RuntimeState(lab_ref=lab_ref, state=data.upper())

    def _command(self, context: RuntimeContext, lab_ref: str, action: str) -> RuntimeResult:
        response = self._call(context, "PUT", lab_ref, action)
        if isinstance(response, RuntimeFailure):
            return response
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = {"result": payload} if payload is not None else {}
        logger.info("lab %s %s accepted by control plane", lab_ref, action)
        return RuntimeOk(lab_ref=lab_ref, payload=payload)

    def _call(self, context: RuntimeContext, method: str, lab_ref: str, action: str):
        url = f"{context.base_url.rstrip('/')}/api/v0/labs/{lab_ref}/{action}"
        headers = {"Accept": "application/json"}
        if context.token:
            headers["Authorization"] = f"Bearer {context.token}"
        try:
            response = self._session.request(
                method,
                url,
                headers=headers,
                timeout=context.timeout,
                verify=context.verify_tls,
            )
        except requests.Timeout:
            logger.warning("lab %s %s timed out after %ss", lab_ref, action, context.timeout)
            return RuntimeFailure(
                lab_ref=lab_ref,
                code="timeout",
                message=f"Control plane did not answer {action} within {context.timeout}s",
            )
        except requests.RequestException as exc:
            logger.warning("lab %s %s transport failure: %s", lab_ref, action, exc)
            return RuntimeFailure(lab_ref=lab_ref, code="transport", message=str(exc))
        if response.status_code >= 400:
            body = response.text[:500]
            logger.warning(
                "lab %s %s rejected with %s: %s", lab_ref, action, response.status_code, body
            )
            return RuntimeFailure(
                lab_ref=lab_ref,
                code="http_error",
                message=body or f"HTTP {response.status_code}",
                status=response.status_code,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )
        return response


def context_from_env(token: Optional[str] = None) -> RuntimeContext:
    """Runtime context for background work that has no incoming request."""

    return RuntimeContext(
        base_url=LAB_RUNTIME_BASE_URL,
        token=token or LAB_RUNTIME_TOKEN,
        timeout=LAB_RUNTIME_TIMEOUT_SECONDS,
        verify_tls=LAB_RUNTIME_VERIFY_TLS,
    )


_client: Optional[HttpLabRuntimeClient] = None


def get_lab_runtime() -> LabRuntimeClient:
    global _client
    if _client is None:
        _client = HttpLabRuntimeClient()
    return _client


def get_runtime_context(request: Request) -> RuntimeContext:
    return context_from_env(request.headers.get("x-lab-runtime-token"))
