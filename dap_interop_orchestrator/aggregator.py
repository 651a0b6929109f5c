import logging
from typing import Any

import requests

from .exceptions import AuthError, NetworkError, ProtocolRejection, TaskConflict
from .hpke import HpkeReceiverConfig
from .models import AggregatorEndpoint

USER_AGENT = "dap-interop-orchestrator/0.1.0"
DAP_AUTH_HEADER = "dap-auth-token"
TRANSIENT_STATUS_CODES = {502, 503, 504}
UNAUTHORIZED_PROBLEM_TYPE = "unauthorizedRequest"


def problem_detail(response: requests.Response) -> str:
    """Pull the server's diagnostic out of an error response.

    DAP aggregators answer with ``application/problem+json``; anything else
    is returned as (truncated) text.
    """
    try:
        body = response.json()
    except ValueError:
        return response.text.strip()[:500]
    if isinstance(body, dict):
        parts = [
            str(body[key]) for key in ("type", "title", "detail") if body.get(key)
        ]
        if parts:
            return " - ".join(parts)
    return str(body)[:500]


def problem_type(response: requests.Response) -> str:
    """The ``type`` of a problem-details body, or an empty string."""
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict) and isinstance(body.get("type"), str):
        return body["type"]
    return ""


def raise_for_dap_status(
    response: requests.Response, step: str, job_url: str | None = None
):
    status_code = response.status_code
    if status_code < 400:
        return
    detail = problem_detail(response)
    # Aggregators may reject a bad token with a 400 and a DAP problem type.
    if status_code in (401, 403) or problem_type(response).endswith(
        UNAUTHORIZED_PROBLEM_TYPE
    ):
        raise AuthError(
            f"Authentication failed during {step}",
            step=step,
            status_code=status_code,
            job_url=job_url,
            detail=detail,
        )
    if status_code in TRANSIENT_STATUS_CODES:
        raise NetworkError(
            f"Aggregator unavailable during {step}",
            step=step,
            status_code=status_code,
            job_url=job_url,
            detail=detail,
        )
    raise ProtocolRejection(
        f"Aggregator rejected {step}",
        step=step,
        status_code=status_code,
        job_url=job_url,
        detail=detail,
    )


def send(
    session: requests.Session,
    method: str,
    url: str,
    step: str,
    timeout: float,
    job_url: str | None = None,
    **kwargs,
) -> requests.Response:
    """Send one request, mapping transport failures and error statuses onto
    the orchestrator's error taxonomy."""
    try:
        response = session.request(method, url, timeout=timeout, **kwargs)
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
        raise NetworkError(
            f"Request to {url} failed during {step}",
            step=step,
            job_url=job_url,
            detail=str(e),
        ) from e
    raise_for_dap_status(response, step, job_url)
    return response


def new_session() -> requests.Session:
    session = requests.Session()
    session.headers.update({"user-agent": USER_AGENT})
    return session


class AggregatorClient:
    """Client for an aggregator's test-only administrative routes."""

    def __init__(
        self,
        endpoint: AggregatorEndpoint,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = session or new_session()

    @property
    def role(self) -> str:
        return self.endpoint.role

    def delete_all(self):
        """Clear all of the aggregator's storage. Destructive; test deployments only."""
        send(
            self.session,
            "POST",
            self.endpoint.origin_path("internal/delete_all"),
            f"reset {self.role}",
            self.timeout,
        )
        logging.info(f"Cleared all state on {self.role}: {self.endpoint.origin}")

    def ready(self):
        send(
            self.session,
            "POST",
            self.endpoint.origin_path("internal/test/ready"),
            f"ready check {self.role}",
            self.timeout,
        )

    def add_hpke_config(self, receiver: HpkeReceiverConfig) -> bool:
        """Publish an HPKE receiver config.

        Returns False when the aggregator already holds a config with this ID,
        in which case nothing changed on the server.
        """
        step = f"add_hpke_config {self.role}"
        try:
            send(
                self.session,
                "POST",
                self.endpoint.versioned_path("internal/test/add_hpke_config"),
                step,
                self.timeout,
                json=receiver.to_dict(),
            )
        except ProtocolRejection as e:
            if e.detail and "already exists" in e.detail:
                logging.warning(
                    f"HPKE config {receiver.config_id} already published on "
                    f"{self.role}, not adding it again."
                )
                return False
            raise
        logging.info(f"Published HPKE config {receiver.config_id} on {self.role}")
        return True

    def add_task(self, descriptor: dict[str, Any]):
        step = f"add_task {self.role}"
        try:
            send(
                self.session,
                "POST",
                self.endpoint.versioned_path("internal/test/add_task"),
                step,
                self.timeout,
                json=descriptor,
            )
        except ProtocolRejection as e:
            if e.detail and "already exists" in e.detail:
                raise TaskConflict(
                    f"{self.role} already holds state for task {descriptor['task_id']}, "
                    f"reset the aggregators before provisioning",
                    step=step,
                    status_code=e.status_code,
                    detail=e.detail,
                ) from e
            raise
        logging.info(f"Registered task {descriptor['task_id']} on {self.role}")

    def process(self, report_selector: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run one pass of the Leader's aggregation sweep and return its telemetry."""
        kwargs = {} if report_selector is None else {"json": report_selector}
        response = send(
            self.session,
            "POST",
            self.endpoint.origin_path("internal/process"),
            "process",
            self.timeout,
            **kwargs,
        )
        if not response.content:
            return {}
        try:
            telemetry = response.json()
        except ValueError:
            telemetry = {"raw": response.text}
        logging.info(f"Aggregation sweep telemetry: {telemetry}")
        return telemetry

    def current_batch(self, task_id: str) -> str:
        """ID of the oldest not-yet-collected batch of a fixed-size task."""
        response = send(
            self.session,
            "GET",
            self.endpoint.origin_path(f"internal/current_batch/task/{task_id}"),
            "current_batch",
            self.timeout,
        )
        return response.text.strip()
