import logging
import time
from pathlib import Path
from typing import Callable
from urllib.parse import urljoin

import requests

from .aggregator import DAP_AUTH_HEADER, AggregatorClient, send
from .exceptions import (
    CollectionJobFailed,
    CollectionTimeout,
    NotReadyYet,
    ProtocolRejection,
)
from .models import CollectionJob, CollectionJobState, Task
from .retry import retry_call
from .schema import QueryDescriptor

COLLECT_REQ_CONTENT_TYPE = "application/dap-collect-req"
COLLECT_PATH = "collect"


def _job_url(response: requests.Response) -> str | None:
    location = response.headers.get("Location")
    if location:
        return urljoin(response.url, location)
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text if text.startswith(("http://", "https://")) else None
    if isinstance(body, dict):
        return body.get("collection_job_url") or body.get("url")
    if isinstance(body, str):
        return body
    return None


class CollectionJobDriver:
    """Collector side of a collection job: create it, then poll it to completion.

    State machine::

        uninitiated --create--> created --poll--> pending | complete | failed
                                pending --poll--> pending | complete | failed

    Every request carries the Collector's bearer token. An authentication
    failure is raised as ``AuthError`` and is never taken for "pending".
    """

    def __init__(
        self,
        leader: AggregatorClient,
        bearer_token: str,
        max_attempts: int,
        delay: Callable[[int], float],
        transient_attempts: int = 3,
        transient_delay: Callable[[int], float] = lambda attempt: 1.0,
        sleep: Callable[[float], object] = time.sleep,
    ):
        self.leader = leader
        self.bearer_token = bearer_token
        self.max_attempts = max_attempts
        self.delay = delay
        self.transient_attempts = transient_attempts
        self.transient_delay = transient_delay
        self.sleep = sleep

    def _send(self, method: str, url: str, step: str, job_url: str | None = None, **kwargs):
        return retry_call(
            lambda: send(
                self.leader.session,
                method,
                url,
                step,
                self.leader.timeout,
                job_url=job_url,
                allow_redirects=False,
                **kwargs,
            ),
            self.transient_attempts,
            self.transient_delay,
            step,
            sleep=self.sleep,
        )

    def query_json(self, task: Task, query: QueryDescriptor) -> dict:
        if query.time_interval is not None:
            interval = query.time_interval.batch_interval
            return {
                "time_interval": {
                    "batch_interval": {
                        "start": interval.start,
                        "duration": interval.duration,
                    }
                }
            }

        batch_id = query.fixed_size.batch_id
        if batch_id is None:
            batch_id = retry_call(
                lambda: self.leader.current_batch(task.task_id),
                self.transient_attempts,
                self.transient_delay,
                "current_batch",
                sleep=self.sleep,
            )
            logging.info(f"Resolved current batch for task {task.task_id}: {batch_id}")
        return {"fixed_size": {"batch_id": batch_id}}

    def create(self, task: Task, query: QueryDescriptor) -> CollectionJob:
        step = "create collection job"
        body = {
            "task_id": task.task_id,
            "query": self.query_json(task, query),
            "agg_param": query.agg_param,
        }
        logging.info(f"Creating collection job for task {task.task_id}: {body['query']}")
        # Sent once: a retry after a lost response would open a second job.
        response = send(
            self.leader.session,
            "POST",
            self.leader.endpoint.versioned_path(COLLECT_PATH),
            step,
            self.leader.timeout,
            allow_redirects=False,
            json=body,
            headers={DAP_AUTH_HEADER: self.bearer_token},
        )
        url = _job_url(response)
        if not url:
            raise ProtocolRejection(
                "Leader did not return a collection job URL",
                step=step,
                status_code=response.status_code,
                detail=response.text.strip()[:500],
            )
        logging.info(f"Created collection job: {url}")
        return CollectionJob(task_id=task.task_id, url=url)

    def poll(self, job: CollectionJob) -> CollectionJob:
        """Poll once. Returns the completed job or raises ``NotReadyYet``."""
        step = "poll collection job"
        job.polls += 1
        try:
            response = self._send(
                "POST",
                job.url,
                step,
                job_url=job.url,
                headers={
                    DAP_AUTH_HEADER: self.bearer_token,
                    "Content-Type": COLLECT_REQ_CONTENT_TYPE,
                },
            )
        except ProtocolRejection as e:
            job.state = CollectionJobState.FAILED
            job.error = e.detail or e.message
            raise CollectionJobFailed(
                f"Collection job failed for task {job.task_id}",
                step=step,
                status_code=e.status_code,
                job_url=job.url,
                detail=e.detail,
            ) from e

        if response.status_code == 202 or (
            response.status_code == 200 and not response.content
        ):
            job.state = CollectionJobState.PENDING
            raise NotReadyYet(
                "Collection job is not ready yet",
                step=step,
                status_code=response.status_code,
                job_url=job.url,
            )

        if response.status_code != 200:
            raise ProtocolRejection(
                f"Unexpected status {response.status_code} polling collection job",
                step=step,
                status_code=response.status_code,
                job_url=job.url,
                detail=response.text.strip()[:500],
            )

        job.state = CollectionJobState.COMPLETE
        job.payload = response.content
        logging.info(
            f"Collection job complete after {job.polls} polls: {job.url} "
            f"({len(job.payload)} bytes)"
        )
        return job

    def wait_for_completion(
        self,
        job: CollectionJob,
        on_pending: Callable[[CollectionJob, int], object] | None = None,
    ) -> CollectionJob:
        """Poll until the job completes, at most ``max_attempts`` times.

        ``on_pending`` runs after each pending poll except the last, before
        the delay.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self.poll(job)
            except NotReadyYet:
                logging.info(
                    f"Collection job pending, poll {attempt}/{self.max_attempts}: {job.url}"
                )
                if attempt == self.max_attempts:
                    break
                if on_pending is not None:
                    on_pending(job, attempt)
                self.sleep(self.delay(attempt))

        raise CollectionTimeout(
            f"Collection job still pending after {self.max_attempts} polls",
            step="poll collection job",
            job_url=job.url,
        )


def store_payload(job: CollectionJob, output_dir: str | Path) -> Path:
    """Write a completed job's response where the decoder tool can read it."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / f"collection-{job.task_id}.bin"
    path.write_bytes(job.payload)
    logging.info(f"Stored collection response at: {path}")
    return path
