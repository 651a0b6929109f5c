import json
import os
import tempfile

from unittest import TestCase
from unittest.mock import MagicMock

import requests
import responses

from dap_interop_orchestrator.aggregator import AggregatorClient
from dap_interop_orchestrator.collect import (
    COLLECT_REQ_CONTENT_TYPE,
    CollectionJobDriver,
    store_payload,
)
from dap_interop_orchestrator.exceptions import (
    AuthError,
    CollectionJobFailed,
    CollectionTimeout,
    NetworkError,
    NotReadyYet,
    ProtocolRejection,
)
from dap_interop_orchestrator.hpke import HpkeReceiverConfig
from dap_interop_orchestrator.models import (
    AggregatorEndpoint,
    CollectionJob,
    CollectionJobState,
)
from dap_interop_orchestrator.parse import build_task, extract_job_config
from dap_interop_orchestrator.retry import FixedDelay
from dap_interop_orchestrator.schema import QueryDescriptor

from tests.test_mocks import (
    COLLECTION_JOB_URL,
    COLLECTOR_TOKEN,
    JAN_1_2026,
    LEADER_BASE_URL,
    LEADER_ORIGIN,
    MOCK_BATCH_ID,
    MOCK_TASK_ID,
    mock_collection_payload,
    mock_get_valid_config,
    mock_hpke_config_dict,
)

COLLECT_URL = f"{LEADER_BASE_URL}/collect"
CURRENT_BATCH_URL = f"{LEADER_ORIGIN}/internal/current_batch/task/{MOCK_TASK_ID}"
UNAUTHORIZED_PROBLEM = {
    "type": "urn:ietf:params:ppm:dap:error:unauthorizedRequest",
    "detail": "The request's authorization is not valid.",
}


class TestCollectionJobDriver(TestCase):
    def setUp(self):
        cfg = extract_job_config(mock_get_valid_config())
        collector = HpkeReceiverConfig.from_dict(mock_hpke_config_dict())
        self.task = build_task(cfg, collector, now=JAN_1_2026)
        self.leader = AggregatorClient(AggregatorEndpoint("leader", LEADER_ORIGIN, "v09"))
        self.sleep = MagicMock()
        self.driver = CollectionJobDriver(
            self.leader,
            COLLECTOR_TOKEN,
            3,
            FixedDelay(1),
            transient_attempts=2,
            transient_delay=FixedDelay(0),
            sleep=self.sleep,
        )

    def _job(self):
        return CollectionJob(task_id=MOCK_TASK_ID, url=COLLECTION_JOB_URL)

    @responses.activate
    def test_create_current_batch(self):
        responses.add(responses.GET, CURRENT_BATCH_URL, body=MOCK_BATCH_ID)
        responses.add(
            responses.POST,
            COLLECT_URL,
            status=201,
            headers={"Location": COLLECTION_JOB_URL},
        )

        job = self.driver.create(self.task, QueryDescriptor(fixed_size={}))

        self.assertEqual(job.url, COLLECTION_JOB_URL)
        self.assertEqual(job.state, CollectionJobState.CREATED)
        request = responses.calls[1].request
        self.assertEqual(request.headers["dap-auth-token"], COLLECTOR_TOKEN)
        self.assertEqual(
            json.loads(request.body),
            {
                "task_id": MOCK_TASK_ID,
                "query": {"fixed_size": {"batch_id": MOCK_BATCH_ID}},
                "agg_param": "",
            },
        )

    @responses.activate
    def test_create_time_interval(self):
        responses.add(
            responses.POST,
            COLLECT_URL,
            status=201,
            headers={"Location": f"/v09/collect/task/{MOCK_TASK_ID}/req/1"},
        )
        query = QueryDescriptor.model_validate(
            {"time_interval": {"batch_interval": {"start": JAN_1_2026, "duration": 3600}}}
        )

        job = self.driver.create(self.task, query)

        # relative locations resolve against the Leader
        self.assertEqual(job.url, COLLECTION_JOB_URL)
        self.assertEqual(
            json.loads(responses.calls[0].request.body)["query"],
            {"time_interval": {"batch_interval": {"start": JAN_1_2026, "duration": 3600}}},
        )

    @responses.activate
    def test_create_url_in_body(self):
        query = QueryDescriptor(fixed_size={"batch_id": MOCK_BATCH_ID})
        responses.add(
            responses.POST, COLLECT_URL, json={"collection_job_url": COLLECTION_JOB_URL}
        )
        self.assertEqual(self.driver.create(self.task, query).url, COLLECTION_JOB_URL)

        responses.replace(responses.POST, COLLECT_URL, body=f"{COLLECTION_JOB_URL}\n")
        self.assertEqual(self.driver.create(self.task, query).url, COLLECTION_JOB_URL)

        responses.replace(responses.POST, COLLECT_URL, body="")
        with self.assertRaises(ProtocolRejection):
            self.driver.create(self.task, query)

    @responses.activate
    def test_create_unauthorized(self):
        responses.add(responses.POST, COLLECT_URL, status=401)
        with self.assertRaises(AuthError):
            self.driver.create(self.task, QueryDescriptor(fixed_size={"batch_id": MOCK_BATCH_ID}))

    @responses.activate
    def test_create_unauthorized_problem_type(self):
        responses.add(responses.POST, COLLECT_URL, status=400, json=UNAUTHORIZED_PROBLEM)
        with self.assertRaises(AuthError) as e:
            self.driver.create(self.task, QueryDescriptor(fixed_size={"batch_id": MOCK_BATCH_ID}))
        self.assertEqual(e.exception.status_code, 400)

    @responses.activate
    def test_create_read_timeout_not_resent(self):
        # the Leader may already hold the job, so a second POST would open another
        responses.add(
            responses.POST, COLLECT_URL, body=requests.exceptions.ReadTimeout("read timed out")
        )
        responses.add(
            responses.POST, COLLECT_URL, status=201, headers={"Location": COLLECTION_JOB_URL}
        )

        with self.assertRaises(NetworkError):
            self.driver.create(self.task, QueryDescriptor(fixed_size={"batch_id": MOCK_BATCH_ID}))

        responses.assert_call_count(COLLECT_URL, 1)
        self.sleep.assert_not_called()

    @responses.activate
    def test_poll_pending(self):
        responses.add(responses.POST, COLLECTION_JOB_URL, status=202)
        job = self._job()

        with self.assertRaises(NotReadyYet):
            self.driver.poll(job)

        self.assertEqual(job.state, CollectionJobState.PENDING)
        self.assertEqual(job.polls, 1)
        request = responses.calls[0].request
        self.assertEqual(request.headers["dap-auth-token"], COLLECTOR_TOKEN)
        self.assertEqual(request.headers["Content-Type"], COLLECT_REQ_CONTENT_TYPE)

    @responses.activate
    def test_poll_empty_body_is_pending(self):
        responses.add(responses.POST, COLLECTION_JOB_URL, status=200, body=b"")
        with self.assertRaises(NotReadyYet):
            self.driver.poll(self._job())

    @responses.activate
    def test_poll_complete(self):
        payload = mock_collection_payload()
        responses.add(responses.POST, COLLECTION_JOB_URL, status=200, body=payload)
        job = self.driver.poll(self._job())

        self.assertEqual(job.state, CollectionJobState.COMPLETE)
        self.assertEqual(job.payload, payload)

    @responses.activate
    def test_poll_unauthorized(self):
        # never mistaken for a pending job
        responses.add(responses.POST, COLLECTION_JOB_URL, status=403)
        job = self._job()
        with self.assertRaises(AuthError):
            self.driver.poll(job)
        self.assertEqual(job.state, CollectionJobState.CREATED)

    @responses.activate
    def test_poll_unauthorized_problem_type(self):
        responses.add(
            responses.POST, COLLECTION_JOB_URL, status=400, json=UNAUTHORIZED_PROBLEM
        )
        job = self._job()
        with self.assertRaises(AuthError):
            self.driver.poll(job)
        self.assertNotEqual(job.state, CollectionJobState.FAILED)

    @responses.activate
    def test_poll_unexpected_status(self):
        responses.add(
            responses.POST,
            COLLECTION_JOB_URL,
            status=303,
            body="<html>See other</html>",
            headers={"Location": f"{LEADER_ORIGIN}/login"},
        )
        job = self._job()
        with self.assertRaises(ProtocolRejection) as e:
            self.driver.poll(job)

        self.assertEqual(e.exception.status_code, 303)
        self.assertNotEqual(job.state, CollectionJobState.COMPLETE)
        self.assertIsNone(job.payload)

    @responses.activate
    def test_poll_failed(self):
        responses.add(
            responses.POST,
            COLLECTION_JOB_URL,
            status=400,
            json={"type": "urn:ietf:params:ppm:dap:error:batchInvalid"},
        )
        job = self._job()
        with self.assertRaises(CollectionJobFailed) as e:
            self.driver.poll(job)

        self.assertEqual(job.state, CollectionJobState.FAILED)
        self.assertIn("batchInvalid", job.error)
        self.assertEqual(e.exception.job_url, COLLECTION_JOB_URL)

    @responses.activate
    def test_poll_transient_error(self):
        responses.add(responses.POST, COLLECTION_JOB_URL, status=503)
        responses.add(responses.POST, COLLECTION_JOB_URL, status=200, body=b"\x02")
        job = self.driver.poll(self._job())
        self.assertEqual(job.state, CollectionJobState.COMPLETE)
        self.assertEqual(job.polls, 1)

    @responses.activate
    def test_wait_for_completion(self):
        payload = mock_collection_payload()
        responses.add(responses.POST, COLLECTION_JOB_URL, status=202)
        responses.add(responses.POST, COLLECTION_JOB_URL, status=202)
        responses.add(responses.POST, COLLECTION_JOB_URL, status=200, body=payload)
        on_pending = MagicMock()

        job = self.driver.wait_for_completion(self._job(), on_pending=on_pending)

        self.assertEqual(job.payload, payload)
        self.assertEqual(job.polls, 3)
        self.assertEqual(on_pending.call_count, 2)
        self.assertEqual(self.sleep.call_count, 2)

    @responses.activate
    def test_wait_for_completion_timeout(self):
        responses.add(responses.POST, COLLECTION_JOB_URL, status=202)
        on_pending = MagicMock()
        job = self._job()

        with self.assertRaises(CollectionTimeout) as e:
            self.driver.wait_for_completion(job, on_pending=on_pending)

        self.assertEqual(job.polls, 3)
        self.assertEqual(job.state, CollectionJobState.PENDING)
        self.assertEqual(on_pending.call_count, 2)
        self.assertEqual(e.exception.job_url, COLLECTION_JOB_URL)


class TestStorePayload(TestCase):
    def test_store_payload(self):
        job = CollectionJob(
            task_id=MOCK_TASK_ID, url=COLLECTION_JOB_URL, payload=b"\x01\x02"
        )
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = store_payload(job, os.path.join(tmp_dir, "output"))
            self.assertEqual(path.name, f"collection-{MOCK_TASK_ID}.bin")
            self.assertEqual(path.read_bytes(), b"\x01\x02")
