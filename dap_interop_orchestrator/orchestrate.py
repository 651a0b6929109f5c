"""Drives one end-to-end DAP exchange against a Leader/Helper pair.

    reset -> provision -> upload reports -> settle -> trigger aggregation
    -> create collection job -> poll until complete -> decode

Aggregators process asynchronously, so nothing here assumes that a call
has taken effect by the time it returns. Aggregation is nudged as often as
the trigger budget allows while the collection job is pending.
"""

import itertools
import logging
import threading
from typing import Callable

from .aggregator import AggregatorClient
from .collect import CollectionJobDriver, store_payload
from .decode import ResultDecoder
from .exceptions import OrchestrationAborted, ReportCountMismatch
from .models import AggregateResult, CollectionJob, RunSummary, Task
from .parse import get_endpoints
from .provision import ConfigProvisioner, HpkeConfigs
from .retry import delay_strategy, retry_call
from .schema import JobConfig, QueryDescriptor
from .upload import ReportUploader


class OrchestrationSequencer:
    def __init__(
        self,
        cfg: JobConfig,
        task: Task,
        query: QueryDescriptor,
        hpke_configs: HpkeConfigs,
        provisioner: ConfigProvisioner,
        uploader: ReportUploader,
        leader: AggregatorClient,
        driver: CollectionJobDriver,
        decoder: ResultDecoder,
        abort_event: threading.Event | None = None,
        sleep: Callable[[float], object] | None = None,
    ):
        self.cfg = cfg
        self.task = task
        self.query = query
        self.hpke_configs = hpke_configs
        self.provisioner = provisioner
        self.uploader = uploader
        self.leader = leader
        self.driver = driver
        self.decoder = decoder
        self.abort_event = abort_event or threading.Event()
        self.sleep = sleep or self.abort_event.wait
        self.trigger_delay = delay_strategy(
            cfg.retry.delay, cfg.retry.backoff_factor, cfg.retry.max_delay
        )
        self.summary = RunSummary(task_id=task.task_id)
        self.job: CollectionJob | None = None

    @classmethod
    def from_config(
        cls,
        cfg: JobConfig,
        task: Task,
        query: QueryDescriptor,
        hpke_configs: HpkeConfigs,
        abort_event: threading.Event | None = None,
        sleep: Callable[[float], object] | None = None,
    ) -> "OrchestrationSequencer":
        abort_event = abort_event or threading.Event()
        sleep = sleep or abort_event.wait
        leader_endpoint, helper_endpoint = get_endpoints(cfg)
        leader = AggregatorClient(leader_endpoint, cfg.http_timeout)
        helper = AggregatorClient(helper_endpoint, cfg.http_timeout)
        retry_delay = delay_strategy(
            cfg.retry.delay, cfg.retry.backoff_factor, cfg.retry.max_delay
        )
        provisioner = ConfigProvisioner(
            leader, helper, cfg.retry.attempts, retry_delay, sleep=sleep
        )
        uploader = ReportUploader(
            cfg.upload.command,
            cfg.upload.timeout,
            success_marker=cfg.upload.success_marker,
            failure_marker=cfg.upload.failure_marker,
        )
        driver = CollectionJobDriver(
            leader,
            task.collector_authentication_token,
            cfg.poll.max_attempts,
            delay_strategy(cfg.poll.delay, cfg.poll.backoff_factor, cfg.poll.max_delay),
            transient_attempts=cfg.retry.attempts,
            transient_delay=retry_delay,
            sleep=sleep,
        )
        decoder = ResultDecoder(
            cfg.decoder.command, cfg.decoder.timeout, cfg.hpke.collector_config_path
        )
        return cls(
            cfg,
            task,
            query,
            hpke_configs,
            provisioner,
            uploader,
            leader,
            driver,
            decoder,
            abort_event=abort_event,
            sleep=sleep,
        )

    def abort(self):
        """Stop the run at the next step boundary. Server state is left as is."""
        logging.warning("Abort requested, stopping at the next step.")
        self.abort_event.set()

    def _checkpoint(self, step: str):
        if self.abort_event.is_set():
            raise OrchestrationAborted(
                f"Run aborted before {step}",
                step=step,
                job_url=self.job.url if self.job else None,
            )
        self.summary.steps.append(step)

    def _settle(self):
        seconds = self.cfg.orchestration.settle_seconds
        if seconds > 0:
            self.sleep(seconds)

    def reports_to_upload(self) -> list:
        """Measurements cycled out to at least ``min_report_count`` reports."""
        orch = self.cfg.orchestration
        count = max(len(orch.measurements), orch.min_report_count)
        return list(itertools.islice(itertools.cycle(orch.measurements), count))

    def upload_plan(self) -> list[list]:
        """Split the reports into ``upload_rounds`` contiguous, near-equal rounds."""
        reports = self.reports_to_upload()
        rounds = self.cfg.orchestration.upload_rounds
        size, extra = divmod(len(reports), rounds)
        plan = []
        start = 0
        for i in range(rounds):
            end = start + size + (1 if i < extra else 0)
            plan.append(reports[start:end])
            start = end
        return plan

    def trigger(self) -> bool:
        """Run the Leader's aggregation sweep once. Returns False when the
        trigger budget is spent."""
        orch = self.cfg.orchestration
        if self.summary.trigger_calls >= orch.max_trigger_calls:
            logging.info(f"Trigger budget of {orch.max_trigger_calls} calls is spent.")
            return False
        retry_call(
            lambda: self.leader.process(orch.report_selector),
            self.cfg.retry.attempts,
            self.trigger_delay,
            "process",
            sleep=self.sleep,
        )
        self.summary.trigger_calls += 1
        logging.info(
            f"Triggered aggregation ({self.summary.trigger_calls}/{orch.max_trigger_calls})"
        )
        return True

    def _on_pending(self, job: CollectionJob, attempt: int):
        self._checkpoint(f"re-trigger after poll {attempt}")
        if self.cfg.orchestration.trigger_while_polling:
            self.trigger()

    def _check_report_count(self, result: AggregateResult):
        uploaded = self.uploader.succeeded
        min_report_count = self.cfg.orchestration.min_report_count
        if result.report_count > uploaded:
            raise ReportCountMismatch(
                f"Collected {result.report_count} reports but only {uploaded} were uploaded",
                step="check report count",
                job_url=result.job_url,
            )
        if result.report_count < min_report_count:
            raise ReportCountMismatch(
                f"Collected {result.report_count} reports, expected at least "
                f"{min_report_count}",
                step="check report count",
                job_url=result.job_url,
            )
        if result.report_count < uploaded:
            logging.warning(
                f"Collected {result.report_count} of {uploaded} uploaded reports"
            )

    def run(self) -> RunSummary:
        orch = self.cfg.orchestration
        logging.info(f"Starting run for task: {self.task.task_id}")

        if orch.reset_before_provision:
            self._checkpoint("reset")
            self.provisioner.reset()
        self._checkpoint("provision")
        self.provisioner.provision(self.task, self.hpke_configs)

        collection_round = orch.collection_after_round or orch.upload_rounds
        for round_number, measurements in enumerate(self.upload_plan(), start=1):
            logging.info(
                f"Upload round {round_number}/{orch.upload_rounds}: "
                f"{len(measurements)} reports"
            )
            for measurement in measurements:
                self._checkpoint(f"upload round {round_number}")
                try:
                    self.uploader.upload(self.task, measurement)
                finally:
                    self.summary.uploads_attempted = self.uploader.attempted
                    self.summary.uploads_succeeded = self.uploader.succeeded

            self._checkpoint(f"settle round {round_number}")
            self._settle()
            for i in range(orch.trigger_calls_per_round):
                self._checkpoint(f"trigger round {round_number}")
                if not self.trigger():
                    break
                if i < orch.trigger_calls_per_round - 1:
                    self._settle()

            if round_number == collection_round:
                self._checkpoint("create collection job")
                self.job = self.driver.create(self.task, self.query)
                self.summary.job_url = self.job.url

        self._checkpoint("poll collection job")
        try:
            self.driver.wait_for_completion(self.job, on_pending=self._on_pending)
        finally:
            self.summary.polls = self.job.polls

        self._checkpoint("decode collection")
        payload_path = store_payload(self.job, self.cfg.output_dir)
        result = self.decoder.decode(
            self.job, payload_path, self.task, self.hpke_configs.collector
        )
        self._checkpoint("check report count")
        self._check_report_count(result)

        self.summary.result = result
        logging.info(
            f"Finished run for task {self.task.task_id}: {result.report_count} reports, "
            f"aggregate {result.aggregate}"
        )
        return self.summary
