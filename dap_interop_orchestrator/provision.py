import logging
import time
from dataclasses import dataclass
from typing import Callable

from .aggregator import AggregatorClient
from .hpke import HpkeReceiverConfig, load_or_generate_receiver_config, load_receiver_config
from .models import Task
from .retry import retry_call
from .schema import Hpke


@dataclass(frozen=True)
class HpkeConfigs:
    """The HPKE receiver configs of all three parties for one run."""

    leader: HpkeReceiverConfig
    helper: HpkeReceiverConfig
    collector: HpkeReceiverConfig


def load_hpke_configs(hpke: Hpke) -> HpkeConfigs:
    # The Collector's private config is what the decoder decrypts with, so
    # it has to exist beforehand. Aggregator configs are created on demand.
    collector = load_receiver_config(hpke.collector_config_path)
    leader = load_or_generate_receiver_config(hpke.leader_config_path, hpke.kem_alg)
    helper = load_or_generate_receiver_config(hpke.helper_config_path, hpke.kem_alg)
    logging.info(
        f"Loaded HPKE configs, leader: {leader.config_id}, helper: {helper.config_id}, "
        f"collector: {collector.config_id}"
    )
    return HpkeConfigs(leader=leader, helper=helper, collector=collector)


class ConfigProvisioner:
    """Brings the Leader and Helper into agreement on HPKE configs and the task.

    Every call retries on network errors only; a protocol-level rejection
    surfaces immediately.
    """

    def __init__(
        self,
        leader: AggregatorClient,
        helper: AggregatorClient,
        attempts: int,
        delay: Callable[[int], float],
        sleep: Callable[[float], object] = time.sleep,
    ):
        self.leader = leader
        self.helper = helper
        self.attempts = attempts
        self.delay = delay
        self.sleep = sleep

    @property
    def aggregators(self) -> tuple[AggregatorClient, AggregatorClient]:
        return self.leader, self.helper

    def _call(self, func, description: str):
        return retry_call(
            func, self.attempts, self.delay, description, sleep=self.sleep
        )

    def reset(self):
        for aggregator in self.aggregators:
            self._call(aggregator.delete_all, f"reset {aggregator.role}")

    def wait_until_ready(self):
        for aggregator in self.aggregators:
            self._call(aggregator.ready, f"ready check {aggregator.role}")

    def publish_hpke_config(
        self, aggregator: AggregatorClient, receiver: HpkeReceiverConfig
    ) -> bool:
        return self._call(
            lambda: aggregator.add_hpke_config(receiver),
            f"add_hpke_config {aggregator.role}",
        )

    def register_task(self, task: Task):
        self._call(
            lambda: self.leader.add_task(task.leader_descriptor()),
            "add_task leader",
        )
        self._call(
            lambda: self.helper.add_task(task.helper_descriptor()),
            "add_task helper",
        )

    def provision(self, task: Task, hpke_configs: HpkeConfigs):
        logging.info(f"Provisioning {task}")
        self.wait_until_ready()
        self.publish_hpke_config(self.leader, hpke_configs.leader)
        self.publish_hpke_config(self.helper, hpke_configs.helper)
        self.register_task(task)
        logging.info(f"Finished provisioning task: {task.task_id}")
