import json
import logging
import secrets
import time
from typing import Any

from pydantic import ValidationError

from .hpke import HpkeReceiverConfig, encode_base64url
from .models import (
    QUERY_TYPE_TIME_INTERVAL,
    AggregatorEndpoint,
    Task,
    VdafConfig,
)
from .schema import JobConfig, QueryDescriptor

VDAF_VERIFY_KEY_LENGTH = 16


def get_config(config_path: str) -> dict[str, Any]:
    """Reads the orchestrator's job config from a local JSON file."""
    try:
        with open(config_path, "rt") as reader:
            config: dict[str, Any] = json.load(reader)
        return config
    except Exception as e:
        raise RuntimeError(
            f"Failed to get or parse job config file: {config_path}"
        ) from e


def extract_job_config(
    raw_config: dict[str, Any], overrides: dict[str, Any] | None = None
) -> JobConfig:
    """Validates the raw config. ``overrides`` replace values of the ``auth``
    section, so secrets can come from the environment rather than the file."""
    raw_config = dict(raw_config)
    if overrides:
        auth = dict(raw_config.get("auth") or {})
        auth.update({k: v for k, v in overrides.items() if v is not None})
        raw_config["auth"] = auth

    try:
        return JobConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ValueError(f"Invalid config: {e}") from None


def get_endpoints(cfg: JobConfig) -> tuple[AggregatorEndpoint, AggregatorEndpoint]:
    leader = AggregatorEndpoint("leader", cfg.leader.url, cfg.leader.version)
    helper = AggregatorEndpoint("helper", cfg.helper.url, cfg.helper.version)
    return leader, helper


def build_task(
    cfg: JobConfig, collector_config: HpkeReceiverConfig, now: int | None = None
) -> Task:
    """Builds the task both aggregators get registered with.

    A missing task ID or VDAF verify key is generated here, once per run.
    """
    if now is None:
        now = int(time.time())
    leader, helper = get_endpoints(cfg)

    task_id = cfg.task.task_id
    if task_id is None:
        task_id = encode_base64url(secrets.token_bytes(32))
        logging.info(f"Generated task id: {task_id}")

    vdaf_verify_key = cfg.task.vdaf_verify_key
    if vdaf_verify_key is None:
        vdaf_verify_key = encode_base64url(secrets.token_bytes(VDAF_VERIFY_KEY_LENGTH))

    vdaf = cfg.task.vdaf
    return Task(
        task_id=task_id,
        vdaf=VdafConfig(
            type=vdaf.type,
            bits=vdaf.bits,
            length=vdaf.length,
            chunk_length=vdaf.chunk_length,
        ),
        leader_url=leader.base_url,
        helper_url=helper.base_url,
        time_precision=cfg.task.time_precision,
        min_batch_size=cfg.task.min_batch_size,
        max_batch_size=cfg.task.max_batch_size,
        query_type=cfg.task.query_type,
        task_expiration=now + cfg.task.task_expiration_seconds,
        vdaf_verify_key=vdaf_verify_key,
        leader_authentication_token=cfg.auth.leader_authentication_token,
        collector_authentication_token=cfg.auth.collector_authentication_token,
        collector_hpke_config=collector_config.to_base64url(),
    )


def default_query(task: Task, now: int | None = None) -> QueryDescriptor:
    """Query used when no query descriptor file is given.

    Time-interval tasks collect from the bucket before the run start through
    the bucket after it, so reports are included even if the run crosses a
    bucket boundary. Fixed-size tasks collect the Leader's current batch.
    """
    if task.query_type != QUERY_TYPE_TIME_INTERVAL:
        return QueryDescriptor.model_validate({"fixed_size": {}})

    if now is None:
        now = int(time.time())
    start = (now // task.time_precision) * task.time_precision - task.time_precision
    return QueryDescriptor.model_validate(
        {
            "time_interval": {
                "batch_interval": {
                    "start": start,
                    "duration": 3 * task.time_precision,
                }
            }
        }
    )


def get_query(query_path: str | None, task: Task) -> QueryDescriptor:
    if query_path is None:
        query = default_query(task)
    else:
        try:
            with open(query_path, "rt") as reader:
                raw = json.load(reader)
        except Exception as e:
            raise RuntimeError(
                f"Failed to get or parse query descriptor file: {query_path}"
            ) from e
        try:
            query = QueryDescriptor.model_validate(raw)
        except ValidationError as e:
            raise ValueError(f"Invalid query: {e}") from None

    if query.query_type != task.query_type:
        raise ValueError(
            f"Query type {query.query_type} does not match the task's query type "
            f"{task.query_type}"
        )
    if query.time_interval is not None:
        interval = query.time_interval.batch_interval
        if (
            interval.start % task.time_precision != 0
            or interval.duration % task.time_precision != 0
        ):
            raise ValueError(
                f"Batch interval {interval.start}+{interval.duration} is not aligned "
                f"with the task's time precision of {task.time_precision}"
            )
    return query
