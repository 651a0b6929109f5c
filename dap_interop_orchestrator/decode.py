import ast
import json
import logging
import re
import struct
import subprocess
from pathlib import Path

from .exceptions import DecodeError
from .hpke import HpkeReceiverConfig, encode_base64url
from .models import (
    QUERY_TYPE_FIXED_SIZE,
    QUERY_TYPE_TIME_INTERVAL,
    AggregateResult,
    CollectionHeader,
    CollectionJob,
    Task,
)

STEP = "decode collection"
RESULT_PREFIX = "Aggregation result:"
REPORT_COUNT_PREFIX = "Number of reports:"
BATCH_ID_LENGTH = 32


def _read_ciphertext_config_id(payload: bytes, offset: int) -> tuple[int, int]:
    """Read an HpkeCiphertext at ``offset``: config_id u8, enc<u16>, payload<u32>.

    Returns the config id and the offset just past the ciphertext.
    """
    (config_id,) = struct.unpack_from("!B", payload, offset)
    offset += 1
    (enc_length,) = struct.unpack_from("!H", payload, offset)
    offset += 2 + enc_length
    (payload_length,) = struct.unpack_from("!I", payload, offset)
    offset += 4 + payload_length
    if offset > len(payload):
        raise struct.error("ciphertext runs past the end of the payload")
    return config_id, offset


def parse_collection_header(payload: bytes) -> CollectionHeader:
    """Parse the unencrypted fields of a DAP (draft 09) ``Collection``.

    Layout: partial batch selector (query type u8, plus a 32-byte batch ID
    for fixed-size queries), report_count u64, interval (start u64,
    duration u64), then the Leader's and Helper's encrypted aggregate shares.
    """
    try:
        (query_type,) = struct.unpack_from("!B", payload, 0)
        offset = 1
        batch_id = None
        if query_type == QUERY_TYPE_FIXED_SIZE:
            if len(payload) < offset + BATCH_ID_LENGTH:
                raise struct.error("batch id runs past the end of the payload")
            batch_id = encode_base64url(payload[offset : offset + BATCH_ID_LENGTH])
            offset += BATCH_ID_LENGTH
        elif query_type != QUERY_TYPE_TIME_INTERVAL:
            raise DecodeError(
                f"Unknown query type {query_type} in collection payload", step=STEP
            )
        report_count, interval_start, interval_duration = struct.unpack_from(
            "!QQQ", payload, offset
        )
        offset += 24
        leader_config_id, offset = _read_ciphertext_config_id(payload, offset)
        helper_config_id, offset = _read_ciphertext_config_id(payload, offset)
    except struct.error as e:
        raise DecodeError(
            f"Truncated collection payload ({len(payload)} bytes)", step=STEP, detail=str(e)
        ) from None

    if offset != len(payload):
        raise DecodeError(
            f"Collection payload has {len(payload) - offset} unexpected trailing bytes",
            step=STEP,
        )
    return CollectionHeader(
        query_type=query_type,
        batch_id=batch_id,
        report_count=report_count,
        interval_start=interval_start,
        interval_duration=interval_duration,
        leader_config_id=leader_config_id,
        helper_config_id=helper_config_id,
    )


def _parse_value(text: str):
    text = text.strip()
    # Debug-formatted enums, e.g. "Sum(84)" or "SumVec([1, 2])".
    match = re.fullmatch(r"[A-Za-z_]\w*\((.*)\)", text)
    if match:
        text = match.group(1).strip()
    try:
        value = json.loads(text)
    except ValueError:
        try:
            value = ast.literal_eval(text)
        except (ValueError, SyntaxError):
            raise DecodeError(
                "Could not parse aggregate from decoder output", step=STEP, detail=text
            ) from None
    if isinstance(value, tuple):
        value = list(value)
    if isinstance(value, bool) or not (
        isinstance(value, int)
        or (isinstance(value, list) and all(isinstance(v, int) for v in value))
    ):
        raise DecodeError(
            "Decoder output is not an integer aggregate", step=STEP, detail=text
        )
    return value


def parse_decoder_output(stdout: str) -> tuple[int | list[int], int | None]:
    """Returns (aggregate, report_count). The count is None when the tool
    does not print it."""
    aggregate = None
    report_count = None
    for line in stdout.splitlines():
        if line.startswith(RESULT_PREFIX):
            aggregate = _parse_value(line[len(RESULT_PREFIX) :])
        elif line.startswith(REPORT_COUNT_PREFIX):
            try:
                report_count = int(line.split()[-1].strip())
            except ValueError:
                raise DecodeError(
                    "Could not parse report count from decoder output",
                    step=STEP,
                    detail=line,
                ) from None

    if aggregate is None:
        lines = [line for line in stdout.splitlines() if line.strip()]
        if not lines:
            raise DecodeError("Decoder produced no output", step=STEP)
        aggregate = _parse_value(lines[-1])
    return aggregate, report_count


class ResultDecoder:
    """Turns a completed collection job into its aggregate via the decoder tool.

    The tool is invoked as::

        <command> <payload file> collection --vdaf-config <json> --task-id <id>
            --hpke-config-path <collector config> --report-count <n>
    """

    def __init__(self, command: list[str], timeout: int, collector_config_path: str):
        self.command = command
        self.timeout = timeout
        self.collector_config_path = collector_config_path

    def decode(
        self,
        job: CollectionJob,
        payload_path: str | Path,
        task: Task,
        collector: HpkeReceiverConfig,
    ) -> AggregateResult:
        header = parse_collection_header(job.payload)
        for role, config_id in (
            ("leader", header.leader_config_id),
            ("helper", header.helper_config_id),
        ):
            if config_id != collector.config_id:
                raise DecodeError(
                    f"The {role}'s aggregate share is encrypted to HPKE config "
                    f"{config_id}, but the collector holds config {collector.config_id}",
                    step=STEP,
                    job_url=job.url,
                )

        args = [
            *self.command,
            str(payload_path),
            "collection",
            "--vdaf-config",
            json.dumps(task.vdaf.decoder_json()),
            "--task-id",
            task.task_id,
            "--hpke-config-path",
            self.collector_config_path,
            "--report-count",
            f"{header.report_count}",
        ]
        logging.info(
            f"Decoding collection for task {task.task_id} with {header.report_count} "
            f"reports, vdaf: {task.vdaf.decoder_json()}"
        )
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as e:
            raise DecodeError(
                f"Decoding failed for {task.task_id}, exit code {e.returncode}",
                step=STEP,
                job_url=job.url,
                detail=(e.stderr or "").strip(),
            ) from None
        except subprocess.TimeoutExpired as e:
            raise DecodeError(
                f"Decoding timed out for {task.task_id} after {e.timeout}s",
                step=STEP,
                job_url=job.url,
            ) from None
        except OSError as e:
            raise DecodeError(
                f"Could not run decoder command: {args[0]}",
                step=STEP,
                job_url=job.url,
                detail=str(e),
            ) from None

        aggregate, report_count = parse_decoder_output(result.stdout)
        if report_count is not None and report_count != header.report_count:
            raise DecodeError(
                f"Decoder reported {report_count} reports, the collection holds "
                f"{header.report_count}",
                step=STEP,
                job_url=job.url,
            )
        if not task.vdaf.aggregate_in_range(aggregate, header.report_count):
            raise DecodeError(
                f"Aggregate {aggregate} is not a valid {task.vdaf.type} result for "
                f"{header.report_count} reports",
                step=STEP,
                job_url=job.url,
            )

        logging.info(f"Decoded aggregate for task {task.task_id}: {aggregate}")
        return AggregateResult(
            task_id=task.task_id,
            report_count=header.report_count,
            aggregate=aggregate,
            job_url=job.url,
        )
