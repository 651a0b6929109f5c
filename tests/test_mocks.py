import json
import os
import struct
from subprocess import CompletedProcess
from typing import Any

MOCK_TASK_ID = "8TuT5Z5fAuutsX9DZWSqkUw6pzDl96d3tdsDJgWH2VY"
MOCK_BATCH_ID_BYTES = bytes(range(32))
MOCK_BATCH_ID = "AAECAwQFBgcICQoLDA0ODxAREhMUFRYXGBkaGxwdHh8"

LEADER_ORIGIN = "http://localhost:8787"
HELPER_ORIGIN = "http://localhost:8788"
LEADER_BASE_URL = f"{LEADER_ORIGIN}/v09"
HELPER_BASE_URL = f"{HELPER_ORIGIN}/v09"
COLLECTION_JOB_URL = f"{LEADER_BASE_URL}/collect/task/{MOCK_TASK_ID}/req/1"

LEADER_TOKEN = "I-am-the-leader"
COLLECTOR_TOKEN = "I-am-the-collector"

COLLECTOR_CONFIG_ID = 23
JAN_1_2026 = 1767225600


def mock_hpke_config_dict(config_id: int = COLLECTOR_CONFIG_ID) -> dict[str, Any]:
    return {
        "config": {
            "id": config_id,
            "kem_id": "X25519HkdfSha256",
            "kdf_id": "HkdfSha256",
            "aead_id": "Aes128Gcm",
            "public_key": "2e" * 32,
        },
        "private_key": "a1" * 32,
    }


def write_hpke_configs(directory: str) -> dict[str, str]:
    """Write collector, leader and helper receiver configs into ``directory``."""
    paths = {}
    for role, config_id in (("collector", COLLECTOR_CONFIG_ID), ("leader", 1), ("helper", 2)):
        path = os.path.join(directory, f"hpke_{role}_config.json")
        with open(path, "wt") as writer:
            json.dump(mock_hpke_config_dict(config_id), writer)
        paths[role] = path
    return paths


def mock_get_valid_config(directory: str = "/tmp/dap") -> dict[str, Any]:
    return {
        "leader": {"url": LEADER_ORIGIN, "version": "v09"},
        "helper": {"url": HELPER_ORIGIN, "version": "v09"},
        "task": {
            "task_id": MOCK_TASK_ID,
            "vdaf": {"type": "Prio3Sum", "bits": 8},
            "time_precision": 3600,
            "min_batch_size": 1,
            "max_batch_size": 12,
            "query_type": 2,
            "vdaf_verify_key": "AAAAAAAAAAAAAAAAAAAAAA",
        },
        "auth": {
            "leader_authentication_token": LEADER_TOKEN,
            "collector_authentication_token": COLLECTOR_TOKEN,
        },
        "hpke": {
            "collector_config_path": os.path.join(directory, "hpke_collector_config.json"),
            "leader_config_path": os.path.join(directory, "hpke_leader_config.json"),
            "helper_config_path": os.path.join(directory, "hpke_helper_config.json"),
        },
        "upload": {
            "command": [
                "node",
                "upload.js",
                "--task-id",
                "{task_id}",
                "--leader",
                "{leader_url}",
                "--helper",
                "{helper_url}",
                "--measurement",
                "{measurement}",
            ],
        },
        "retry": {"attempts": 3, "delay": 0, "backoff_factor": 1, "max_delay": 0},
        "poll": {"max_attempts": 5, "delay": 0},
        "orchestration": {
            "measurements": [42],
            "min_report_count": 2,
            "upload_rounds": 1,
            "trigger_calls_per_round": 2,
            "trigger_while_polling": False,
            "max_trigger_calls": 10,
            "settle_seconds": 0,
        },
        "output_dir": os.path.join(directory, "output"),
    }


def mock_get_config_invalid_vdaf() -> dict[str, Any]:
    config = mock_get_valid_config()
    config["task"]["vdaf"] = {"type": "Prio3Sum", "length": 4}
    return config


def mock_get_config_measurement_out_of_range() -> dict[str, Any]:
    config = mock_get_valid_config()
    config["orchestration"]["measurements"] = [256]
    return config


def mock_get_config_bad_task_id() -> dict[str, Any]:
    config = mock_get_valid_config()
    config["task"]["task_id"] = "not-32-bytes"
    return config


def _hpke_ciphertext(config_id: int, enc: bytes = b"\x01" * 32, payload: bytes = b"\x02" * 48) -> bytes:
    return (
        struct.pack("!B", config_id)
        + struct.pack("!H", len(enc))
        + enc
        + struct.pack("!I", len(payload))
        + payload
    )


def mock_collection_payload(
    report_count: int = 2,
    query_type: int = 2,
    batch_id: bytes = MOCK_BATCH_ID_BYTES,
    interval_start: int = JAN_1_2026,
    interval_duration: int = 3600,
    leader_config_id: int = COLLECTOR_CONFIG_ID,
    helper_config_id: int = COLLECTOR_CONFIG_ID,
) -> bytes:
    payload = struct.pack("!B", query_type)
    if query_type == 2:
        payload += batch_id
    payload += struct.pack("!QQQ", report_count, interval_start, interval_duration)
    payload += _hpke_ciphertext(leader_config_id)
    payload += _hpke_ciphertext(helper_config_id)
    return payload


def mock_upload_subprocess_success(
    args: list[str], capture_output: bool, text: bool, check: bool, timeout: int
) -> CompletedProcess:
    return CompletedProcess(
        args=args,
        returncode=0,
        stdout="Uploading to http://localhost:8787/v09/\nDAP report: sent\n",
        stderr="",
    )


def mock_upload_subprocess_reported_failure(
    args: list[str], capture_output: bool, text: bool, check: bool, timeout: int
) -> CompletedProcess:
    return CompletedProcess(
        args=args,
        returncode=0,
        stdout="DAP report: failed\nTypeError: fetch failed\n",
        stderr="",
    )


def mock_decode_subprocess_success(
    args: list[str], capture_output: bool, text: bool, check: bool, timeout: int
) -> CompletedProcess:
    return CompletedProcess(
        args=args,
        returncode=0,
        stdout="Number of reports: 2\nAggregation result: Sum(84)\n",
        stderr="",
    )


def mock_decode_subprocess_plain(
    args: list[str], capture_output: bool, text: bool, check: bool, timeout: int
) -> CompletedProcess:
    return CompletedProcess(args=args, returncode=0, stdout="84\n", stderr="")
