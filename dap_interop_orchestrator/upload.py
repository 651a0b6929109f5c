import logging
import subprocess

from .exceptions import UploadError
from .models import Task


class ReportUploader:
    """Uploads reports through an external DAP client.

    The client command is a list of arguments with ``str.format`` placeholders
    for the task parameters and the measurement, for example::

        ["node", "upload.js", "--task-id", "{task_id}", "--measurement", "{measurement}"]

    Each call emits exactly one new report. Uploads are never retried, since
    a retry after a lost response would produce a second report.
    """

    def __init__(
        self,
        command: list[str],
        timeout: int,
        success_marker: str | None = None,
        failure_marker: str | None = None,
    ):
        self.command = command
        self.timeout = timeout
        self.success_marker = success_marker
        self.failure_marker = failure_marker
        self.attempted = 0
        self.succeeded = 0

    def _render(self, task: Task, measurement) -> list[str]:
        values = {
            "task_id": task.task_id,
            "leader_url": task.leader_url,
            "helper_url": task.helper_url,
            "vdaf_type": task.vdaf.type,
            "bits": task.vdaf.bits,
            "length": task.vdaf.length,
            "chunk_length": task.vdaf.chunk_length,
            "time_precision": task.time_precision,
            "measurement": (
                ",".join(str(m) for m in measurement)
                if isinstance(measurement, list)
                else measurement
            ),
        }
        try:
            return [arg.format(**values) for arg in self.command]
        except (KeyError, IndexError) as e:
            raise ValueError(f"Unknown placeholder in upload command: {e}") from None

    def upload(self, task: Task, measurement):
        args = self._render(task, measurement)
        self.attempted += 1
        step = f"upload report {self.attempted}"
        logging.info(f"Uploading report {self.attempted} for task: {task.task_id}")
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as e:
            raise UploadError(
                f"Upload failed for {task.task_id}, exit code {e.returncode}",
                step=step,
                detail=(e.stderr or "").strip(),
            ) from None
        except subprocess.TimeoutExpired as e:
            raise UploadError(
                f"Upload timed out for {task.task_id} after {e.timeout}s",
                step=step,
            ) from None
        except OSError as e:
            raise UploadError(
                f"Could not run upload command: {args[0]}", step=step, detail=str(e)
            ) from None

        stdout = result.stdout or ""
        # The client reports failure on stdout even when it exits cleanly.
        if self.failure_marker and self.failure_marker in stdout:
            raise UploadError(
                f"Client reported upload failure for {task.task_id}",
                step=step,
                detail=stdout.strip(),
            )
        if self.success_marker and self.success_marker not in stdout:
            raise UploadError(
                f"Client did not confirm upload for {task.task_id}",
                step=step,
                detail=stdout.strip(),
            )

        self.succeeded += 1
        logging.info(f"Uploaded report {self.attempted} for task: {task.task_id}")
