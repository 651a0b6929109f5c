import click
import logging
import signal
import traceback

from google.cloud import storage

from datetime import datetime

from .parse import build_task, extract_job_config, get_config, get_query
from .orchestrate import OrchestrationSequencer
from .provision import load_hpke_configs


LOG_FILE_NAME = f"{datetime.now()}-dap-interop-orchestrator.log"


def write_job_logs_to_bucket(gcp_project: str, log_bucket: str):
    client = storage.Client(project=gcp_project)
    try:
        bucket = client.get_bucket(log_bucket)
        blob = bucket.blob(f"logs/{LOG_FILE_NAME}")
        blob.upload_from_filename(LOG_FILE_NAME)
    except Exception as e:
        raise Exception(
            f"Failed to upload job log file: {LOG_FILE_NAME} "
            f"to GCS bucket: {log_bucket} in project: {gcp_project}."
        ) from e


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON job config: aggregators, task, HPKE config paths, upload and decoder commands.",
    required=True,
)
@click.option(
    "--query",
    "query_path",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON query descriptor for the collection job. Defaults to the current batch "
    "(fixed size) or the buckets around now (time interval).",
)
@click.option(
    "--bearer_token",
    envvar="DAP_COLLECTOR_BEARER_TOKEN",
    help="The Collector's bearer token, overrides auth.collector_authentication_token.",
)
@click.option(
    "--leader_bearer_token",
    envvar="DAP_LEADER_BEARER_TOKEN",
    help="The Leader's bearer token towards the Helper, overrides "
    "auth.leader_authentication_token.",
)
@click.option("--output_dir", help="Where to store the collection response.")
@click.option(
    "--skip_reset",
    is_flag=True,
    help="Do not clear the aggregators' state before provisioning.",
)
@click.option(
    "--log_bucket",
    help="GCS bucket to upload this run's log file to.",
)
@click.option(
    "--log_gcp_project",
    help="GCP project id of the log bucket.",
)
def main(
    config_path,
    query_path,
    bearer_token,
    leader_bearer_token,
    output_dir,
    skip_reset,
    log_bucket,
    log_gcp_project,
):
    if log_bucket and not log_gcp_project:
        raise click.UsageError("--log_bucket requires --log_gcp_project")

    try:
        logging.info(f"Starting DAP interop run with configuration: {config_path}")

        # Step 1 Load and validate config
        raw_config = get_config(config_path)
        if output_dir:
            raw_config["output_dir"] = output_dir
        if skip_reset:
            raw_config.setdefault("orchestration", {})["reset_before_provision"] = False
        cfg = extract_job_config(
            raw_config,
            overrides={
                "collector_authentication_token": bearer_token,
                "leader_authentication_token": leader_bearer_token,
            },
        )

        # Step 2 Load HPKE configs and build the task
        hpke_configs = load_hpke_configs(cfg.hpke)
        task = build_task(cfg, hpke_configs.collector)
        query = get_query(query_path, task)

        # Step 3 Run the exchange
        sequencer = OrchestrationSequencer.from_config(cfg, task, query, hpke_configs)
        signal.signal(signal.SIGTERM, lambda signum, frame: sequencer.abort())
        signal.signal(signal.SIGINT, lambda signum, frame: sequencer.abort())
        summary = sequencer.run()

        result = summary.result
        click.echo(f"task id: {summary.task_id}")
        click.echo(f"collection job: {summary.job_url}")
        click.echo(
            f"uploads: {summary.uploads_succeeded}/{summary.uploads_attempted}, "
            f"trigger calls: {summary.trigger_calls}, polls: {summary.polls}"
        )
        click.echo(f"Number of reports: {result.report_count}")
        click.echo(f"Aggregation result: {result.aggregate}")
    except Exception as e:
        logging.error(f"DAP interop run failed. Error: {e}\n{traceback.format_exc()}")
        raise e
    finally:
        if log_bucket:
            write_job_logs_to_bucket(log_gcp_project, log_bucket)


def run():
    logging.basicConfig(
        filename=LOG_FILE_NAME,
        filemode="a",
        format="%(asctime)s,%(msecs)03d %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        level=logging.INFO,
    )
    logging.getLogger().setLevel(logging.INFO)
    # Also echo to the console.
    logging.getLogger().addHandler(logging.StreamHandler())
    main()


if __name__ == "__main__":
    run()
