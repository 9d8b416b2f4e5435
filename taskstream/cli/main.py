"""taskstream command-line interface."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from pydantic import ValidationError

from ..config import HttpProducerConfig, TaskManagerConfig
from ..decoder import StreamDecoder, event_to_dict
from ..models import ResumeParams, TaskKind, TaskRecordModel, TaskResult, TaskStatus
from ..producer import HttpProducer
from ..telemetry import LoggingTaskOutcomeSink

_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group()
@click.version_option(package_name="taskstream")
def app() -> None:
    """taskstream CLI - inspect and run streaming generation tasks."""


@app.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def decode(path: Path) -> None:
    """Decode a recorded stream file and print one JSON event per line."""
    decoder = StreamDecoder()
    data = path.read_bytes()
    for event in [*decoder.feed(data), *decoder.finish()]:
        click.echo(json.dumps(event_to_dict(event), ensure_ascii=False))
    if decoder.skipped:
        click.echo(f"Skipped {decoder.skipped} malformed record(s)", err=True)


@app.command()
@click.argument("url")
@click.option("--query", "-q", required=True, help="Query sent to the producer.")
@click.option(
    "--kind",
    default=TaskKind.GENERAL_QUERY.value,
    show_default=True,
    help="Task kind recorded on the task.",
)
@click.option("--title", default=None, help="Task title (defaults to the query).")
@click.option(
    "--header",
    "-H",
    "headers",
    multiple=True,
    help="Extra request header as 'Name: value'. May be repeated.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML file with task manager settings.",
)
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def run(
    url: str,
    query: str,
    kind: str,
    title: str | None,
    headers: tuple[str, ...],
    config_path: Path | None,
    log_level: str,
) -> None:
    """Stream one task from URL and print its final content."""
    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")

    try:
        header_map = _parse_headers(headers)
        producer_config = HttpProducerConfig(url=url, headers=header_map)
        manager_config = TaskManagerConfig.from_file(config_path) if config_path else TaskManagerConfig()
    except (ValidationError, ValueError) as exc:
        click.echo(f"✗ {exc}", err=True)
        sys.exit(2)

    snapshot = asyncio.run(
        _run_task(
            producer_config,
            manager_config,
            ResumeParams(query=query),
            kind=kind,
            title=title or query,
        )
    )
    if snapshot is None or snapshot.status != TaskStatus.COMPLETED:
        error = snapshot.error if snapshot is not None else "task disappeared"
        click.echo(f"✗ {error}", err=True)
        sys.exit(1)
    click.echo(snapshot.result.content)


def _parse_headers(values: tuple[str, ...]) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for value in values:
        name, sep, content = value.partition(":")
        if not sep or not name.strip():
            raise ValueError(f"Invalid header {value!r}; expected 'Name: value'")
        parsed[name.strip()] = content.strip()
    return parsed


async def _run_task(
    producer_config: HttpProducerConfig,
    manager_config: TaskManagerConfig,
    params: ResumeParams,
    *,
    kind: str,
    title: str,
) -> TaskRecordModel | None:
    from ..manager import TaskManager

    last_step: list[str | None] = [None]

    def on_update(result: TaskResult) -> None:
        if result.current_step and result.current_step != last_step[0]:
            last_step[0] = result.current_step
            click.echo(f"… {result.current_step}", err=True)

    manager = TaskManager(
        producer=HttpProducer(producer_config),
        config=manager_config.model_copy(update={"gc_enabled": False}),
        telemetry_sink=LoggingTaskOutcomeSink(),
    )
    async with manager:
        task_id = await manager.start_task(kind, title, params, on_update=on_update)
        return await manager.wait(task_id)


__all__ = ["app"]
