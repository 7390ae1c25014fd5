"""CLI entrypoint for Dewey."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import TYPE_CHECKING, Any

import typer
from loguru import logger

if TYPE_CHECKING:
    from dewey.settings import DeweySettings
    from dewey.store import ElasticsearchStore

app = typer.Typer(
    name="dewey",
    help="Dewey — keep an Elasticsearch index in step with an iRODS data store.",
    no_args_is_help=True,
)

_log_options: dict[str, Any] = {"verbose": 0, "json_logs": None}


@app.callback()
def main(
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase log detail (-v debug, -vv trace)."),
    json_logs: bool | None = typer.Option(None, "--json-logs/--text-logs", help="Emit log records as JSON lines."),
) -> None:
    """Global options."""
    _log_options["verbose"] = verbose
    _log_options["json_logs"] = json_logs


def configure_logging(settings: DeweySettings) -> None:
    """Install the single stderr sink according to settings and CLI flags."""
    verbose = _log_options["verbose"]
    level = {0: settings.logging.level, 1: "DEBUG"}.get(verbose, "TRACE")
    serialize = _log_options["json_logs"] if _log_options["json_logs"] is not None else settings.logging.json_logs
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), serialize=serialize)


def _load_settings() -> DeweySettings:
    from dewey.settings import DeweySettings
    from dewey.telemetry import init_telemetry

    settings = DeweySettings()
    configure_logging(settings)
    init_telemetry(settings.observability)
    return settings


def _parse_payload(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.error("Payload is not valid JSON: {}", exc)
        raise typer.Exit(code=1) from exc
    if not isinstance(payload, dict):
        logger.error("Payload must be a JSON object")
        raise typer.Exit(code=1)
    return payload


@app.command()
def run() -> None:
    """Consume change events from the bus until interrupted."""
    settings = _load_settings()
    try:
        asyncio.run(_run_consumer(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted — shutting down")


@app.command()
def apply(
    routing_key: str = typer.Argument(..., help="Routing key of the change, e.g. 'data-object.add'."),
    payload: str = typer.Argument(..., help="Change message as a JSON object."),
) -> None:
    """Handle a single change event directly, bypassing the bus."""
    settings = _load_settings()
    asyncio.run(_run_apply(settings, routing_key, _parse_payload(payload)))


@app.command()
def publish(
    routing_key: str = typer.Argument(..., help="Routing key of the change."),
    payload: str = typer.Argument(..., help="Change message as a JSON object."),
) -> None:
    """Publish a change event onto the bus."""
    settings = _load_settings()
    asyncio.run(_run_publish(settings, routing_key, _parse_payload(payload)))


@app.command("init-index")
def init_index() -> None:
    """Create the folder and file indices with their mappings."""
    settings = _load_settings()
    asyncio.run(_run_init_index(settings))


# ---------------------------------------------------------------------------
# Async helpers
# ---------------------------------------------------------------------------


async def _connect_store(settings: DeweySettings) -> ElasticsearchStore:
    """Connect to Elasticsearch, exiting with code 1 if it is unreachable."""
    from dewey.store import ElasticsearchStore

    store = ElasticsearchStore(settings.elasticsearch)
    try:
        reachable = await store.ping()
    except Exception as exc:
        logger.error("Cannot reach Elasticsearch at {} — {}", settings.elasticsearch.url, exc)
        await store.close()
        raise typer.Exit(code=1) from exc
    if not reachable:
        logger.error("Cannot reach Elasticsearch at {}", settings.elasticsearch.url)
        await store.close()
        raise typer.Exit(code=1)
    logger.info("Connected to Elasticsearch at {}", settings.elasticsearch.url)
    return store


async def _run_consumer(settings: DeweySettings) -> None:
    """Async implementation of ``dewey run``."""
    from dewey.consumer import ChangeConsumer
    from dewey.dispatch import Dispatcher
    from dewey.events import EventBus
    from dewey.telemetry import shutdown_telemetry

    bus = EventBus(settings.redis)
    try:
        await bus.ping()
    except Exception as exc:
        logger.error("Cannot reach Valkey at {}:{} — {}", settings.redis.host, settings.redis.port, exc)
        await bus.close()
        raise typer.Exit(code=1) from exc
    logger.info("Connected to Valkey at {}:{}", settings.redis.host, settings.redis.port)

    try:
        store = await _connect_store(settings)
    except typer.Exit:
        await bus.close()
        raise

    consumer = ChangeConsumer(bus, Dispatcher(settings.irods, store), settings.redis)
    try:
        await consumer.run()
    finally:
        consumer.stop()
        await store.close()
        await bus.close()
        shutdown_telemetry()


async def _run_apply(settings: DeweySettings, routing_key: str, payload: dict[str, Any]) -> None:
    """Async implementation of ``dewey apply``."""
    from dewey.dispatch import Dispatcher

    store = await _connect_store(settings)
    try:
        await Dispatcher(settings.irods, store).consume(routing_key, payload)
    except Exception as exc:
        logger.error("Failed to apply {} — {}", routing_key, exc)
        raise typer.Exit(code=1) from exc
    finally:
        await store.close()
    logger.info("Applied {}", routing_key)


async def _run_publish(settings: DeweySettings, routing_key: str, payload: dict[str, Any]) -> None:
    """Async implementation of ``dewey publish``."""
    from dewey.events import EventBus

    bus = EventBus(settings.redis)
    try:
        msg_id = await bus.publish(routing_key, payload)
    except Exception as exc:
        logger.error("Cannot publish to Valkey at {}:{} — {}", settings.redis.host, settings.redis.port, exc)
        raise typer.Exit(code=1) from exc
    finally:
        await bus.close()
    logger.info("Published {} as {}", routing_key, msg_id.decode() if isinstance(msg_id, bytes) else msg_id)


async def _run_init_index(settings: DeweySettings) -> None:
    """Async implementation of ``dewey init-index``."""
    store = await _connect_store(settings)
    try:
        await store.ensure_indices()
    finally:
        await store.close()
