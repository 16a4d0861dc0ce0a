"""
matchrelay - Main Entry Point

Replays match events from a JSON-lines file through the resilient publisher.

Usage:
    python -m matchrelay.main --config config/local.yaml --events events.jsonl
    python -m matchrelay.main --config config/local.yaml --events events.jsonl --serve
"""

# Load .env FIRST before any other imports
from dotenv import load_dotenv
load_dotenv()

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional

from matchrelay.adapters.file_sinks import FileObjectSink, JsonLinesQueue
from matchrelay.adapters.http_transport import HttpEventBusTransport
from matchrelay.errors import EscalationExhausted, PermanentError
from matchrelay.core.events import Event
from matchrelay.core.publisher import EventPublisher, PublishStatus, build_publisher
from matchrelay.infrastructure.config import AppConfig, load_config, load_secrets
from matchrelay.infrastructure.graceful_shutdown import GracefulShutdown, ShutdownInProgress
from matchrelay.infrastructure.logging import clear_context, configure_logging, get_logger
from matchrelay.infrastructure.metrics import metrics

logger = get_logger(__name__)


@dataclass
class ReplaySummary:
    """Counts of publish outcomes for one replay run."""
    delivered: int = 0
    via_fallback: int = 0
    duplicate: int = 0
    rejected: int = 0
    exhausted: int = 0
    interrupted: bool = False

    @property
    def ok(self) -> bool:
        return self.exhausted == 0 and not self.interrupted


async def replay_events(
    publisher: EventPublisher,
    events_path: Path,
    shutdown: Optional[GracefulShutdown] = None,
) -> ReplaySummary:
    """
    Publish every line of a JSON-lines file, one event per line.

    Stops reading once shutdown starts; the publish already in flight is
    allowed to finish.
    """
    summary = ReplaySummary()
    shutdown = shutdown or GracefulShutdown()
    clear_context()

    with open(events_path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                event = Event.from_dict(json.loads(line))
            except (json.JSONDecodeError, PermanentError) as e:
                summary.rejected += 1
                logger.error("Rejected event line", line=line_no, error=str(e))
                continue

            try:
                async with shutdown.track():
                    result = await publisher.publish(event)
            except ShutdownInProgress:
                summary.interrupted = True
                logger.warning("Replay interrupted by shutdown", line=line_no)
                break
            except EscalationExhausted as e:
                summary.exhausted += 1
                logger.critical(
                    "Event lost: no sink accepted it",
                    line=line_no,
                    event_id=e.event_id,
                    idempotency_key=e.idempotency_key,
                )
                continue

            if result.status == PublishStatus.DUPLICATE:
                summary.duplicate += 1
            else:
                summary.delivered += 1
                if result.via_fallback:
                    summary.via_fallback += 1

    return summary


async def serve_api(config: AppConfig, publisher: EventPublisher, shutdown: GracefulShutdown) -> None:
    """Run the health API until shutdown."""
    import uvicorn
    from matchrelay.api.server import create_app

    api_config = uvicorn.Config(
        create_app(publisher),
        host=config.api.host,
        port=config.api.port,
        log_level="error",
    )
    server = uvicorn.Server(api_config)
    api_task = asyncio.create_task(server.serve())

    try:
        await shutdown.wait_for_shutdown()
    finally:
        server.should_exit = True
        await api_task


async def async_main() -> int:
    """Async entry point."""
    parser = argparse.ArgumentParser(description="Resilient match event publisher")
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--events", type=str, required=True, help="JSON-lines file of match events")
    parser.add_argument("--serve", action="store_true", help="Keep the health API running after replay")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    config = load_config(args.config)

    configure_logging(
        log_level="DEBUG" if args.verbose else config.observability.log_level,
        log_format=config.observability.log_format,
    )
    logger.info(
        "matchrelay starting",
        environment=config.environment,
        config_file=args.config,
        overrides=config.diff_from_defaults(),
    )

    if config.observability.metrics_enabled:
        metrics.start_server(config.observability.metrics_port)

    transport = HttpEventBusTransport(config.transport, load_secrets())
    publisher = build_publisher(
        config,
        transport=transport,
        queue=JsonLinesQueue(config.fallback.queue_path),
        object_sink=FileObjectSink(config.fallback.object_store_path),
    )

    shutdown = GracefulShutdown()
    shutdown.register_cleanup("publisher", publisher.stop, priority=10)
    shutdown.register_cleanup("transport", transport.close, priority=20)

    shutdown.install_signal_handlers()
    await publisher.start()
    try:
        summary = await replay_events(publisher, Path(args.events), shutdown)
        logger.info("Replay finished", **asdict(summary))

        if (args.serve or config.api.enabled) and not shutdown.is_shutting_down:
            await serve_api(config, publisher, shutdown)
    finally:
        if not shutdown.is_shutting_down:
            await shutdown.initiate_shutdown("replay complete")
        else:
            await shutdown.wait_for_shutdown()

    return 0 if summary.ok else 1


def main() -> None:
    """Synchronous entry point."""
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
