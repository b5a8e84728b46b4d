import argparse
import asyncio
import json
import signal
import sys
import time
from dataclasses import asdict
from datetime import date, timedelta

import structlog
from prometheus_client import start_http_server

from agentmeter.audit import reconcile
from agentmeter.cli import parse_args
from agentmeter.config import Config
from agentmeter.ingest import StreamIngestor
from agentmeter.logging import setup_logging
from agentmeter.metrics import PipelineMetrics
from agentmeter.pipeline import TelemetryPipeline
from agentmeter.provider.anthropic import AnthropicUsageProvider
from agentmeter.store import EventStore

logger = structlog.get_logger()

_DAY_MS = 24 * 60 * 60 * 1000


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def _since(days: "int") -> "int":
    if days <= 0:
        return 0
    return int(time.time() * 1000) - days * _DAY_MS


def _print_json(payload: "object") -> "None":
    json.dump(payload, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")


async def _ingest(
    pipeline: "TelemetryPipeline",
    metrics: "PipelineMetrics",
    args: "argparse.Namespace",
) -> "None":
    ingestor = StreamIngestor(
        pipeline,
        session_id=args.session_id,
        agent_type=args.agent_type,
        tab_id=args.tab_id,
        metrics=metrics,
    )
    loop = asyncio.get_running_loop()
    # for SIGINT and SIGTERM, stop reading and cancel the open cycle
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, ingestor.stop)

    try:
        if args.input == "-":
            await ingestor.run(sys.stdin.buffer)
        else:
            with open(args.input, "rb") as stream:
                await ingestor.run(stream)
    finally:
        await pipeline.close()
        logger.info("ingest_complete", session_id=args.session_id, cycles=ingestor.cycles)


async def _report(pipeline: "TelemetryPipeline", args: "argparse.Namespace") -> "None":
    since = _since(args.days)
    buckets = await pipeline.get_aggregates(args.group_by, since)
    summary = await pipeline.get_summary(since)
    _print_json(
        {
            "group_by": args.group_by,
            "since": since,
            "groups": {
                key: [asdict(bucket) for bucket in series]
                for key, series in buckets.items()
            },
            "summary": asdict(summary),
        }
    )


async def _cumulative(
    pipeline: "TelemetryPipeline",
    store: "EventStore",
    args: "argparse.Namespace",
) -> "None":
    counter = await pipeline.get_cumulative(args.session_id, args.tab_id)
    _print_json(asdict(counter))
    if args.reset:
        await asyncio.to_thread(store.reset_cumulative, args.session_id, args.tab_id)
        logger.info("cumulative_reset", session_id=args.session_id, tab_id=args.tab_id)


async def _audit(
    config: "Config",
    store: "EventStore",
    args: "argparse.Namespace",
) -> "None":
    if not config.audit_enabled:
        raise SystemExit("Audit requires ANTHROPIC_ADMIN_API_KEY to be set.")

    end = date.today()
    start = end - timedelta(days=max(args.days, 1) - 1)
    provider = AnthropicUsageProvider(config.anthropic_admin_api_key)
    try:
        usage = await provider.fetch_daily_usage(start, end)
    finally:
        await provider.close()

    events = await asyncio.to_thread(list, store.scan(_since(args.days)))
    entries = reconcile(events, usage, tolerance=args.tolerance)
    _print_json([asdict(entry) for entry in entries])


def main(argv: "list[str] | None" = None) -> "None":
    config, args = parse_args(argv)
    setup_logging(config.log_level, json_output=args.log_json)

    metrics = PipelineMetrics()
    if config.listen_address:
        host, port = _parse_listen_address(config.listen_address)
        start_http_server(port, addr=host)
        logger.info("metrics_server_started", host=host, port=port)

    store = EventStore(config.db_path)
    pipeline = TelemetryPipeline(
        store,
        metrics,
        bytes_per_token=config.bytes_per_token,
        debounce_seconds=config.debounce_ms / 1000,
        billing_mode="max" if config.billing_mode == "max" else "api",
    )

    async def _run() -> "None":
        if args.command == "ingest":
            await _ingest(pipeline, metrics, args)
        elif args.command == "report":
            await _report(pipeline, args)
        elif args.command == "cumulative":
            await _cumulative(pipeline, store, args)
        elif args.command == "audit":
            await _audit(config, store, args)

    try:
        asyncio.run(_run())
    finally:
        store.close()


if __name__ == "__main__":
    main()
