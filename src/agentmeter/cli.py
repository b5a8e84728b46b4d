import argparse
from pathlib import Path

from agentmeter.aggregation import GROUP_BY_CHOICES
from agentmeter.config import Config
from agentmeter.models import DEFAULT_TAB_ID, AgentType


def parse_args(
    argv: "list[str] | None" = None,
) -> "tuple[Config, argparse.Namespace]":
    parser = argparse.ArgumentParser(
        prog="agentmeter",
        description="Token and throughput telemetry for supervised AI agent sessions",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default="",
        help="Address to serve Prometheus metrics on, e.g. :9186 (default: disabled)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.json",
        dest="log_json",
        action="store_true",
        help="Emit logs as JSON lines",
    )
    parser.add_argument(
        "--db.path",
        dest="db_path",
        type=Path,
        default=None,
        help="Path of the stats database (default: $AGENTMETER_DB_PATH or ~/.agentmeter/stats.db)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    ingest = commands.add_parser(
        "ingest", help="Record one session's raw agent output from a file or stdin"
    )
    ingest.add_argument("--session-id", required=True)
    ingest.add_argument(
        "--agent-type",
        default=AgentType.CLAUDE_CODE.value,
        choices=[t.value for t in AgentType],
    )
    ingest.add_argument("--tab-id", default=DEFAULT_TAB_ID)
    ingest.add_argument(
        "input",
        nargs="?",
        default="-",
        help="File with raw agent output, '-' for stdin (default: -)",
    )

    report = commands.add_parser("report", help="Print day-bucketed usage as JSON")
    report.add_argument("--group-by", default="agent_type", choices=GROUP_BY_CHOICES)
    report.add_argument(
        "--days",
        type=int,
        default=7,
        help="Number of days to include, 0 for all (default: 7)",
    )

    cumulative = commands.add_parser(
        "cumulative", help="Print the cumulative counter of a session tab"
    )
    cumulative.add_argument("--session-id", required=True)
    cumulative.add_argument("--tab-id", default=DEFAULT_TAB_ID)
    cumulative.add_argument(
        "--reset", action="store_true", help="Reset the counter after printing it"
    )

    audit = commands.add_parser(
        "audit", help="Compare local output tokens with the Anthropic usage report"
    )
    audit.add_argument("--days", type=int, default=7)
    audit.add_argument("--tolerance", type=float, default=0.05)

    args = parser.parse_args(argv)
    config = Config.from_env()
    config.listen_address = args.listen_address
    config.log_level = args.log_level
    if args.db_path is not None:
        config.db_path = args.db_path
    return config, args
