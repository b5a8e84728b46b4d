import json
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from agentmeter.__main__ import _parse_listen_address, _since, main
from agentmeter.metrics import PipelineMetrics
from agentmeter.models import UsageEvent
from agentmeter.store import EventStore


class TestParseListenAddress:
    def test_port_only(self) -> "None":
        assert _parse_listen_address(":9186") == ("0.0.0.0", 9186)

    def test_host_and_port(self) -> "None":
        assert _parse_listen_address("127.0.0.1:9000") == ("127.0.0.1", 9000)


class TestSince:
    @pytest.mark.parametrize("days", [0, -3])
    def test_non_positive_means_everything(self, days: "int") -> "None":
        assert _since(days) == 0

    def test_days_back(self) -> "None":
        assert _since(1) > 0


class TestMain:
    @pytest.fixture(autouse=True)
    def _fresh_metrics(
        self, monkeypatch: "pytest.MonkeyPatch", registry: "CollectorRegistry"
    ) -> "None":
        # each run registers its collectors again
        monkeypatch.setattr(
            "agentmeter.__main__.PipelineMetrics",
            lambda: PipelineMetrics(registry=registry),
        )

    def test_report_on_empty_database(
        self,
        tmp_path: "Path",
        capsys: "pytest.CaptureFixture[str]",
    ) -> "None":
        main(["--db.path", str(tmp_path / "stats.db"), "report", "--days", "0"])

        payload = json.loads(capsys.readouterr().out)
        assert payload["group_by"] == "agent_type"
        assert payload["groups"] == {}
        assert payload["summary"]["total_cycles"] == 0
        assert (tmp_path / "stats.db").exists()

    def test_cumulative_reset_prints_then_clears(
        self,
        tmp_path: "Path",
        capsys: "pytest.CaptureFixture[str]",
    ) -> "None":
        path = tmp_path / "stats.db"
        store = EventStore(path)
        store.record(
            UsageEvent(
                session_id="S1",
                agent_type="claude-code",
                tab_id="default",
                start_time=900,
                timestamp=1000,
                duration_ms=100,
                output_tokens=42,
                tokens_per_second=420.0,
                estimated=False,
            )
        )
        store.close()

        main(["--db.path", str(path), "cumulative", "--session-id", "S1", "--reset"])

        payload = json.loads(capsys.readouterr().out)
        assert payload["output_tokens"] == 42
        assert payload["cycles"] == 1

        reopened = EventStore(path)
        try:
            assert reopened.get_cumulative("S1", "default").cycles == 0
        finally:
            reopened.close()
