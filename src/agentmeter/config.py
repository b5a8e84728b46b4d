import os
from dataclasses import dataclass
from pathlib import Path

from agentmeter.estimator import BYTES_PER_TOKEN

DEFAULT_DB_PATH = Path.home() / ".agentmeter" / "stats.db"


@dataclass
class Config:
    # listen_address: format ":9186" or
    # "0.0.0.0:9186", empty disables the metrics server
    listen_address: "str" = ""
    log_level: "str" = "info"

    db_path: "Path" = DEFAULT_DB_PATH
    # calibration constant for the byte-based token estimate
    bytes_per_token: "float" = BYTES_PER_TOKEN
    # delay before coalesced snapshots are published
    debounce_ms: "int" = 50
    # 'api' or 'max'; max subscribers are not billed for cache tokens
    billing_mode: "str" = "api"

    anthropic_admin_api_key: "str" = ""

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            db_path=Path(os.environ.get("AGENTMETER_DB_PATH", str(DEFAULT_DB_PATH))),
            bytes_per_token=float(
                os.environ.get("AGENTMETER_BYTES_PER_TOKEN", BYTES_PER_TOKEN)
            ),
            debounce_ms=int(os.environ.get("AGENTMETER_DEBOUNCE_MS", 50)),
            billing_mode=os.environ.get("AGENTMETER_BILLING_MODE", "api"),
            anthropic_admin_api_key=os.environ.get("ANTHROPIC_ADMIN_API_KEY", ""),
        )

    @property
    def audit_enabled(self) -> "bool":
        return bool(self.anthropic_admin_api_key)
