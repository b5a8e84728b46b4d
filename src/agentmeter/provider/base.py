from dataclasses import dataclass
from datetime import date
from typing import Protocol, Sequence


@dataclass(frozen=True, slots=True)
class ProviderDailyUsage:
    """
    ProviderDailyUsage is one day of usage as reported by
    the model provider's own accounting.
    """

    date: "date"
    model: "str"
    input_tokens: "int"
    output_tokens: "int"
    cache_read_input_tokens: "int"
    cache_creation_input_tokens: "int"


class UsageProvider(Protocol):
    """
    UsageProvider is the protocol for provider-side usage reports
    used to audit the locally recorded events.
    """

    @property
    def name(self) -> "str": ...

    async def fetch_daily_usage(
        self,
        start: "date",
        end: "date",
    ) -> "Sequence[ProviderDailyUsage]": ...

    async def close(self) -> "None": ...
