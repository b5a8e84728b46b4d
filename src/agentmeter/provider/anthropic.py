from datetime import date, datetime, time, timedelta, timezone

import httpx
import structlog

from agentmeter.provider.base import ProviderDailyUsage

logger = structlog.get_logger()

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1/organizations"
ANTHROPIC_VERSION = "2023-06-01"

# the API caps daily buckets per page
_PAGE_LIMIT = 31


def _as_int(value: "object") -> "int":
    return int(value) if isinstance(value, (int, float)) else 0


class AnthropicUsageProvider:
    """
    AnthropicUsageProvider reads the organization's message usage
    report from the Anthropic Admin API in daily buckets grouped by
    model, handling pagination.
    """

    def __init__(self, admin_api_key: "str") -> "None":
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            timeout=10.0,
            headers={
                "x-api-key": admin_api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
        )

    @property
    def name(self) -> "str":
        return "anthropic"

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    async def fetch_daily_usage(
        self,
        start: "date",
        end: "date",
    ) -> "list[ProviderDailyUsage]":
        """
        fetches usage for the days in [start, end], one record
        per (day, model).
        """
        starting_at = datetime.combine(start, time.min, tzinfo=timezone.utc)
        ending_at = datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc)
        params: "dict[str, str | int]" = {
            "starting_at": starting_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "ending_at": ending_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "bucket_width": "1d",
            "group_by[]": "model",
            "limit": _PAGE_LIMIT,
        }
        records: "list[ProviderDailyUsage]" = []
        next_page = ""

        # loop instead of recursion to follow pagination
        while True:
            page_params = dict(params)
            if next_page:
                page_params["page"] = next_page

            logger.debug("anthropic_fetch_usage", params=page_params)
            resp = await self._client.get(
                f"{ANTHROPIC_BASE_URL}/usage_report/messages", params=page_params
            )
            resp.raise_for_status()
            data = resp.json()

            for bucket in data.get("data", []):
                day = datetime.fromisoformat(
                    bucket["starting_at"].replace("Z", "+00:00")
                ).date()
                for result in bucket.get("results", []):
                    cache_creation = result.get("cache_creation") or {}
                    records.append(
                        ProviderDailyUsage(
                            date=day,
                            model=result.get("model") or "unknown",
                            input_tokens=_as_int(result.get("uncached_input_tokens")),
                            output_tokens=_as_int(result.get("output_tokens")),
                            cache_read_input_tokens=_as_int(
                                result.get("cache_read_input_tokens")
                            ),
                            cache_creation_input_tokens=sum(
                                _as_int(v) for v in cache_creation.values()
                            ),
                        )
                    )

            # break if there are no more pages to fetch
            if not data.get("has_more"):
                break

            next_page = data.get("next_page") or ""
            if not next_page:
                break

        logger.debug("anthropic_usage_done", record_count=len(records))
        return records
