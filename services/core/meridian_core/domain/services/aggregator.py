"""Profile request aggregation across brand nodes.

Each brand node paginates its own change requests independently, so a
globally ordered page can only be produced from the full merged set:

1. Count pending requests on every node (one page-0 call each).
2. Select the nodes matching the optional site filter, skipping repeated
   URLs.
3. Drain each selected node by following its ``next_cursor`` until
   ``has_more`` is false, tagging items with the node's name.
4. Merge, drop untagged items and sort by ``created_at`` descending.
5. Slice the caller's window out of the merged list.

All node calls run concurrently under one overall time budget. Every node
fills its own result holder, so a failing or slow node keeps the items it
delivered before failing and never affects its siblings. Failures are
reported in ``errors``; they never fail the whole query.

A cached merged list is only served while every node still reports the
pending count and newest pending request it had when the list was
cached. A request raised on a brand node therefore shows up on the next
query, even though the governing node never saw the write.

Ties on ``created_at`` keep the order the items were merged in (node
registration order, then each node's own order). This is deterministic for
a given set of responses but carries no meaning.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

from meridian_core.domain.pagination import OffsetWindow
from meridian_core.domain.services.request_cache import MergedListCache
from meridian_core.domain.site_urls import normalize_site_url
from meridian_core.observability import get_logger
from meridian_core.providers import BrandClientFactory, RemoteNodeError

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 20
DEFAULT_BUDGET_SECONDS = 45.0
PENDING_STATUS = "pending"


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def created_sort_key(item: dict[str, Any]) -> datetime:
    """Sort key for ``created_at``; unparseable values sort last."""
    raw = item.get("created_at")
    if isinstance(raw, str) and raw:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return datetime.min
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return datetime.min


@dataclass
class ProfileRequestQuery:
    """Filters and window of an aggregated query."""

    status: Optional[str] = None
    search_query: Optional[str] = None
    site: Optional[str] = None
    offset: int = 0

    def cache_filters(self) -> dict[str, Any]:
        return {"status": self.status, "search_query": self.search_query, "site": self.site}


@dataclass
class NodeResult:
    """Everything one node contributed, even if it failed midway."""

    site_name: str
    site_url: str
    items: list[dict[str, Any]] = field(default_factory=list)
    total_count: Optional[int] = None
    newest: Optional[str] = None
    error: Optional[str] = None


class ProfileRequestAggregator:
    """Builds globally ordered change request pages for the governing node."""

    def __init__(
        self,
        sites: Iterable[Any],
        client_factory: BrandClientFactory,
        page_size: int = DEFAULT_PAGE_SIZE,
        budget_seconds: float = DEFAULT_BUDGET_SECONDS,
        cache: Optional[MergedListCache] = None,
    ):
        """Initialize the aggregator.

        Args:
            sites: Registered brand sites (``name``, ``url``, ``api_key``).
            client_factory: Builds a brand client for a site.
            page_size: Size of the merged page.
            budget_seconds: Upper bound for all node calls of one query.
            cache: Optional merged-list cache.
        """
        self.sites = list(sites)
        self.client_factory = client_factory
        self.page_size = page_size
        self.budget_seconds = budget_seconds
        self.cache = cache

    @staticmethod
    def unique_sites(sites: Iterable[Any], purpose: str, errors: list[str]) -> list[Any]:
        """Drop sites whose normalized URL was already seen."""
        seen = set()
        unique = []
        for site in sites:
            url = normalize_site_url(site.url)
            if url in seen:
                logger.warning("Duplicate site URL skipped", site_url=url, purpose=purpose)
                errors.append(f"Duplicate site URL skipped for {purpose}: {url}")
                continue
            seen.add(url)
            unique.append(site)
        return unique

    @staticmethod
    def fingerprint(results: list[tuple[Any, NodeResult]]) -> Optional[dict[str, list]]:
        """Pending count and newest pending request of every node.

        None when any node could not be counted.
        """
        prints = {}
        for _, result in results:
            if result.error:
                return None
            prints[result.site_url] = [result.total_count or 0, result.newest]
        return prints

    # -------------------------------------------------------------------------
    # Node calls
    # -------------------------------------------------------------------------

    async def _count_pending(self, site: Any, result: NodeResult) -> None:
        client = self.client_factory(site)
        page = await client.list_profile_requests(status=PENDING_STATUS, cursor=0)
        result.total_count = _as_int(page["pagination"].get("total_count")) or 0
        first = page["profile_requests"][0] if page["profile_requests"] else None
        if isinstance(first, dict):
            result.newest = f"{first.get('id')}@{first.get('created_at')}"

    async def _drain(self, site: Any, query: ProfileRequestQuery, result: NodeResult) -> None:
        client = self.client_factory(site)
        cursor = 0

        while True:
            page = await client.list_profile_requests(
                status=query.status,
                search_query=query.search_query,
                cursor=cursor,
            )
            pagination = page["pagination"]
            if result.total_count is None:
                result.total_count = _as_int(pagination.get("total_count"))

            for item in page["profile_requests"]:
                if not isinstance(item, dict):
                    continue
                tagged = dict(item)
                tagged["site_name"] = site.name
                tagged["site_url"] = normalize_site_url(site.url)
                result.items.append(tagged)

            next_cursor = _as_int(pagination.get("next_cursor"))
            if not pagination.get("has_more") or next_cursor is None:
                return
            if next_cursor <= cursor:
                raise RemoteNodeError(
                    f"Pagination did not advance past cursor {cursor}",
                    site_url=result.site_url,
                )
            cursor = next_cursor

    async def _guarded(self, call: Awaitable[None], result: NodeResult) -> None:
        try:
            await call
        except RemoteNodeError as e:
            result.error = str(e)
        except Exception as e:
            logger.exception("Unexpected error querying brand site", site_url=result.site_url)
            result.error = f"{type(e).__name__}: {e}"

    async def _run_within_budget(
        self,
        calls: list[tuple[Callable[[], Awaitable[None]], NodeResult]],
        budget_seconds: float,
    ) -> None:
        if not calls:
            return

        tasks = {
            asyncio.create_task(self._guarded(make_call(), result)): result
            for make_call, result in calls
        }
        _, pending = await asyncio.wait(tasks, timeout=budget_seconds)

        for task in pending:
            task.cancel()
            result = tasks[task]
            result.error = f"Timed out after {self.budget_seconds:g}s"
            logger.warning("Brand site exceeded query budget", site_url=result.site_url)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    async def fetch(self, query: ProfileRequestQuery) -> dict[str, Any]:
        """Produce one merged page.

        Args:
            query: Filters plus the offset of the requested window.

        Returns:
            The page, its pagination block computed on the merged total,
            per-site counts, the global pending count, the known site names
            and every node-level error.
        """
        errors: list[str] = []

        pending_results = [
            (site, NodeResult(site.name, normalize_site_url(site.url)))
            for site in self.unique_sites(self.sites, "pending count", errors)
        ]

        selected = [site for site in self.sites if not query.site or site.name == query.site]
        drain_sites = self.unique_sites(selected, "profile requests", errors)

        drain_results = [
            (site, NodeResult(site.name, normalize_site_url(site.url))) for site in drain_sites
        ]
        pending_calls = [
            (lambda site=site, result=result: self._count_pending(site, result), result)
            for site, result in pending_results
        ]
        drain_calls = [
            (lambda site=site, result=result: self._drain(site, query, result), result)
            for site, result in drain_results
        ]

        loop = asyncio.get_running_loop()
        started = loop.time()
        cached = self.cache.get(query.cache_filters()) if self.cache else None
        if cached is None:
            await self._run_within_budget(pending_calls + drain_calls, self.budget_seconds)
        else:
            await self._run_within_budget(pending_calls, self.budget_seconds)
            fingerprint = self.fingerprint(pending_results)
            if fingerprint is None or cached.get("fingerprint") != fingerprint:
                logger.info("Cached profile request list is stale", sites=len(drain_sites))
                cached = None
                remaining = max(self.budget_seconds - (loop.time() - started), 0.0)
                await self._run_within_budget(drain_calls, remaining)

        total_pending = 0
        for _, result in pending_results:
            if result.error:
                errors.append(f"Failed to fetch pending count from {result.site_url}: {result.error}")
            else:
                total_pending += result.total_count or 0

        if cached is not None:
            merged = cached["items"]
            site_totals = cached["site_wise_total_counts"]
        else:
            merged = []
            site_totals = {}
            for _, result in drain_results:
                if result.error:
                    logger.warning(
                        "Brand site query failed",
                        site_url=result.site_url,
                        error=result.error,
                        items_kept=len(result.items),
                    )
                    errors.append(f"Failed to fetch from {result.site_url}: {result.error}")
                merged.extend(result.items)
                site_totals[result.site_name] = (
                    result.total_count if result.total_count is not None else len(result.items)
                )

            merged = [item for item in merged if item.get("site_name")]
            merged.sort(key=created_sort_key, reverse=True)

            fingerprint = self.fingerprint(pending_results) if self.cache else None
            if fingerprint is not None and not any(result.error for _, result in drain_results):
                self.cache.set(
                    query.cache_filters(),
                    {
                        "items": merged,
                        "site_wise_total_counts": site_totals,
                        "fingerprint": fingerprint,
                    },
                )

        window = OffsetWindow(offset=query.offset, limit=self.page_size)
        page = window.slice(merged)

        return {
            "success": True,
            "profile_requests": page,
            "pagination": window.merged_metadata(len(merged), len(page)),
            "total_pending_count": total_pending,
            "site_result_counts": dict(Counter(item["site_name"] for item in page)),
            "site_wise_total_counts": site_totals,
            "sites": [{"label": site.name, "value": site.name} for site in self.sites],
            "sites_queried": [site.name for site in drain_sites],
            "errors": errors,
        }
