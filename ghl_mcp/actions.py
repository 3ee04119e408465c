"""
Location-bound CRM operations on top of the MCP client.

Every operation initializes the session on first use, takes a rate-limit slot
per attempt and runs through the retry policy. Results are the raw tools/call
payloads; only the composite helpers unwrap content themselves.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import httpx

from .cache import ToolCache
from .client import DEFAULT_TIMEOUT_SECONDS, GHL_MCP_ENDPOINT, MCP_PROTOCOL_VERSION, McpClient
from .codec import list_field, parse_content
from .config import LocationConfig, get_location
from .errors import GhlMcpError, QuotaExceededError
from .observability import InMemoryMetrics
from .rate_limits import DualWindowRateLimiter
from .retry import DEFAULT_BASE_DELAY_SECONDS, DEFAULT_MAX_RETRIES, with_retry

# Remote tool names as published by the GHL MCP server.
TOOL_GET_CONTACTS = "contacts_get-contacts"
TOOL_GET_CONTACT = "contacts_get-contact"
TOOL_UPSERT_CONTACT = "contacts_upsert-contact"
TOOL_ADD_TAGS = "contacts_add-tags"
TOOL_REMOVE_TAGS = "contacts_remove-tags"
TOOL_GET_ALL_TASKS = "contacts_get-all-tasks"
TOOL_SEARCH_CONVERSATION = "conversations_search-conversation"
TOOL_GET_MESSAGES = "conversations_get-messages"
TOOL_SEND_MESSAGE = "conversations_send-a-new-message"
TOOL_GET_PIPELINES = "opportunities_get-pipelines"
TOOL_SEARCH_OPPORTUNITY = "opportunities_search-opportunity"
TOOL_UPDATE_OPPORTUNITY = "opportunities_update-opportunity"

logger = logging.getLogger("ghl_mcp.actions")

StrOrList = Union[str, Iterable[str]]


def _as_list(value: StrOrList) -> List[str]:
    if isinstance(value, str):
        return [value]
    return list(value)


class GhlActions:
    def __init__(
        self,
        location: LocationConfig,
        client: Optional[McpClient] = None,
        rate_limiter: Optional[DualWindowRateLimiter] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        retry_sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics: Optional[InMemoryMetrics] = None,
        tool_cache: Optional[ToolCache] = None,
    ) -> None:
        self.location = location
        self.client = client or McpClient(token=location.token, location_id=location.location_id)
        self.rate_limiter = rate_limiter or DualWindowRateLimiter()
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._retry_sleep = retry_sleep
        self.metrics = metrics or InMemoryMetrics()
        self.tool_cache = tool_cache or ToolCache()
        self._init_lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        alias: str = "main",
        http_client: Optional[httpx.AsyncClient] = None,
        **kwargs: Any,
    ) -> "GhlActions":
        location = get_location(config, alias)
        client_cfg = config.get("client", {})
        retry_cfg = config.get("retry", {})
        client = McpClient(
            token=location.token,
            location_id=location.location_id,
            url=client_cfg.get("url", GHL_MCP_ENDPOINT),
            timeout=float(client_cfg.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
            protocol_version=client_cfg.get("protocol_version", MCP_PROTOCOL_VERSION),
            http_client=http_client,
            strict_correlation=bool(client_cfg.get("strict_correlation", False)),
        )
        kwargs.setdefault("max_retries", int(retry_cfg.get("max_retries", DEFAULT_MAX_RETRIES)))
        kwargs.setdefault("base_delay", float(retry_cfg.get("base_delay_seconds", DEFAULT_BASE_DELAY_SECONDS)))
        return cls(
            location,
            client=client,
            rate_limiter=DualWindowRateLimiter.from_config(config.get("rate_limits")),
            **kwargs,
        )

    # -- plumbing ----------------------------------------------------------

    async def _retry(self, fn: Callable[[], Awaitable[Any]], retry: bool = True) -> Any:
        return await with_retry(
            fn,
            max_retries=self.max_retries if retry else 0,
            base_delay=self.base_delay,
            sleep=self._retry_sleep,
        )

    async def _ensure_initialized(self) -> None:
        if self.client.initialized:
            return
        async with self._init_lock:
            if self.client.initialized:
                return
            await self._retry(self.client.initialize)
            logger.info("MCP client initialized", extra={"location": self.location.alias})

    async def call(
        self, tool: str, arguments: Optional[Dict[str, Any]] = None, retry: bool = True
    ) -> Dict[str, Any]:
        """Invoke one remote tool. Pass ``retry=False`` for calls that must not be repeated."""
        await self._ensure_initialized()
        args = arguments or {}

        async def attempt() -> Dict[str, Any]:
            await self.rate_limiter.acquire()
            return await self.client.call_tool(tool, args)

        start = time.perf_counter()
        error: Optional[BaseException] = None
        try:
            return await self._retry(attempt, retry)
        except Exception as exc:
            error = exc
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self.metrics.record(tool, duration_ms, error)
            logger.debug(
                "Tool call finished",
                extra={"location": self.location.alias, "tool": tool, "duration_ms": round(duration_ms, 1), "failed": error is not None},
            )

    async def list_tools(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        key = f"tools/list:{cursor or ''}"
        cached = self.tool_cache.get(key)
        if cached is not None:
            return cached
        await self._ensure_initialized()

        async def attempt() -> Dict[str, Any]:
            await self.rate_limiter.acquire()
            return await self.client.list_tools(cursor)

        result = await self._retry(attempt)
        self.tool_cache.set(key, result)
        return result

    # -- contacts ----------------------------------------------------------

    async def search_contacts(self, query: str = "", limit: Optional[int] = None, **options: Any) -> Dict[str, Any]:
        args: Dict[str, Any] = {"query": query, **options}
        if limit:
            args["limit"] = limit
        logger.info("Searching contacts", extra={"location": self.location.alias, "query": query})
        return await self.call(TOOL_GET_CONTACTS, args)

    async def get_contact_details(self, contact_id: str) -> Dict[str, Any]:
        logger.info("Getting contact details", extra={"contact_id": contact_id})
        return await self.call(TOOL_GET_CONTACT, {"contactId": contact_id})

    async def upsert_contact(self, contact: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Upserting contact", extra={"email": contact.get("email"), "phone": contact.get("phone")})
        return await self.call(TOOL_UPSERT_CONTACT, dict(contact))

    async def _tag_each(self, tool: str, contact_ids: StrOrList, tags: StrOrList) -> List[Dict[str, Any]]:
        # No bulk primitive upstream: one call per contact, outcome kept per id.
        ids = _as_list(contact_ids)
        tag_list = _as_list(tags)
        results: List[Dict[str, Any]] = []
        for contact_id in ids:
            try:
                result = await self.call(tool, {"contactId": contact_id, "tags": tag_list})
            except QuotaExceededError:
                raise
            except GhlMcpError as exc:
                results.append({"contactId": contact_id, "ok": False, "error": str(exc)})
            else:
                results.append({"contactId": contact_id, "ok": True, "result": result})
        failed = sum(1 for r in results if not r["ok"])
        if failed:
            logger.warning(f"{failed}/{len(ids)} tag updates failed", extra={"tool": tool})
        return results

    async def tag_contacts(self, contact_ids: StrOrList, tags: StrOrList) -> List[Dict[str, Any]]:
        logger.info("Adding tags", extra={"count": len(_as_list(contact_ids)), "tags": _as_list(tags)})
        return await self._tag_each(TOOL_ADD_TAGS, contact_ids, tags)

    async def remove_contact_tags(self, contact_ids: StrOrList, tags: StrOrList) -> List[Dict[str, Any]]:
        logger.info("Removing tags", extra={"count": len(_as_list(contact_ids)), "tags": _as_list(tags)})
        return await self._tag_each(TOOL_REMOVE_TAGS, contact_ids, tags)

    async def get_contact_tasks(self, contact_id: str) -> Dict[str, Any]:
        return await self.call(TOOL_GET_ALL_TASKS, {"contactId": contact_id})

    # -- conversations -----------------------------------------------------

    async def get_conversation_history(self, contact_id: str, **options: Any) -> Dict[str, Any]:
        """Messages of the contact's first conversation, or an empty list if it has none."""
        logger.info("Getting conversation history", extra={"contact_id": contact_id})
        found = parse_content(await self.call(TOOL_SEARCH_CONVERSATION, {"contactId": contact_id}))
        conversation_id = next((c["id"] for c in list_field(found, "conversations") if c.get("id")), None)
        if conversation_id is None:
            return {"messages": []}
        return await self.call(TOOL_GET_MESSAGES, {"conversationId": conversation_id, **options})

    async def send_message(self, contact_id: str, message: str, type: str = "SMS") -> Dict[str, Any]:
        logger.info("Sending message", extra={"contact_id": contact_id, "type": type})
        return await self.call(TOOL_SEND_MESSAGE, {"contactId": contact_id, "type": type, "message": message}, retry=False)

    # -- pipelines & opportunities ----------------------------------------

    async def get_pipelines(self) -> Dict[str, Any]:
        return await self.call(TOOL_GET_PIPELINES, {})

    async def search_opportunities(self, **options: Any) -> Dict[str, Any]:
        logger.info("Searching opportunities", extra={"filters": options})
        return await self.call(TOOL_SEARCH_OPPORTUNITY, options)

    async def move_opportunity(self, opportunity_id: str, stage_id: str, **options: Any) -> Dict[str, Any]:
        logger.info("Moving opportunity", extra={"opportunity_id": opportunity_id, "stage_id": stage_id})
        return await self.call(TOOL_UPDATE_OPPORTUNITY, {"id": opportunity_id, "stageId": stage_id, **options})

    async def get_pipeline_overview(self, pipeline_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Per-stage opportunity counts and value for one pipeline.

        Falls back to the first pipeline when ``pipeline_id`` does not match.
        Stages are keyed by stage id; opportunities without a monetary value
        count as zero.
        """
        data = parse_content(await self.get_pipelines())
        pipelines = (data.get("pipelines") if isinstance(data, dict) else None) or []
        pipeline = next((p for p in pipelines if p.get("id") == pipeline_id), None)
        if pipeline is None and pipelines:
            pipeline = pipelines[0]
        if pipeline is None:
            return {"error": "No pipeline found"}

        opps_data = parse_content(await self.search_opportunities(pipelineId=pipeline.get("id")))
        opportunities = (opps_data.get("opportunities") if isinstance(opps_data, dict) else None) or []

        stages: Dict[str, Dict[str, Any]] = {}
        for stage in pipeline.get("stages") or []:
            stages[stage.get("id")] = {"name": stage.get("name"), "count": 0, "value": 0}
        for opp in opportunities:
            stage_id = opp.get("pipelineStageId")
            bucket = stages.setdefault(stage_id, {"name": stage_id, "count": 0, "value": 0})
            bucket["count"] += 1
            bucket["value"] += opp.get("monetaryValue") or 0

        return {
            "pipeline": pipeline.get("name"),
            "pipelineId": pipeline.get("id"),
            "totalOpportunities": len(opportunities),
            "stages": stages,
        }

    # -- introspection & lifecycle ----------------------------------------

    @property
    def rate_limiter_stats(self) -> Dict[str, int]:
        return self.rate_limiter.stats()

    def metrics_snapshot(self) -> Dict[str, Dict[str, Any]]:
        return self.metrics.snapshot()

    async def close(self) -> None:
        await self.client.aclose()
