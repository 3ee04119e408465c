"""
Monitoring checks over a location's CRM data.

Four read-only checks (stale leads, missed follow-ups, pipeline bottlenecks,
slow first responses) run concurrently against one GhlActions instance. A
failing check becomes an ``error`` Finding instead of aborting the others.
Contact and pipeline samples are capped to save API credits, so counts are a
lower bound.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from .actions import GhlActions
from .codec import list_field, parse_content
from .config import Thresholds
from .errors import GhlMcpError, QuotaExceededError

STALE_LEADS = "stale_leads"
MISSED_FOLLOWUPS = "missed_followups"
PIPELINE_BOTTLENECKS = "pipeline_bottlenecks"
SLOW_RESPONSES = "slow_responses"

CHECK_LABELS: Tuple[Tuple[str, str, str], ...] = (
    (STALE_LEADS, "👤", "Stale Leads"),
    (MISSED_FOLLOWUPS, "📋", "Missed Follow-ups"),
    (PIPELINE_BOTTLENECKS, "🔴", "Pipeline Bottlenecks"),
    (SLOW_RESPONSES, "⏱️", "Slow Responses"),
)

MAX_ITEMS = 10
MAX_BOTTLENECK_ITEMS = 5
STALE_SAMPLE = 100
FOLLOWUP_SAMPLE = 50
FOLLOWUP_CONTACTS = 20
MAX_PIPELINES = 3
RESPONSE_SAMPLE = 30
RESPONSE_CONTACTS = 15
RESPONSE_HISTORY = 5

_FRACTION = re.compile(r"\.(\d+)(?=[+-]\d\d:\d\d$|$)")

logger = logging.getLogger("ghl_mcp.monitor")


@dataclass(frozen=True)
class SkippedItem:
    id: Optional[str]
    reason: str


@dataclass(frozen=True)
class Finding:
    check: str
    count: Optional[int] = None
    items: Tuple[Dict[str, Any], ...] = ()
    threshold: Optional[str] = None
    has_more: Optional[bool] = None
    error: Optional[str] = None
    skipped: Tuple[SkippedItem, ...] = ()

    @classmethod
    def failed(cls, check: str, exc: BaseException) -> "Finding":
        return cls(check=check, error=str(exc) or type(exc).__name__)

    def to_dict(self) -> Dict[str, Any]:
        if self.error is not None:
            return {"check": self.check, "error": self.error}
        data: Dict[str, Any] = {"check": self.check, "count": self.count, "items": list(self.items)}
        if self.threshold is not None:
            data["threshold"] = self.threshold
        if self.has_more is not None:
            data["hasMore"] = self.has_more
        if self.skipped:
            data["skipped"] = [{"id": s.id, "reason": s.reason} for s in self.skipped]
        return data


@dataclass(frozen=True)
class Report:
    timestamp: datetime
    location: str
    checks: Dict[str, Finding] = field(default_factory=dict)
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "location": self.location,
            "checks": {name: finding.to_dict() for name, finding in self.checks.items()},
            "summary": self.summary,
        }


# -- helpers -----------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 strings or epoch milliseconds; None when unparseable."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def last_seen(contact: Dict[str, Any]) -> Optional[datetime]:
    """Most recent of lastActivity, dateUpdated and dateAdded that parses."""
    stamps = [parse_timestamp(contact.get(key)) for key in ("lastActivity", "dateUpdated", "dateAdded")]
    parsed = [s for s in stamps if s is not None]
    return max(parsed) if parsed else None


def time_ago(value: Any, now: Optional[datetime] = None) -> str:
    then = parse_timestamp(value)
    if then is None:
        return "unknown"
    minutes = int(((now or _utcnow()) - then).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


def _contact_name(contact: Dict[str, Any]) -> str:
    name = f"{contact.get('firstName') or ''} {contact.get('lastName') or ''}".strip()
    return name or contact.get("email") or contact.get("phone") or ""


def _fmt_number(value: float) -> str:
    return f"{value:g}"


# -- checks ------------------------------------------------------------------


async def check_stale_leads(
    actions: GhlActions,
    thresholds: Thresholds,
    now: Optional[datetime] = None,
) -> Finding:
    now = now or _utcnow()
    hours = thresholds.stale_lead_hours
    cutoff = now - timedelta(hours=hours)
    logger.info("Checking stale leads", extra={"threshold_hours": hours, "cutoff": cutoff.isoformat()})

    contacts = list_field(parse_content(await actions.search_contacts("", limit=STALE_SAMPLE)), "contacts")
    stale = []
    for contact in contacts:
        seen = last_seen(contact)
        if seen is not None and seen < cutoff:
            stale.append((contact, seen))

    return Finding(
        check=STALE_LEADS,
        count=len(stale),
        threshold=f"{_fmt_number(hours)}h",
        items=tuple(
            {
                "id": c.get("id"),
                "name": _contact_name(c),
                "lastActivity": time_ago(seen, now),
                "tags": c.get("tags") or [],
            }
            for c, seen in stale[:MAX_ITEMS]
        ),
        has_more=len(stale) > MAX_ITEMS,
    )


async def check_missed_followups(
    actions: GhlActions,
    thresholds: Thresholds,
    now: Optional[datetime] = None,
) -> Finding:
    now = now or _utcnow()
    logger.info("Checking missed follow-ups")

    contacts = list_field(parse_content(await actions.search_contacts("", limit=FOLLOWUP_SAMPLE)), "contacts")
    overdue: List[Dict[str, Any]] = []
    skipped: List[SkippedItem] = []

    for contact in contacts[:FOLLOWUP_CONTACTS]:
        try:
            tasks = list_field(parse_content(await actions.get_contact_tasks(contact.get("id"))), "tasks")
        except QuotaExceededError:
            raise
        except GhlMcpError as exc:
            skipped.append(SkippedItem(contact.get("id"), f"task fetch failed: {exc}"))
            continue
        for task in tasks:
            due = parse_timestamp(task.get("dueDate"))
            if due is not None and due < now and not task.get("completed"):
                overdue.append({
                    "contactId": contact.get("id"),
                    "contactName": _contact_name(contact),
                    "taskTitle": task.get("title") or task.get("body"),
                    "dueDate": time_ago(task.get("dueDate"), now),
                })

    return Finding(
        check=MISSED_FOLLOWUPS,
        count=len(overdue),
        items=tuple(overdue[:MAX_ITEMS]),
        has_more=len(overdue) > MAX_ITEMS,
        skipped=tuple(skipped),
    )


async def check_pipeline_bottlenecks(
    actions: GhlActions,
    thresholds: Thresholds,
    now: Optional[datetime] = None,
) -> Finding:
    now = now or _utcnow()
    days = thresholds.stuck_opportunity_days
    cutoff = now - timedelta(days=days)
    logger.info("Checking pipeline bottlenecks", extra={"threshold_days": days})

    pipelines = list_field(parse_content(await actions.get_pipelines()), "pipelines")
    bottlenecks: List[Dict[str, Any]] = []

    for pipeline in pipelines[:MAX_PIPELINES]:
        opportunities = list_field(
            parse_content(await actions.search_opportunities(pipelineId=pipeline.get("id"))),
            "opportunities",
        )
        stage_names = {s.get("id"): s.get("name") for s in pipeline.get("stages") or []}
        groups: Dict[str, List[Dict[str, Any]]] = {}
        for opp in opportunities:
            changed = opp.get("lastStageChangeAt") or opp.get("updatedAt") or opp.get("createdAt")
            changed_at = parse_timestamp(changed)
            if changed_at is None or changed_at >= cutoff:
                continue
            stage_id = opp.get("pipelineStageId")
            stage = stage_names.get(stage_id) or stage_id
            groups.setdefault(stage, []).append({
                "id": opp.get("id"),
                "name": opp.get("name") or opp.get("contactName"),
                "value": opp.get("monetaryValue"),
                "stuckSince": time_ago(changed, now),
            })
        for stage, opps in groups.items():
            bottlenecks.append({
                "pipeline": pipeline.get("name"),
                "stage": stage,
                "count": len(opps),
                "totalValue": sum(o["value"] or 0 for o in opps),
                "items": opps[:MAX_BOTTLENECK_ITEMS],
            })

    return Finding(
        check=PIPELINE_BOTTLENECKS,
        count=sum(b["count"] for b in bottlenecks),
        threshold=f"{_fmt_number(days)}d",
        items=tuple(bottlenecks),
    )


async def check_slow_responses(
    actions: GhlActions,
    thresholds: Thresholds,
    now: Optional[datetime] = None,
) -> Finding:
    minutes = thresholds.slow_response_minutes
    logger.info("Checking slow responses", extra={"threshold_minutes": minutes})

    contacts = list_field(parse_content(await actions.search_contacts("", limit=RESPONSE_SAMPLE)), "contacts")
    slow: List[Dict[str, Any]] = []
    skipped: List[SkippedItem] = []

    for contact in contacts[:RESPONSE_CONTACTS]:
        contact_id = contact.get("id")
        try:
            history = await actions.get_conversation_history(contact_id, limit=RESPONSE_HISTORY)
        except QuotaExceededError:
            raise
        except GhlMcpError as exc:
            skipped.append(SkippedItem(contact_id, f"history fetch failed: {exc}"))
            continue

        messages = list_field(parse_content(history), "messages")
        if len(messages) < 2:
            skipped.append(SkippedItem(contact_id, "fewer than two messages"))
            continue

        elapsed = first_response_minutes(messages)
        if elapsed is not None and elapsed > minutes:
            slow.append({
                "contactId": contact_id,
                "contactName": _contact_name(contact),
                "responseTime": f"{round(elapsed)}m",
                "threshold": f"{_fmt_number(minutes)}m",
            })

    return Finding(
        check=SLOW_RESPONSES,
        count=len(slow),
        threshold=f"{_fmt_number(minutes)}m",
        items=tuple(slow[:MAX_ITEMS]),
        has_more=len(slow) > MAX_ITEMS,
        skipped=tuple(skipped),
    )


def first_response_minutes(messages: List[Dict[str, Any]]) -> Optional[float]:
    """Minutes from the first inbound message to the first outbound reply after it."""
    inbound = next((m for m in messages if m.get("direction") == "inbound"), None)
    if inbound is None:
        return None
    received = parse_timestamp(inbound.get("dateAdded"))
    if received is None:
        return None
    for message in messages:
        if message.get("direction") != "outbound":
            continue
        sent = parse_timestamp(message.get("dateAdded"))
        if sent is not None and sent > received:
            return (sent - received).total_seconds() / 60
    return None


CHECKS = (
    (STALE_LEADS, check_stale_leads),
    (MISSED_FOLLOWUPS, check_missed_followups),
    (PIPELINE_BOTTLENECKS, check_pipeline_bottlenecks),
    (SLOW_RESPONSES, check_slow_responses),
)


# -- engine ------------------------------------------------------------------


async def run_all_checks(actions: GhlActions, now: Optional[datetime] = None) -> Report:
    """Run every check concurrently and wait for all of them to settle."""
    now = now or _utcnow()
    location = actions.location
    outcomes = await asyncio.gather(
        *(check(actions, location.thresholds, now) for _, check in CHECKS),
        return_exceptions=True,
    )

    findings: Dict[str, Finding] = {}
    for (name, _), outcome in zip(CHECKS, outcomes):
        if isinstance(outcome, Finding):
            findings[name] = outcome
        elif isinstance(outcome, Exception):
            logger.error(f"Check {name} failed: {outcome}", extra={"check": name})
            findings[name] = Finding.failed(name, outcome)
        else:
            raise outcome

    report = Report(timestamp=now, location=location.name, checks=findings)
    return replace(report, summary=format_summary(report))


def total_issues(findings: Dict[str, Finding]) -> int:
    return sum(f.count or 0 for f in findings.values() if f.error is None)


def format_summary(report: Report) -> str:
    lines = [
        f"📊 GHL Monitor — {report.location}",
        f"🕐 {report.timestamp.strftime('%Y-%m-%d %H:%M %Z').strip()}",
        "",
    ]
    for name, emoji, label in CHECK_LABELS:
        finding = report.checks.get(name)
        if finding is None:
            continue
        if finding.error is not None:
            lines.append(f"{emoji} {label}: ⚠️ Error — {finding.error}")
        elif not finding.count:
            lines.append(f"{emoji} {label}: ✅ None")
        else:
            lines.append(f"{emoji} {label}: ⚠️ {finding.count} found")

    total = total_issues(report.checks)
    lines.append("")
    if total == 0:
        lines.append("✅ All clear — no issues detected.")
    else:
        lines.append(f"⚠️ {total} total issues need attention.")
    return "\n".join(lines)
