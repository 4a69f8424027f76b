"""
Metric delta aggregation.

Turns the pending window of a session's deltas into one session metric per
git branch. Only the deltas passed in are summed, so already-synced deltas
are never counted twice.
"""

import logging
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from ..state.delta_store import MetricDelta
from ..state.session_store import SessionMetadata
from .registry import MetricsConfig

logger = logging.getLogger(__name__)

METRIC_NAME = "coding_agent_usage"
UNKNOWN_BRANCH = "unknown"
MAX_ERROR_LENGTH = 1000

_ANSI_ESCAPE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*[@-~]|\][^\x07\x1b]*(?:\x07|\x1b\\)|[@-Z\\-_])")


def timestamp_to_ms(value: Union[int, float, str, None]) -> Optional[int]:
    """Unix ms from an epoch-ms number or an ISO-8601 string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def ms_to_iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def truncate_project_path(full_path: Optional[str]) -> str:
    """
    Keep only the last two path segments.

    Example:
        '/Users/dev/repos/acme/service' -> 'acme/service'
        'C:\\Users\\Dev\\projects\\app' -> 'projects/app'
    """
    if not full_path or not full_path.strip():
        return "unknown"
    segments = [s for s in re.split(r"[\\/]+", full_path.strip()) if s and s != "."]
    if not segments:
        return "unknown"
    if len(segments) == 1 and re.fullmatch(r"[A-Za-z]:", segments[0]):
        return "unknown"
    return "/".join(segments[-2:])


def sanitize_error(message: str) -> str:
    """Strip ANSI codes, normalize newlines and cap the length."""
    text = _ANSI_ESCAPE.sub("", message).replace("\r\n", "\n")
    if len(text) > MAX_ERROR_LENGTH:
        head = text[:MAX_ERROR_LENGTH]
        cut = head.rfind("\n")
        if cut > MAX_ERROR_LENGTH * 0.5:
            text = head[:cut] + "\n...[truncated]"
        else:
            text = head + "...[truncated]"
    return text


def filter_errors(errors: Dict[str, List[str]], config: MetricsConfig) -> Dict[str, List[str]]:
    """Drop errors of excluded tools and sanitize the rest."""
    excluded = set(config.exclude_errors_from_tools)
    filtered = {}
    for tool, messages in errors.items():
        if tool in excluded:
            logger.debug(f"[metrics] Excluding errors from tool: {tool}")
            continue
        filtered[tool] = [sanitize_error(m) for m in messages]
    return filtered


@dataclass
class SessionMetricAttributes:
    """Attributes of the per-branch session metric."""
    agent: str
    agent_version: str
    llm_model: str
    repository: str
    session_id: str
    branch: str
    project: str = ""
    total_user_prompts: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_read_input_tokens: int = 0
    total_cache_creation_tokens: int = 0
    total_tool_calls: int = 0
    successful_tool_calls: int = 0
    failed_tool_calls: int = 0
    files_created: int = 0
    files_modified: int = 0
    files_deleted: int = 0
    total_lines_added: int = 0
    total_lines_removed: int = 0
    session_duration_ms: int = 0
    had_errors: bool = False
    error_messages: Dict[str, List[str]] = field(default_factory=dict)
    status: str = "active"
    is_final: bool = False
    count: int = 1

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if not self.error_messages:
            del data["error_messages"]
        if not self.project:
            del data["project"]
        return data


@dataclass
class SessionMetric:
    """One metric ready to POST."""
    attributes: SessionMetricAttributes
    time: str
    metric_name: str = METRIC_NAME
    record_ids: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "metric_name": self.metric_name,
            "attributes": self.attributes.to_dict(),
            "time": self.time,
        }


def branch_of(delta: MetricDelta, session: SessionMetadata) -> str:
    return delta.git_branch or session.git_branch or UNKNOWN_BRANCH


def group_by_branch(deltas: Iterable[MetricDelta], session: SessionMetadata) -> Dict[str, List[MetricDelta]]:
    groups: Dict[str, List[MetricDelta]] = {}
    for delta in deltas:
        groups.setdefault(branch_of(delta, session), []).append(delta)
    return groups


def _collect_errors(deltas: List[MetricDelta]) -> Dict[str, List[str]]:
    errors: Dict[str, List[str]] = {}
    for delta in deltas:
        if not delta.api_error_message:
            continue
        failing = [tool for tool, status in delta.tool_status.items() if status.get("failure", 0) > 0]
        for tool in failing or ["api"]:
            errors.setdefault(tool, []).append(delta.api_error_message)
    return errors


def aggregate_branch(
    branch: str,
    deltas: List[MetricDelta],
    session: SessionMetadata,
    version: str,
    config: MetricsConfig,
    is_final: bool = False,
) -> SessionMetric:
    """Sum one branch's pending deltas into a session metric."""
    attrs = SessionMetricAttributes(
        agent=session.agent_name,
        agent_version=version,
        llm_model="unknown",
        repository=truncate_project_path(session.working_directory),
        session_id=session.session_id,
        branch=branch,
        project=session.project or "",
        is_final=is_final,
        status="completed" if is_final else "active",
    )

    models: Counter = Counter()
    times: List[int] = []

    for delta in deltas:
        attrs.total_input_tokens += delta.tokens.input
        attrs.total_output_tokens += delta.tokens.output
        attrs.total_cache_read_input_tokens += delta.tokens.cache_read
        attrs.total_cache_creation_tokens += delta.tokens.cache_write

        attrs.total_tool_calls += sum(delta.tools.values())
        for status in delta.tool_status.values():
            attrs.successful_tool_calls += status.get("success", 0)
            attrs.failed_tool_calls += status.get("failure", 0)

        for op in delta.file_operations:
            if op.type == "write":
                attrs.files_created += 1
            elif op.type == "edit":
                attrs.files_modified += 1
            elif op.type == "delete":
                attrs.files_deleted += 1
            attrs.total_lines_added += op.lines_added
            attrs.total_lines_removed += op.lines_removed

        for prompt in delta.user_prompts:
            attrs.total_user_prompts += int(prompt.get("count", 1) or 0)

        models.update(delta.models)
        ms = timestamp_to_ms(delta.timestamp)
        if ms is not None:
            times.append(ms)

    if models:
        attrs.llm_model = models.most_common(1)[0][0]
    if times:
        attrs.session_duration_ms = max(times) - min(times)

    errors = _collect_errors(deltas)
    attrs.had_errors = attrs.failed_tool_calls > 0 or bool(errors)
    attrs.error_messages = filter_errors(errors, config)

    if is_final and session.end_time:
        metric_time = ms_to_iso(session.end_time)
    elif times:
        metric_time = ms_to_iso(max(times))
    else:
        metric_time = ms_to_iso(int(datetime.now(timezone.utc).timestamp() * 1000))

    return SessionMetric(
        attributes=attrs,
        time=metric_time,
        record_ids=[d.record_id for d in deltas],
    )


def aggregate_deltas(
    deltas: List[MetricDelta],
    session: SessionMetadata,
    version: str,
    config: Optional[MetricsConfig] = None,
    is_final: bool = False,
) -> List[SessionMetric]:
    """
    Aggregate pending deltas into one metric per branch.

    Args:
        deltas: The pending window (never already-synced deltas)
        session: Session metadata (agent, working directory, fallback branch)
        version: Client version reported as agent_version
        config: Agent metrics config (error exclusion)
        is_final: Mark every metric as the session's terminal metric

    Returns:
        Metrics in first-seen branch order
    """
    config = config or MetricsConfig()
    return [
        aggregate_branch(branch, group, session, version, config, is_final=is_final)
        for branch, group in group_by_branch(deltas, session).items()
    ]
