"""
Claude Code conversation transformer.

Claude Code writes one JSON record per message to
~/.claude/projects/<project>/<session>.jsonl. A "turn" is a real user
prompt followed by every assistant message, tool call and tool result up
to the next real user prompt. Each turn becomes one history index holding
a User entry and (once the agent answered) an Assistant entry whose
thoughts list the tool calls and intermediate responses.

Tool results are written as user records, so a batch that starts with a
tool result continues the turn already sent; in that case the whole turn
is rebuilt and only its Assistant entry is returned.
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from ...state.sync_state import ConversationsSyncState
from .base import ConversationTransformer, TransformResult

logger = logging.getLogger(__name__)

DEFAULT_ASSISTANT_ID = "agent-sync-import"

_COMMAND_NAME = re.compile(r"<command-name>\s*(.*?)\s*</command-name>", re.DOTALL)
_COMMAND_ARGS = re.compile(r"<command-args>\s*(.*?)\s*</command-args>", re.DOTALL)

# Wrapper-generated user records that are not prompts.
_FILTERED_PREFIXES = (
    "<local-command-stdout>",
    "<local-command-stderr>",
    "<local-command-caveat>",
    "Caveat: The messages below were generated by the user while running local commands",
)


def _content(msg: Dict[str, Any]) -> Any:
    inner = msg.get("message")
    if not isinstance(inner, dict):
        return None
    return inner.get("content")


def is_tool_result(msg: Dict[str, Any]) -> bool:
    """True for a user record that carries tool results."""
    if msg.get("type") != "user":
        return False
    content = _content(msg)
    if not isinstance(content, list):
        return False
    return any(isinstance(item, dict) and item.get("type") == "tool_result" for item in content)


def extract_command(text: str) -> Optional[str]:
    """Return "/cmd args" for an XML-wrapped slash command, else None."""
    match = _COMMAND_NAME.search(text)
    if not match:
        return None
    command = match.group(1)
    args = _COMMAND_ARGS.search(text)
    if args and args.group(1):
        return f"{command} {args.group(1)}"
    return command


def should_filter_message(msg: Dict[str, Any]) -> bool:
    """True for records that never start or belong to a visible turn."""
    msg_type = msg.get("type")
    if msg_type not in ("user", "assistant"):
        return True
    if msg.get("isSidechain") or msg.get("isCompactSummary"):
        return True
    if msg_type == "user":
        if msg.get("isMeta"):
            return True
        content = _content(msg)
        if isinstance(content, str):
            text = content.strip()
        elif isinstance(content, list):
            text = "\n".join(
                item.get("text", "") for item in content
                if isinstance(item, dict) and item.get("type") == "text"
            ).strip()
        else:
            return True
        if not text and not is_tool_result(msg):
            return True
        if text.startswith(_FILTERED_PREFIXES):
            return True
    return False


def _is_prompt(msg: Dict[str, Any]) -> bool:
    return (
        bool(msg.get("uuid"))
        and msg.get("type") == "user"
        and not should_filter_message(msg)
        and not is_tool_result(msg)
    )


def _extract_user_message(msg: Dict[str, Any]) -> str:
    content = _content(msg)
    if isinstance(content, str):
        return extract_command(content) or content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                text = item.get("text", "")
                parts.append(extract_command(text) or text)
        return "\n\n".join(parts)
    return ""


def _extract_text(msg: Dict[str, Any]) -> str:
    content = _content(msg)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "text":
                parts.append(item.get("text", ""))
            elif item.get("type") == "thinking":
                parts.append(item.get("thinking", ""))
        return "\n\n".join(parts)
    return ""


def _tool_calls(msg: Dict[str, Any]) -> List[Dict[str, Any]]:
    content = _content(msg)
    if not isinstance(content, list):
        return []
    return [item for item in content if isinstance(item, dict) and item.get("type") == "tool_use"]


def _tool_results(messages: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Map tool_use_id -> {"content": str, "is_error": bool}."""
    results: Dict[str, Dict[str, Any]] = {}
    for msg in messages:
        if not is_tool_result(msg):
            continue
        for item in _content(msg):
            if not isinstance(item, dict) or item.get("type") != "tool_result":
                continue
            raw = item.get("content")
            if isinstance(raw, str):
                text = raw
            elif isinstance(raw, list):
                text = "\n\n".join(
                    c.get("text", "") for c in raw
                    if isinstance(c, dict) and c.get("type") == "text"
                )
            else:
                text = ""
            results[item.get("tool_use_id", "")] = {
                "content": text,
                "is_error": item.get("is_error") is True or item.get("isError") is True,
            }
    return results


def _assistant_error(msg: Dict[str, Any]) -> Optional[str]:
    inner = msg.get("message") or {}
    output_type = (inner.get("Output") or {}).get("__type")
    error = inner.get("error")
    if not output_type and not error:
        return None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return output_type or "Unknown error"


def _parse_time(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _response_time(start: Any, end: Any) -> Optional[float]:
    """Seconds between two ISO timestamps, rounded to 2 decimals."""
    start_dt, end_dt = _parse_time(start), _parse_time(end)
    if start_dt is None or end_dt is None:
        return None
    try:
        seconds = (end_dt - start_dt).total_seconds()
    except TypeError:
        # naive vs aware timestamps
        return None
    if seconds < 0:
        logger.debug(f"[claude] Negative response time ({start} -> {end})")
        return 0.0
    return round(seconds, 2)


def _tool_thought(call: Dict[str, Any], result: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "id": call.get("id", ""),
        "metadata": {},
        "in_progress": False,
        "input_text": json.dumps(call.get("input", {}), ensure_ascii=False),
        "message": result["content"] if result else "",
        "author_type": "Tool",
        "author_name": call.get("name", ""),
        "output_format": "text",
        "error": bool(result and result["is_error"]),
        "children": [],
    }


def _agent_thought(msg_id: str, text: str, author: str, timestamp: Any) -> Dict[str, Any]:
    return {
        "id": msg_id,
        "metadata": {"timestamp": timestamp, "type": "intermediate_response"},
        "in_progress": False,
        "input_text": "",
        "message": text,
        "author_type": "Agent",
        "author_name": author,
        "output_format": "text",
        "error": False,
        "children": [],
    }


def _error_thought(msg_id: str, message: str, author: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": msg_id,
        "metadata": metadata,
        "in_progress": False,
        "input_text": "",
        "message": message,
        "author_type": "Agent",
        "author_name": author,
        "output_format": "error",
        "error": True,
        "children": [],
    }


class ClaudeConversationTransformer(ConversationTransformer):
    """Stateless Claude Code transcript -> conversation history transformer."""

    agent_name = "claude"

    def __init__(self, display_name: str = "Claude Code", assistant_id: str = DEFAULT_ASSISTANT_ID):
        self.display_name = display_name
        self.assistant_id = assistant_id

    def transform(
        self,
        messages: List[Dict[str, Any]],
        cursor: ConversationsSyncState,
    ) -> TransformResult:
        last_uuid = cursor.last_synced_message_uuid
        last_index = cursor.last_synced_history_index

        synced_pos = -1
        if last_uuid:
            synced_pos = next((i for i, m in enumerate(messages) if m.get("uuid") == last_uuid), -1)
        start = synced_pos + 1

        new_messages = messages[start:]
        if not new_messages:
            return TransformResult(
                current_history_index=last_index,
                last_processed_message_uuid=last_uuid,
            )

        first = None
        for msg in new_messages:
            if not msg.get("uuid"):
                continue
            if is_tool_result(msg) or not should_filter_message(msg):
                first = msg
                break

        if first is None:
            # Only filtered records: move the uuid cursor past them.
            newest = next((m["uuid"] for m in reversed(new_messages) if m.get("uuid")), last_uuid)
            return TransformResult(
                current_history_index=last_index,
                last_processed_message_uuid=newest,
            )

        is_continuation = not _is_prompt(first)
        history_index = last_index if is_continuation else last_index + 1

        if is_continuation:
            turn_start = 0
            for i in range(synced_pos, -1, -1):
                if _is_prompt(messages[i]):
                    turn_start = i
                    break
            turn_end = self._turn_end(messages, start)
            turn = self._transform_turn(messages[turn_start:turn_end], history_index)
            history = [entry for entry in turn if entry["role"] == "Assistant"]
        else:
            turn_start = next(
                (i for i in range(start, len(messages)) if _is_prompt(messages[i])), start
            )
            turn_end = self._turn_end(messages, turn_start + 1)
            history = self._transform_turn(messages[turn_start:turn_end], history_index)

        processed_uuid = next(
            (messages[i]["uuid"] for i in range(turn_end - 1, turn_start - 1, -1) if messages[i].get("uuid")),
            last_uuid,
        )

        return TransformResult(
            history=history,
            is_turn_continuation=is_continuation,
            current_history_index=history_index,
            last_processed_message_uuid=processed_uuid,
        )

    @staticmethod
    def _turn_end(messages: List[Dict[str, Any]], begin: int) -> int:
        for i in range(begin, len(messages)):
            if _is_prompt(messages[i]):
                return i
        return len(messages)

    def _transform_turn(self, turn: List[Dict[str, Any]], history_index: int) -> List[Dict[str, Any]]:
        """Build the User (+ Assistant) entries of one turn."""
        user_msg = next((m for m in turn if _is_prompt(m)), None)
        if user_msg is None:
            return []

        user_text = _extract_user_message(user_msg)
        history: List[Dict[str, Any]] = [{
            "role": "User",
            "message": user_text,
            "message_raw": user_text,
            "history_index": history_index,
            "date": user_msg.get("timestamp"),
            "file_names": [],
        }]

        assistant_msgs = [m for m in turn if m.get("type") == "assistant"]
        meta_msgs = [m for m in turn if m.get("type") == "user" and m.get("isMeta")]
        system_errors = [m for m in turn if m.get("type") == "system" and m.get("subtype") == "api_error"]

        if assistant_msgs:
            entry = self._assistant_entry(user_msg, assistant_msgs, meta_msgs, turn, history_index)
            if entry:
                history.append(entry)
        elif system_errors:
            history.append(self._system_error_entry(user_msg, system_errors, history_index))
        return history

    def _assistant_entry(
        self,
        user_msg: Dict[str, Any],
        assistant_msgs: List[Dict[str, Any]],
        meta_msgs: List[Dict[str, Any]],
        turn: List[Dict[str, Any]],
        history_index: int,
    ) -> Dict[str, Any]:
        results = _tool_results(turn)
        thoughts: List[Dict[str, Any]] = []

        for meta in meta_msgs:
            text = _extract_text(meta)
            if text.strip():
                thoughts.append(_agent_thought(meta.get("uuid", ""), text, self.display_name, meta.get("timestamp")))

        last = len(assistant_msgs) - 1
        for k, msg in enumerate(assistant_msgs):
            intermediate = k < last
            error = _assistant_error(msg)
            if error is not None:
                error_type = ((msg.get("message") or {}).get("Output") or {}).get("__type") or "Error"
                thoughts.append(_error_thought(
                    msg.get("uuid", ""),
                    f"Error: {error}",
                    self.display_name,
                    {"timestamp": msg.get("timestamp"), "error_type": error_type},
                ))
                continue

            for call in _tool_calls(msg):
                result = results.get(call.get("id", ""))
                # Calls of the final message without a result are still running.
                if result is not None or intermediate:
                    thoughts.append(_tool_thought(call, result))

            if intermediate:
                text = _extract_text(msg)
                if text.strip():
                    thoughts.append(_agent_thought(msg.get("uuid", ""), text, self.display_name, msg.get("timestamp")))

        tokens = {"input": 0, "output": 0, "cache_creation": 0, "cache_read": 0}
        for msg in assistant_msgs:
            usage = (msg.get("message") or {}).get("usage") or {}
            tokens["input"] += usage.get("input_tokens") or 0
            tokens["output"] += usage.get("output_tokens") or 0
            tokens["cache_creation"] += usage.get("cache_creation_input_tokens") or 0
            tokens["cache_read"] += usage.get("cache_read_input_tokens") or 0

        final = assistant_msgs[-1]
        final_error = _assistant_error(final)
        text = _extract_text(final)
        message = f"Error: {final_error}" if final_error else text

        if not message.strip() and not thoughts:
            return {}

        entry: Dict[str, Any] = {
            "role": "Assistant",
            "message": message,
            "message_raw": message if final_error else (text or message),
            "history_index": history_index,
            "date": final.get("timestamp"),
            "response_time": _response_time(user_msg.get("timestamp"), final.get("timestamp")),
            "input_tokens": tokens["input"],
            "output_tokens": tokens["output"],
            "cache_creation_input_tokens": tokens["cache_creation"],
            "cache_read_input_tokens": tokens["cache_read"],
            "assistant_id": self.assistant_id,
        }
        if thoughts:
            entry["thoughts"] = thoughts
        return entry

    def _system_error_entry(
        self,
        user_msg: Dict[str, Any],
        errors: List[Dict[str, Any]],
        history_index: int,
    ) -> Dict[str, Any]:
        thoughts = []
        for err in errors:
            detail = err.get("error") or {}
            inner = detail.get("error") or {}
            text = inner.get("Message") or inner.get("message") or "Unknown error"
            status = detail.get("status", "unknown")
            thoughts.append(_error_thought(
                err.get("uuid", ""),
                f"API Error ({status}): {text}",
                self.display_name,
                {"timestamp": err.get("timestamp"), "error_status": status},
            ))

        last = errors[-1]
        return {
            "role": "Assistant",
            "message": f"Failed after {len(errors)} error(s): {thoughts[0]['message']}",
            "message_raw": f"Failed after {len(errors)} error(s)",
            "history_index": history_index,
            "date": last.get("timestamp"),
            "response_time": _response_time(user_msg.get("timestamp"), last.get("timestamp")),
            "assistant_id": self.assistant_id,
            "thoughts": thoughts,
        }
