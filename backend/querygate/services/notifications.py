from __future__ import annotations

"""backend/querygate/services/notifications.py

Slack notifications for the approval flow.

- new submission          -> approval channel
- execution success/fail  -> approval channel, plus a DM to the requester
- rejection               -> DM to the requester only, never the channel

Messages go through the Slack Web API (``chat.postMessage``) with a bot
token. A failed post raises NotificationError; callers treat every
notification as best-effort and log instead of propagating.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import requests

from querygate.config import Settings

logger = logging.getLogger(__name__)

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"

QUERY_PREVIEW_LIMIT = 100
RESULT_PREVIEW_LIMIT = 500


class NotificationError(Exception):
    pass


@dataclass
class QueryInfo:
    id: str
    requester_name: str
    requester_email: str
    database_name: str
    instance_name: str
    pod_id: str
    submission_type: str
    requester_slack_id: Optional[str] = None
    query_text: Optional[str] = None
    script_content: Optional[str] = None
    comments: Optional[str] = None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def type_label(self) -> str:
        return "Script" if self.submission_type == "SCRIPT" else "Query"


class NotificationSink(Protocol):
    def notify_new_submission(self, info: QueryInfo) -> None: ...

    def notify_execution_success(self, info: QueryInfo, result: Any, approver_name: str) -> None: ...

    def notify_execution_failure(self, info: QueryInfo, error: str, approver_name: str) -> None: ...

    def notify_rejection(self, info: QueryInfo, reason: Optional[str], rejecter_name: str) -> None: ...


def truncate(text: Optional[str], limit: int) -> str:
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def format_query_preview(info: QueryInfo) -> str:
    if info.submission_type == "SCRIPT":
        return truncate(info.script_content or "[Script]", QUERY_PREVIEW_LIMIT)
    return truncate(info.query_text or "", QUERY_PREVIEW_LIMIT)


def format_execution_result(result: Any) -> str:
    if result is None:
        return "Execution completed successfully"
    if isinstance(result, dict):
        if result.get("error"):
            return f"Error: {truncate(str(result['error']), RESULT_PREVIEW_LIMIT)}"
        if result.get("output"):
            return truncate(str(result["output"]), RESULT_PREVIEW_LIMIT)
        if isinstance(result.get("rows"), list):
            rows = result["rows"]
            count = result.get("rowCount") or len(rows)
            preview = json.dumps(rows[:3], indent=2, default=str)
            return f"{count} row(s) returned\n{truncate(preview, 400)}"
        if result == {"success": True}:
            return "Execution completed successfully"
        return truncate(json.dumps(result, indent=2, default=str), RESULT_PREVIEW_LIMIT)
    if isinstance(result, list):
        preview = json.dumps(result[:3], indent=2, default=str)
        return f"{len(result)} item(s) returned\n{truncate(preview, 400)}"
    return truncate(str(result), RESULT_PREVIEW_LIMIT)


def _fields(*pairs: tuple[str, str]) -> Dict[str, Any]:
    return {
        "type": "section",
        "fields": [{"type": "mrkdwn", "text": f"*{label}:*\n{value}"} for label, value in pairs],
    }


def _header(text: str) -> Dict[str, Any]:
    return {"type": "header", "text": {"type": "plain_text", "text": text, "emoji": True}}


def _code(label: str, body: str) -> Dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": f"*{label}:*\n```{body}```"}}


class SlackNotifier:
    def __init__(
        self,
        bot_token: Optional[str],
        channel: Optional[str],
        *,
        enabled: bool = True,
        timeout: float = 6,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.bot_token = bot_token
        self.channel = channel
        self.enabled = enabled and bool(bot_token)
        self.timeout = timeout
        self.http = session or requests

    @classmethod
    def from_settings(cls, settings: Settings) -> "SlackNotifier":
        return cls(
            settings.slack_bot_token,
            settings.slack_approval_channel,
            enabled=settings.slack_enabled,
        )

    def _post(self, channel: str, blocks: List[Dict[str, Any]], text: str) -> None:
        response = self.http.post(
            SLACK_POST_MESSAGE_URL,
            headers={
                "Authorization": f"Bearer {self.bot_token}",
                "Content-Type": "application/json; charset=utf-8",
            },
            data=json.dumps({"channel": channel, "blocks": blocks, "text": text}),
            timeout=self.timeout,
        )
        if response.status_code != 200:
            raise NotificationError(f"Slack returned HTTP {response.status_code}")
        payload = response.json()
        if not payload.get("ok", False):
            raise NotificationError(f"Slack rejected message: {payload.get('error', 'unknown_error')}")

    def _send_to_channel(self, blocks: List[Dict[str, Any]], text: str) -> None:
        if self.enabled and self.channel:
            self._post(self.channel, blocks, text)

    def _send_dm(self, slack_user_id: Optional[str], blocks: List[Dict[str, Any]], text: str) -> None:
        if self.enabled and slack_user_id:
            self._post(slack_user_id, blocks, text)

    def notify_new_submission(self, info: QueryInfo) -> None:
        blocks = [
            _header(f"New {info.submission_type} Submission"),
            _fields(
                ("Request ID", f"`{info.short_id}...`"),
                ("Requester", info.requester_name),
                ("Database", f"{info.instance_name} / {info.database_name}"),
                ("POD", info.pod_id),
            ),
            _code("Preview", format_query_preview(info)),
        ]
        text = f"New {info.submission_type} submission from {info.requester_name} for {info.database_name}"
        self._send_to_channel(blocks, text)

    def notify_execution_success(self, info: QueryInfo, result: Any, approver_name: str) -> None:
        details = [
            _fields(
                ("Request ID", f"`{info.short_id}...`"),
                ("Approved by", approver_name),
                ("Database", f"{info.instance_name} / {info.database_name}"),
                ("Type", info.submission_type),
            ),
            _code("Result", format_execution_result(result)),
        ]
        text = f"{info.type_label} {info.short_id} executed successfully"
        self._send_to_channel([_header(f"{info.type_label} Executed Successfully"), *details], text)
        self._send_dm(
            info.requester_slack_id,
            [_header(f"Your {info.type_label} Was Executed Successfully!"), *details],
            text,
        )

    def notify_execution_failure(self, info: QueryInfo, error: str, approver_name: str) -> None:
        details = [
            _fields(
                ("Request ID", f"`{info.short_id}...`"),
                ("Approved by", approver_name),
                ("Database", f"{info.instance_name} / {info.database_name}"),
                ("Type", info.submission_type),
            ),
            _code("Error", truncate(error, RESULT_PREVIEW_LIMIT)),
        ]
        text = f"{info.type_label} {info.short_id} execution failed"
        self._send_to_channel([_header(f"{info.type_label} Execution Failed"), *details], text)
        self._send_dm(
            info.requester_slack_id,
            [_header(f"Your {info.type_label} Execution Failed"), *details],
            text,
        )

    def notify_rejection(self, info: QueryInfo, reason: Optional[str], rejecter_name: str) -> None:
        blocks = [
            _header("Your Query Was Rejected"),
            _fields(
                ("Request ID", f"`{info.short_id}...`"),
                ("Rejected by", rejecter_name),
                ("Database", f"{info.instance_name} / {info.database_name}"),
                ("Type", info.submission_type),
            ),
            _code("Query Preview", format_query_preview(info)),
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Rejection Reason:*\n{reason or 'No reason provided'}"},
            },
        ]
        self._send_dm(info.requester_slack_id, blocks, f"Your query {info.short_id} was rejected")


class NullNotifier:
    """Used when Slack is not configured."""

    def notify_new_submission(self, info: QueryInfo) -> None:
        logger.debug("Notifications disabled; skipping new submission %s", info.id)

    def notify_execution_success(self, info: QueryInfo, result: Any, approver_name: str) -> None:
        logger.debug("Notifications disabled; skipping success for %s", info.id)

    def notify_execution_failure(self, info: QueryInfo, error: str, approver_name: str) -> None:
        logger.debug("Notifications disabled; skipping failure for %s", info.id)

    def notify_rejection(self, info: QueryInfo, reason: Optional[str], rejecter_name: str) -> None:
        logger.debug("Notifications disabled; skipping rejection for %s", info.id)


def build_notifier(settings: Settings) -> NotificationSink:
    if settings.slack_enabled and settings.slack_bot_token:
        return SlackNotifier.from_settings(settings)
    return NullNotifier()
