"""Decides whether an assistant event should become a phone call."""
import json
import logging
import math
import re
import time
from datetime import datetime
from typing import Callable, List, Optional, Pattern, Tuple, Union

import pytz

from callbridge.core.config import EscalationConfig, QuietHoursConfig
from callbridge.services.escalation.judge import EscalationJudge, JudgeRequest
from callbridge.services.escalation.models import (
    ASK_USER_QUESTION,
    IDLE_PROMPT,
    PERMISSION_PROMPT,
    EscalationContext,
    EscalationResult,
)

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_AFFIRMATIVE_KEYWORDS = ("yes", "call", "true")


def parse_hhmm(value: str) -> int:
    """Convert ``HH:MM`` to minutes after midnight."""
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def in_quiet_window(minutes: int, start: int, end: int) -> bool:
    """
    Check whether a minute-of-day falls inside a quiet window.

    A window with start > end wraps past midnight. The start is inclusive and
    the end exclusive; start == end is an empty window.
    """
    if start > end:
        return minutes >= start or minutes < end
    return start <= minutes < end


def parse_judge_decision(text: str) -> Tuple[bool, str]:
    """
    Read a yes/no decision out of a judge reply.

    The first ``{...}`` block is parsed as JSON and its ``shouldCall`` flag
    used. Without a parsable object, any of "yes", "call" or "true" in the
    reply counts as a yes.
    """
    match = _JSON_OBJECT.search(text)
    if match:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            should_call = parsed.get("shouldCall", parsed.get("should_call")) is True
            return should_call, parsed.get("reason") or "LLM decision"

    lowered = text.lower()
    return any(keyword in lowered for keyword in _AFFIRMATIVE_KEYWORDS), "LLM decision"


class EscalationEvaluator:
    """Applies the escalation policy to an event context.

    Policies are checked in a fixed order and the first one that decides wins:
    disabled, event type, quiet hours, rate limits, always-call patterns,
    notification timeout, LLM judge, then escalate by default.
    """

    def __init__(
        self,
        config: EscalationConfig,
        judge: Optional[EscalationJudge] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.judge = judge
        self._clock = clock
        self._patterns: List[Union[Pattern[str], str]] = [
            self._compile_pattern(p) for p in config.triggers.always_call_patterns
        ]

    @staticmethod
    def _compile_pattern(pattern: str) -> Union[Pattern[str], str]:
        try:
            return re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            logger.warning(f"[ESCALATION] Invalid pattern '{pattern}' ({e}), using substring match")
            return pattern.lower()

    async def evaluate(self, context: EscalationContext) -> EscalationResult:
        """Run the policy chain for one event."""
        now = self._clock()
        event_type = context.event.event_type

        if not self.config.enabled:
            return EscalationResult(False, "Call escalation is disabled")

        if not self.is_event_type_enabled(event_type):
            return EscalationResult(False, f"Event type {event_type} not configured for escalation")

        quiet = self.check_quiet_hours(now)
        if quiet is not None:
            return quiet

        limited = self.check_rate_limit(context, now)
        if limited is not None:
            return limited

        if self.matches_always_call_pattern(context.event_content):
            logger.info(f"[ESCALATION] Always-call pattern matched for {event_type}")
            return EscalationResult(True, "Matches always-call pattern", skip_notification=True)

        if context.notification_sent_at is not None:
            timeout = self.config.triggers.notification_timeout_seconds
            elapsed = now - context.notification_sent_at
            if elapsed < timeout:
                return EscalationResult(
                    False,
                    "Notification timeout not yet elapsed",
                    delay_seconds=timeout - elapsed,
                )

        if self.config.triggers.use_llm_for_escalation and self.judge is not None:
            return await self.ask_judge(context)

        return EscalationResult(True, "Notification timeout elapsed")

    def is_event_type_enabled(self, event_type: str) -> bool:
        triggers = self.config.triggers
        if event_type == PERMISSION_PROMPT:
            return triggers.escalate_permissions
        if event_type == ASK_USER_QUESTION:
            return triggers.escalate_questions
        if event_type == IDLE_PROMPT:
            return triggers.escalate_on_idle
        return False

    def check_quiet_hours(self, now: float) -> Optional[EscalationResult]:
        """Return a decline result when ``now`` is inside the quiet window."""
        quiet_hours: QuietHoursConfig = self.config.quiet_hours
        if not quiet_hours.enabled:
            return None

        local = datetime.fromtimestamp(now, tz=pytz.timezone(quiet_hours.timezone))
        minutes = local.hour * 60 + local.minute
        start = parse_hhmm(quiet_hours.start)
        end = parse_hhmm(quiet_hours.end)
        if not in_quiet_window(minutes, start, end):
            return None

        delay = None
        if quiet_hours.fallback == "queue_for_morning":
            delay = float(((end - minutes) % MINUTES_PER_DAY) * 60 - local.second)
        return EscalationResult(False, "Currently in quiet hours", delay_seconds=delay)

    def check_rate_limit(self, context: EscalationContext, now: float) -> Optional[EscalationResult]:
        limits = self.config.rate_limiting
        if context.previous_call_at is not None:
            since_last = now - context.previous_call_at
            if since_last < limits.min_call_interval_seconds:
                wait = limits.min_call_interval_seconds - since_last
                return EscalationResult(
                    False,
                    f"Rate limit: must wait {math.ceil(wait)}s before next call",
                    delay_seconds=wait,
                )

        if context.call_count_last_hour >= limits.max_calls_per_hour:
            return EscalationResult(
                False, f"Rate limit: max {limits.max_calls_per_hour} calls/hour reached"
            )
        return None

    def matches_always_call_pattern(self, content: str) -> bool:
        lowered = content.lower()
        for pattern in self._patterns:
            if isinstance(pattern, str):
                if pattern in lowered:
                    return True
            elif pattern.search(content):
                return True
        return False

    async def ask_judge(self, context: EscalationContext) -> EscalationResult:
        """Delegate the decision to the LLM judge. Judge failures decline."""
        event = context.event
        content = (
            f"{self.config.triggers.llm_escalation_prompt}\n\n"
            f"Event type: {event.event_type}\n"
            f"Project: {event.project}\n"
            f"Content: {context.event_content}"
        )
        try:
            reply = await self.judge.analyze(
                JudgeRequest(content=content, project=event.project, cwd=event.cwd)
            )
        except Exception as e:
            logger.error(f"[ESCALATION] LLM evaluation failed: {type(e).__name__}: {e}", exc_info=True)
            return EscalationResult(False, "LLM evaluation failed")

        should_call, reason = parse_judge_decision(reply.response or "")
        logger.info(f"[ESCALATION] LLM decided shouldCall={should_call}: {reason}")
        return EscalationResult(should_call, f"LLM: {reason}")

    def format_call_message(self, event_type: str, content: str) -> str:
        """Build the opening line spoken when the call connects."""
        scripts = self.config.call_scripts
        if event_type == PERMISSION_PROMPT:
            body = scripts.permission_prompt.replace("{action}", content)
        elif event_type == ASK_USER_QUESTION:
            body = scripts.question_prompt.replace("{question}", content)
        else:
            body = content
        return f"{scripts.greeting} {body}"

    @property
    def goodbye_message(self) -> str:
        return self.config.call_scripts.goodbye
