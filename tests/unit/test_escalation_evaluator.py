"""Unit tests for the escalation evaluator."""
from datetime import datetime
from unittest.mock import AsyncMock

import pytest
import pytz

from callbridge.core.config import (
    EscalationConfig,
    EscalationTriggers,
    QuietHoursConfig,
    RateLimitingConfig,
)
from callbridge.services.escalation.evaluator import (
    EscalationEvaluator,
    in_quiet_window,
    parse_hhmm,
    parse_judge_decision,
)
from callbridge.services.escalation.history import CallHistory
from callbridge.services.escalation.judge import JudgeResponse
from callbridge.services.escalation.models import (
    EscalationContext,
    IncomingEvent,
    extract_event_content,
)

LA = pytz.timezone("America/Los_Angeles")


def local_ts(hour: int, minute: int = 0) -> float:
    return LA.localize(datetime(2024, 6, 12, hour, minute)).timestamp()


def make_config(**overrides) -> EscalationConfig:
    values = {
        "enabled": True,
        "triggers": EscalationTriggers(use_llm_for_escalation=False),
        "quiet_hours": QuietHoursConfig(enabled=False),
    }
    values.update(overrides)
    return EscalationConfig(**values)


def make_context(content: str = "run the migration", event_type: str = "permission_prompt", **kwargs):
    event = IncomingEvent(event_type=event_type, event_data={"message": content}, cwd="/home/dev/work/api")
    return EscalationContext(event=event, event_content=content, **kwargs)


class TestQuietWindow:
    """Test quiet-hours window arithmetic."""

    @pytest.mark.parametrize(
        "time_of_day, expected",
        [("23:00", True), ("03:00", True), ("08:00", False), ("12:00", False), ("22:00", True), ("21:59", False)],
    )
    def test_wrapping_window(self, time_of_day, expected):
        """Test a 22:00-08:00 window that wraps midnight."""
        assert in_quiet_window(parse_hhmm(time_of_day), parse_hhmm("22:00"), parse_hhmm("08:00")) is expected

    @pytest.mark.parametrize(
        "time_of_day, expected",
        [("09:00", True), ("16:59", True), ("17:00", False), ("08:59", False)],
    )
    def test_daytime_window(self, time_of_day, expected):
        """Test a 09:00-17:00 window."""
        assert in_quiet_window(parse_hhmm(time_of_day), parse_hhmm("09:00"), parse_hhmm("17:00")) is expected


class TestEscalationEvaluator:
    """Test the escalation policy chain."""

    @pytest.mark.asyncio
    async def test_disabled(self):
        """Test nothing escalates when disabled."""
        evaluator = EscalationEvaluator(make_config(enabled=False))
        result = await evaluator.evaluate(make_context())
        assert not result.should_escalate
        assert result.reason == "Call escalation is disabled"

    @pytest.mark.asyncio
    async def test_event_type_not_enabled(self):
        """Test questions do not escalate by default."""
        evaluator = EscalationEvaluator(make_config())
        result = await evaluator.evaluate(make_context(event_type="AskUserQuestion"))
        assert not result.should_escalate
        assert "AskUserQuestion" in result.reason

    @pytest.mark.asyncio
    async def test_quiet_hours_decline(self):
        """Test events during quiet hours are declined with no delay under notify fallback."""
        config = make_config(quiet_hours=QuietHoursConfig(enabled=True))
        evaluator = EscalationEvaluator(config, clock=lambda: local_ts(23, 30))

        result = await evaluator.evaluate(make_context())

        assert not result.should_escalate
        assert result.reason == "Currently in quiet hours"
        assert result.delay_seconds is None

    @pytest.mark.asyncio
    async def test_quiet_hours_queue_for_morning(self):
        """Test queue_for_morning returns the time until quiet hours end."""
        config = make_config(quiet_hours=QuietHoursConfig(enabled=True, fallback="queue_for_morning"))
        evaluator = EscalationEvaluator(config, clock=lambda: local_ts(6, 30))

        result = await evaluator.evaluate(make_context())

        assert not result.should_escalate
        assert result.delay_seconds == 90 * 60

    @pytest.mark.asyncio
    async def test_outside_quiet_hours_escalates(self):
        """Test daytime events pass the quiet-hours check."""
        config = make_config(quiet_hours=QuietHoursConfig(enabled=True))
        evaluator = EscalationEvaluator(config, clock=lambda: local_ts(14, 0))

        result = await evaluator.evaluate(make_context())

        assert result.should_escalate

    @pytest.mark.asyncio
    async def test_min_interval(self):
        """Test a call 200s after the last one waits another 100s."""
        now = 1_700_000_000.0
        evaluator = EscalationEvaluator(make_config(), clock=lambda: now)

        result = await evaluator.evaluate(make_context(previous_call_at=now - 200))

        assert not result.should_escalate
        assert result.reason == "Rate limit: must wait 100s before next call"
        assert result.delay_seconds == pytest.approx(100)

    @pytest.mark.asyncio
    async def test_hourly_cap(self):
        """Test the fourth call in an hour is declined."""
        now = 1_700_000_000.0
        evaluator = EscalationEvaluator(make_config(), clock=lambda: now)

        result = await evaluator.evaluate(make_context(previous_call_at=now - 1000, call_count_last_hour=3))

        assert not result.should_escalate
        assert result.reason == "Rate limit: max 3 calls/hour reached"

    @pytest.mark.asyncio
    async def test_always_call_pattern_skips_notification(self):
        """Test a critical error calls immediately even before the notification timeout."""
        now = 1_700_000_000.0
        evaluator = EscalationEvaluator(make_config(), clock=lambda: now)
        context = make_context(
            content="Error: critical failure in deploy",
            notification_sent_at=now - 10,
        )

        result = await evaluator.evaluate(context)

        assert result.should_escalate
        assert result.skip_notification

    @pytest.mark.asyncio
    async def test_always_call_pattern_respects_hourly_cap(self):
        """Test the hourly cap still applies to always-call patterns."""
        now = 1_700_000_000.0
        evaluator = EscalationEvaluator(make_config(), clock=lambda: now)
        context = make_context(content="Error: critical failure in deploy", call_count_last_hour=3)

        result = await evaluator.evaluate(context)

        assert not result.should_escalate

    @pytest.mark.asyncio
    async def test_invalid_pattern_falls_back_to_substring(self):
        """Test an invalid regex is matched as a case-insensitive substring."""
        triggers = EscalationTriggers(use_llm_for_escalation=False, always_call_patterns=["prod[("])
        evaluator = EscalationEvaluator(make_config(triggers=triggers))

        assert evaluator.matches_always_call_pattern("deploy to PROD[( now")
        assert not evaluator.matches_always_call_pattern("deploy to staging")

    @pytest.mark.asyncio
    async def test_notification_timeout_not_elapsed(self):
        """Test the notification gets its chance first."""
        now = 1_700_000_000.0
        evaluator = EscalationEvaluator(make_config(), clock=lambda: now)

        result = await evaluator.evaluate(make_context(notification_sent_at=now - 30))

        assert not result.should_escalate
        assert result.delay_seconds == pytest.approx(90)

    @pytest.mark.asyncio
    async def test_notification_timeout_elapsed(self):
        """Test escalation once the notification timeout has passed."""
        now = 1_700_000_000.0
        evaluator = EscalationEvaluator(make_config(), clock=lambda: now)

        result = await evaluator.evaluate(make_context(notification_sent_at=now - 121))

        assert result.should_escalate
        assert result.reason == "Notification timeout elapsed"

    @pytest.mark.asyncio
    async def test_llm_judge_yes(self):
        """Test the judge's JSON decision is used."""
        judge = AsyncMock()
        judge.analyze.return_value = JudgeResponse(
            action="respond", response='Sure: {"shouldCall": true, "reason": "blocking deploy"}'
        )
        evaluator = EscalationEvaluator(make_config(triggers=EscalationTriggers()), judge=judge)

        result = await evaluator.evaluate(make_context())

        assert result.should_escalate
        assert result.reason == "LLM: blocking deploy"
        request = judge.analyze.call_args.args[0]
        assert "Event type: permission_prompt" in request.content
        assert "Project: work/api" in request.content
        assert "Content: run the migration" in request.content

    @pytest.mark.asyncio
    async def test_llm_judge_error_declines(self):
        """Test judge failures decline to escalate."""
        judge = AsyncMock()
        judge.analyze.side_effect = RuntimeError("timeout")
        evaluator = EscalationEvaluator(make_config(triggers=EscalationTriggers()), judge=judge)

        result = await evaluator.evaluate(make_context())

        assert not result.should_escalate
        assert result.reason == "LLM evaluation failed"

    def test_parse_judge_decision(self):
        """Test structured and keyword judge replies."""
        assert parse_judge_decision('{"shouldCall": false, "reason": "routine"}') == (False, "routine")
        assert parse_judge_decision('{"shouldCall": "yes"}') == (False, "LLM decision")
        assert parse_judge_decision("Yes, call them.") == (True, "LLM decision")
        assert parse_judge_decision("{not json} but true") == (True, "LLM decision")
        assert parse_judge_decision("No.") == (False, "LLM decision")

    def test_format_call_message(self):
        """Test scripts are filled per event type."""
        evaluator = EscalationEvaluator(make_config())

        assert evaluator.format_call_message("permission_prompt", "delete the build folder") == (
            "Hey! Your coding assistant needs your attention. "
            "I need permission to delete the build folder. Should I proceed?"
        )
        assert evaluator.format_call_message("AskUserQuestion", "Which database?").endswith(
            "I have a question: Which database?"
        )
        assert evaluator.format_call_message("idle_prompt", "Waiting").endswith(" Waiting")


class TestCallHistory:
    """Test rolling call history."""

    def test_prunes_entries_older_than_an_hour(self):
        """Test only the trailing hour is counted."""
        now = 10_000.0
        history = CallHistory(clock=lambda: now)
        history.record(now - 4000)
        history.record(now - 3000)
        history.record(now - 10)

        assert history.count_last_hour() == 2
        assert history.last_call_at == now - 10


class TestEventContent:
    """Test content extraction from hook payloads."""

    def test_question_from_tool_input(self):
        """Test questions are read from tool_input."""
        event = IncomingEvent(
            event_type="AskUserQuestion",
            event_data={"tool_input": {"questions": [{"question": "Use Postgres or SQLite?"}]}},
        )
        assert extract_event_content(event) == "Use Postgres or SQLite?"

    def test_message_field(self):
        """Test the message field is used for permission prompts."""
        event = IncomingEvent(event_type="permission_prompt", event_data={"message": "Allow rm -rf dist?"})
        assert extract_event_content(event) == "Allow rm -rf dist?"

    def test_tool_name_and_fallbacks(self):
        """Test tool name, short strings and event type fallbacks."""
        assert extract_event_content(
            IncomingEvent(event_type="idle_prompt", event_data={"tool_name": "Bash"})
        ) == "Tool: Bash"
        assert extract_event_content(
            IncomingEvent(event_type="idle_prompt", event_data={"other": "waiting on you"})
        ) == "waiting on you"
        assert extract_event_content(IncomingEvent(event_type="idle_prompt")) == "idle_prompt"
