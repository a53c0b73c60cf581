"""Prompts for phone conversations about a terminal session."""
from callbridge.services.conversation.state import TerminalContext

SYSTEM_PROMPT = """You are a coding assistant on a phone call with the developer who runs you in a terminal.
You can see the recent terminal output below. You are calling because you are waiting on the developer:
a question, a permission request, or direction on what to do next.

Your job on the call:
1. Explain what you are waiting for, based on the terminal output.
2. Help the developer reason through the decision.
3. Agree on a concrete plan and say it back before the call ends.

Style: this is spoken audio. Keep every reply to one to three short sentences, no markdown, no lists.
When you restate the plan, start with "So the plan is" or "To summarize"."""

GREETING_SYSTEM_PROMPT = """You are starting a phone call with a developer about their terminal session.
Read the terminal output and write a one or two sentence spoken greeting that says exactly what is needed:
the question being asked, the permission requested, the error hit, or the task that just finished.
Keep it conversational and short."""

EXTRACTION_PROMPT = """The call has ended. Based on our conversation, what should be typed into the terminal now?
Reply with ONLY that text: no explanation, no quotes.
If the developer agreed to something, give that answer. If they gave instructions, state them concisely.
If nothing was decided, give the most reasonable response based on the discussion."""


def get_system_prompt(context: TerminalContext) -> str:
    """System prompt with the captured terminal output appended."""
    return f"""{SYSTEM_PROMPT}

Terminal output (last lines from {context.project or 'the current project'}):
```
{context.logs}
```

When the call ends, the agreed plan is typed into tmux window {context.window}."""


def get_greeting_user_prompt(context: TerminalContext, log_chars: int) -> str:
    return (
        f"Terminal output from {context.project or 'the current project'}:\n"
        f"```\n{context.logs[-log_chars:]}\n```\n\n"
        "Write the greeting."
    )


def get_fallback_greeting(logs: str) -> str:
    """Keyword-based greeting used when the LLM is unavailable."""
    lowered = logs.lower()
    if "question" in lowered:
        return "Hi! I have a question in the terminal and need your input."
    if "permission" in lowered:
        return "Hi! I need your permission to continue with a task."
    return "Hi! I'm waiting for your input in the terminal. What should I do next?"
