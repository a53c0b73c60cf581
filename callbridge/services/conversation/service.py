"""Multi-turn phone conversations that end in a plan typed into the terminal."""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Set

from openai import AsyncOpenAI

from callbridge.core.exceptions import CallHungUpError, UnknownCallError
from callbridge.services.calls.manager import CallManager
from callbridge.services.conversation.constants import (
    DEFAULT_MAX_TURNS,
    FALLBACK_REPLY,
    GREETING_LOG_CHARS,
    LOOP_ERROR_GOODBYE,
    PLAN_PATTERNS,
    TURN_LIMIT_GOODBYE,
)
from callbridge.services.conversation.prompt import (
    EXTRACTION_PROMPT,
    GREETING_SYSTEM_PROMPT,
    get_fallback_greeting,
    get_greeting_user_prompt,
    get_system_prompt,
)
from callbridge.services.conversation.state import ConversationState, TerminalContext

logger = logging.getLogger(__name__)

# Called once per conversation with the final plan, or None when nothing should be sent
CompletionCallback = Callable[[ConversationState, Optional[str]], Awaitable[None]]


def extract_plan(text: str) -> Optional[str]:
    """Return the plan restated in an assistant reply, if any."""
    for pattern in PLAN_PATTERNS:
        match = pattern.search(text)
        if match:
            plan = match.group(1).strip()
            if plan:
                return plan
    return None


class ConversationService:
    """Runs the LLM dialogue loop on top of the call manager."""

    def __init__(
        self,
        client: AsyncOpenAI,
        call_manager: CallManager,
        on_complete: CompletionCallback,
        model: str = "gpt-4o",
        max_turns: int = DEFAULT_MAX_TURNS,
    ):
        self.client = client
        self.call_manager = call_manager
        self.on_complete = on_complete
        self.model = model
        self.max_turns = max_turns
        self._conversations: Dict[str, ConversationState] = {}
        self._tasks: Set[asyncio.Task] = set()

    def get_conversation(self, call_id: str) -> Optional[ConversationState]:
        return self._conversations.get(call_id)

    @property
    def active_conversation_count(self) -> int:
        return len(self._conversations)

    async def start_conversation(
        self,
        terminal: TerminalContext,
        call_id: Optional[str] = None,
        initial_message: Optional[str] = None,
    ) -> str:
        """
        Call the user about a terminal session and run the dialogue in the background.

        Args:
            terminal: Snapshot of the pane being discussed
            call_id: Pre-reserved call id
            initial_message: Opening line; generated from the terminal output when omitted

        Returns:
            The call id once the user has answered and replied to the greeting
        """
        greeting = initial_message or await self.generate_greeting(terminal)
        logger.info(f"[CONVERSATION] Greeting: {greeting}")

        call_id, user_response = await self.call_manager.initiate_call(greeting, call_id=call_id)

        state = ConversationState(call_id=call_id, terminal=terminal)
        state.add_message("system", get_system_prompt(terminal))
        state.add_message("assistant", greeting)
        state.add_message("user", user_response)
        self._conversations[call_id] = state

        task = asyncio.create_task(self._conversation_loop(state))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return call_id

    async def _conversation_loop(self, state: ConversationState) -> None:
        call_id = state.call_id
        try:
            while state.is_active:
                if state.turns >= self.max_turns:
                    logger.info(f"[CONVERSATION] Turn limit reached on {call_id}")
                    await self._end_call(call_id, TURN_LIMIT_GOODBYE)
                    break

                reply = await self.generate_response(state)
                state.add_message("assistant", reply)
                plan = extract_plan(reply)
                if plan:
                    state.current_plan = plan
                    logger.info(f"[CONVERSATION] Plan updated: {plan}")

                user_response = await self.call_manager.continue_call(call_id, reply)
                state.add_message("user", user_response)
                state.turns += 1
        except (CallHungUpError, UnknownCallError):
            logger.info(f"[CONVERSATION] Call {call_id} ended by user")
        except asyncio.CancelledError:
            state.is_active = False
            self._conversations.pop(call_id, None)
            raise
        except Exception as e:
            logger.error(
                f"[CONVERSATION] Loop error on {call_id}: {type(e).__name__}: {e}", exc_info=True
            )
            state.is_active = False
            await self._end_call(call_id, LOOP_ERROR_GOODBYE)
            self._conversations.pop(call_id, None)
            await self._notify_complete(state, None)
            return

        await self.finalize(state)

    async def finalize(self, state: ConversationState) -> Optional[str]:
        """Work out the final plan and hand it to the completion callback."""
        state.is_active = False
        logger.info(f"[CONVERSATION] Finalizing {state.call_id}")

        plan = state.current_plan or await self.extract_final_plan(state)
        self._conversations.pop(state.call_id, None)

        if plan:
            logger.info(f"[CONVERSATION] Final plan for {state.call_id}: {plan}")
        else:
            logger.info(f"[CONVERSATION] No plan agreed on {state.call_id}")
        await self._notify_complete(state, plan or None)
        return plan or None

    async def _notify_complete(self, state: ConversationState, plan: Optional[str]) -> None:
        try:
            await self.on_complete(state, plan)
        except Exception as e:
            logger.error(
                f"[CONVERSATION] Completion handler failed for {state.call_id}: {type(e).__name__}: {e}",
                exc_info=True,
            )

    async def _end_call(self, call_id: str, message: str) -> None:
        try:
            await self.call_manager.end_call(call_id, message)
        except UnknownCallError:
            pass
        except Exception as e:
            logger.warning(f"[CONVERSATION] Could not end {call_id}: {type(e).__name__}: {e}")

    async def generate_greeting(self, terminal: TerminalContext) -> str:
        """Greeting that says what the terminal is waiting for."""
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": GREETING_SYSTEM_PROMPT},
                    {"role": "user", "content": get_greeting_user_prompt(terminal, GREETING_LOG_CHARS)},
                ],
                max_tokens=100,
                temperature=0.7,
            )
            greeting = (response.choices[0].message.content or "").strip()
            if greeting:
                return greeting
        except Exception as e:
            logger.error(f"[CONVERSATION] Greeting generation failed: {type(e).__name__}: {e}")
        return get_fallback_greeting(terminal.logs)

    async def generate_response(self, state: ConversationState) -> str:
        """Next assistant line, kept short for speech."""
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=state.messages,
                max_tokens=150,
                temperature=0.7,
            )
            content = (response.choices[0].message.content or "").strip()
            return content or FALLBACK_REPLY
        except Exception as e:
            logger.error(f"[CONVERSATION] Response generation failed: {type(e).__name__}: {e}")
            return FALLBACK_REPLY

    async def extract_final_plan(self, state: ConversationState) -> str:
        """Ask the LLM for the exact text to type. Empty on failure."""
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=state.messages + [{"role": "user", "content": EXTRACTION_PROMPT}],
                max_tokens=200,
                temperature=0.3,
            )
            return (response.choices[0].message.content or "").strip()
        except Exception as e:
            logger.error(f"[CONVERSATION] Plan extraction failed: {type(e).__name__}: {e}")
            return ""

    async def shutdown(self) -> None:
        """Cancel running conversation loops."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
