"""Escalation pipeline: evaluate an event, call the user, route the reply to tmux."""
import logging
import time
from datetime import timezone
from typing import Optional, Tuple

from openai import AsyncOpenAI
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from callbridge.core.config import EscalationConfig, Settings
from callbridge.core.exceptions import (
    CallInProgressError,
    ConfigurationError,
    TerminalDeliveryError,
    UnknownCallError,
)
from callbridge.services.calls.manager import CallManager, CallManagerConfig
from callbridge.services.conversation.constants import TERMINAL_LOG_LINES
from callbridge.services.conversation.service import ConversationService
from callbridge.services.conversation.state import ConversationState, TerminalContext
from callbridge.services.escalation.evaluator import EscalationEvaluator
from callbridge.services.escalation.history import CallHistory
from callbridge.services.escalation.models import (
    EscalationContext,
    IncomingEvent,
    ServiceResponse,
    extract_event_content,
)
from callbridge.services.persistence.calls import CallPersistenceService
from callbridge.services.sessions.tracker import SessionTracker, TerminalTarget, project_label
from callbridge.services.speech.stt import OpenAIRealtimeSTTProvider
from callbridge.services.speech.tts import OpenAITTSProvider
from callbridge.services.telephony.telnyx import TelnyxPhoneProvider
from callbridge.services.terminal.tmux import TmuxResponder
from callbridge.services.tunnel.manager import NgrokConnector, TunnelManager

logger = logging.getLogger(__name__)

TEST_CALL_MESSAGE = "Hello! This is a test call from your coding assistant."


class CallService:
    """Wires the call subsystem together and runs the escalation flow."""

    def __init__(
        self,
        settings: Settings,
        config: EscalationConfig,
        evaluator: EscalationEvaluator,
        responder: TmuxResponder,
        session_factory: async_sessionmaker,
        openai_client: Optional[AsyncOpenAI] = None,
        history: Optional[CallHistory] = None,
    ):
        self.settings = settings
        self.config = config
        self.evaluator = evaluator
        self.responder = responder
        self.session_factory = session_factory
        self.openai_client = openai_client
        self.history = history or CallHistory()
        self.session_tracker = SessionTracker()
        self.call_manager: Optional[CallManager] = None
        self.conversation_service: Optional[ConversationService] = None
        self.tunnel: Optional[TunnelManager] = None

    @property
    def is_running(self) -> bool:
        return self.call_manager is not None

    async def start(self) -> None:
        """
        Start the call subsystem when escalation is enabled.

        Raises:
            ConfigurationError: If a credential needed to place calls is missing
        """
        if not self.config.enabled:
            logger.info("[CALL SERVICE] Call escalation disabled")
            return

        missing = self.settings.missing_call_credentials()
        if missing:
            raise ConfigurationError(f"Call escalation enabled but missing: {', '.join(missing)}")

        client = self.openai_client or AsyncOpenAI(api_key=self.settings.openai_api_key)
        public_url = self.settings.public_url
        if not public_url:
            self.tunnel = TunnelManager(
                self.settings.port,
                NgrokConnector(self.settings.ngrok_authtoken, self.settings.ngrok_domain),
                on_url_change=self._on_public_url_change,
            )
            public_url = await self.tunnel.start()

        call_manager = CallManager(
            phone=TelnyxPhoneProvider(self.settings.telnyx_api_key, self.settings.telnyx_connection_id),
            tts=OpenAITTSProvider(client, voice=self.settings.tts_voice, model=self.settings.tts_model),
            stt=OpenAIRealtimeSTTProvider(
                self.settings.openai_api_key,
                model=self.settings.stt_model,
                silence_duration_ms=self.settings.stt_silence_duration_ms,
            ),
            config=CallManagerConfig(
                phone_number=self.settings.telnyx_phone_number,
                user_phone_number=self.settings.user_phone_number,
                public_url=public_url,
            ),
        )
        self.attach(call_manager, client)
        await self.load_history()
        logger.info(f"[CALL SERVICE] Ready, public URL {public_url}")

    def attach(self, call_manager: CallManager, openai_client: AsyncOpenAI) -> None:
        """Use an already-built call manager."""
        self.call_manager = call_manager
        self.conversation_service = ConversationService(
            openai_client,
            call_manager,
            on_complete=self._on_conversation_complete,
            model=self.settings.llm_model,
        )

    async def shutdown(self) -> None:
        if self.conversation_service is not None:
            await self.conversation_service.shutdown()
        if self.call_manager is not None:
            await self.call_manager.shutdown()
        if self.tunnel is not None:
            await self.tunnel.stop()
        logger.info("[CALL SERVICE] Shut down")

    async def _on_public_url_change(self, public_url: str) -> None:
        if self.call_manager is not None:
            self.call_manager.set_public_url(public_url)

    def _require_manager(self) -> CallManager:
        if self.call_manager is None:
            raise ConfigurationError("Call subsystem is not running")
        return self.call_manager

    # Call records

    async def load_history(self) -> None:
        """Seed the rate-limit history from calls placed in the last hour."""
        try:
            async with self.session_factory() as db:
                started = await CallPersistenceService(db).last_hour_call_times()
        except SQLAlchemyError as e:
            logger.error(f"[CALL SERVICE] Could not load call history: {e}")
            return
        for started_at in started:
            self.history.record(started_at.replace(tzinfo=timezone.utc).timestamp())
        logger.info(f"[CALL SERVICE] Loaded {len(started)} calls from the last hour")

    async def _record_call_started(
        self, call_id: str, kind: str, target: Optional[TerminalTarget], event_type: Optional[str]
    ) -> None:
        self.history.record()
        try:
            async with self.session_factory() as db:
                await CallPersistenceService(db).create_call(
                    call_id,
                    kind=kind,
                    session_key=target.key if target else None,
                    event_type=event_type,
                )
        except SQLAlchemyError as e:
            logger.error(f"[CALL SERVICE] Could not record call {call_id}: {e}")

    async def _record_call_finished(
        self,
        call_id: str,
        status: str,
        transcript: Optional[str] = None,
        final_response: Optional[str] = None,
    ) -> None:
        try:
            async with self.session_factory() as db:
                await CallPersistenceService(db).complete_call(
                    call_id, status, transcript=transcript, final_response=final_response
                )
        except SQLAlchemyError as e:
            logger.error(f"[CALL SERVICE] Could not update call {call_id}: {e}")

    # Escalation

    async def handle_event(self, event: IncomingEvent) -> ServiceResponse:
        """
        Evaluate an event and escalate it to a call if the policy allows.

        Any failure after the decision falls back to the notification path.
        """
        content = extract_event_content(event)
        logger.info(f"[CALL SERVICE] Event {event.event_type} from {event.tmux.key}: {content[:80]}")

        context = EscalationContext(
            event=event,
            event_content=content,
            notification_sent_at=event.notification_sent_at,
            previous_call_at=self.history.last_call_at,
            call_count_last_hour=self.history.count_last_hour(),
        )
        result = await self.evaluator.evaluate(context)
        if not result.should_escalate:
            logger.info(f"[CALL SERVICE] Not escalating: {result.reason}")
            return ServiceResponse(
                handled=False,
                action="notify",
                reason=result.reason,
                retry_after_seconds=result.delay_seconds,
            )

        if not self.is_running:
            return ServiceResponse(handled=False, action="notify", reason="Call subsystem is not running")

        try:
            call_id, response = await self.handle_call(event, content)
        except Exception as e:
            logger.error(
                f"[CALL SERVICE] Escalation failed, falling back to notification: {type(e).__name__}: {e}",
                exc_info=True,
            )
            return ServiceResponse(
                handled=False,
                action="notify",
                reason=result.reason,
                error=f"{type(e).__name__}: {e}",
            )
        return ServiceResponse(handled=True, action="call", reason=result.reason, call_id=call_id)

    async def handle_call(self, event: IncomingEvent, content: str) -> Tuple[str, str]:
        """
        Call the user about one event and type their answer into the pane.

        Returns:
            (call_id, user's reply)

        Raises:
            CallInProgressError: If the pane already has an active call
        """
        manager = self._require_manager()
        target = event.tmux
        if self.session_tracker.has_active_call(target):
            raise CallInProgressError(f"Call already active for {target.key}")

        call_id = manager.new_call_id()
        self.session_tracker.register_call(
            call_id,
            target,
            event_id=event.event_id or f"event-{int(time.time() * 1000)}",
            cwd=event.cwd,
            event_type=event.event_type,
            event_content=content,
        )
        await self._record_call_started(call_id, "escalation", target, event.event_type)

        message = self.evaluator.format_call_message(event.event_type, content)
        response = ""
        status = "failed"
        try:
            _, response = await manager.initiate_call(message, call_id=call_id)
            try:
                await manager.end_call(call_id, self.evaluator.goodbye_message)
            except UnknownCallError:
                logger.info(f"[CALL SERVICE] {call_id} already ended by user")

            mapping = self.session_tracker.get_mapping(call_id)
            if response and mapping is not None:
                await self.responder.send_response(mapping.target, response)
            status = "completed"
        finally:
            self.session_tracker.remove_call(call_id)
            await self._record_call_finished(
                call_id,
                status,
                transcript=f"assistant: {message}\nuser: {response}" if response else f"assistant: {message}",
                final_response=response or None,
            )
        return call_id, response

    # Direct calls

    async def test_call(self, message: Optional[str] = None) -> Tuple[str, str]:
        """Place a one-question call that is not tied to a pane."""
        manager = self._require_manager()
        call_id = manager.new_call_id()
        await self._record_call_started(call_id, "test", None, None)
        message = message or TEST_CALL_MESSAGE
        status = "failed"
        response = ""
        try:
            _, response = await manager.initiate_call(message, call_id=call_id)
            try:
                await manager.end_call(call_id, self.evaluator.goodbye_message)
            except UnknownCallError:
                pass
            status = "completed"
        finally:
            await self._record_call_finished(call_id, status, final_response=response or None)
        return call_id, response

    async def start_conversation_call(self, session: str, window: str, pane: Optional[str] = None) -> str:
        """
        Start an open-ended conversation about a pane.

        Returns:
            The call id; the dialogue continues in the background
        """
        manager = self._require_manager()
        target = TerminalTarget(session=session, window=window, pane=pane or "")
        if self.session_tracker.has_active_call(target):
            raise CallInProgressError(f"Call already active for {target.key}")

        logs = await self.responder.capture_logs(target, TERMINAL_LOG_LINES)
        cwd = await self.responder.current_path(target)
        terminal = TerminalContext(
            session=session,
            window=window,
            pane=pane or "",
            logs=logs,
            project=project_label(cwd),
            cwd=cwd,
        )

        call_id = manager.new_call_id()
        self.session_tracker.register_call(
            call_id,
            target,
            event_id=f"conversation-{int(time.time() * 1000)}",
            cwd=cwd,
            event_type="conversation",
        )
        await self._record_call_started(call_id, "conversation", target, "conversation")

        try:
            await self.conversation_service.start_conversation(terminal, call_id=call_id)
        except Exception:
            self.session_tracker.remove_call(call_id)
            await self._record_call_finished(call_id, "failed")
            raise
        return call_id

    async def _on_conversation_complete(self, state: ConversationState, plan: Optional[str]) -> None:
        mapping = self.session_tracker.get_mapping(state.call_id)
        target = mapping.target if mapping is not None else state.terminal.target
        status = "completed" if plan else "no_response"
        try:
            if plan:
                await self.responder.send_response(target, plan)
        except (TerminalDeliveryError, OSError) as e:
            logger.error(f"[CALL SERVICE] Could not deliver plan for {state.call_id}: {e}")
            status = "failed"
        finally:
            self.session_tracker.remove_call(state.call_id)
            await self._record_call_finished(
                state.call_id,
                status,
                transcript=state.get_transcript_text(),
                final_response=plan,
            )
