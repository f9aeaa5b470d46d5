"""
Conversation session control

The per-utterance state machine:

    idle -> listening            start()
    listening -> analyzing       a finalized utterance arrives
    analyzing -> responding      emergency or direct action, no interpreter needed
    analyzing -> interpreting    unclear speech goes to the interpreter
    interpreting -> responding   interpretation resolved, speech begins
    responding -> listening      speech finished
    any -> idle                  stop()

Only one utterance is processed at a time. A new utterance cancels the one in
flight (RequestSupervisor) and stop() cancels everything; a cancelled turn
leaves nothing behind because memory writes, device actions and speech all
happen after the last suspension point they depend on.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, Literal

from .errors import InputError
from .home_control import ActionResult, DeviceController, DeviceInventory
from .models import ConversationTurn, Interpretation, UserProfile, Utterance, VisualContext
from .mqtt_publisher import EmberMqttPublisher
from .notifications import CaregiverNotifier
from .orchestrator import Analysis, InterpretationContext, InterpretationOrchestrator
from .speech_output import FallbackSpeaker

LOGGER = logging.getLogger(__name__)

SessionState = Literal["idle", "listening", "analyzing", "interpreting", "responding"]
TurnOutcome = Literal["urgent", "executed", "confirmed", "answered", "rejected"]

HISTORY_LIMIT = 10
INTERPRETER_HISTORY = 3


@dataclass(frozen=True)
class UserAlert:
    title: str
    message: str
    level: str
    dismissible: bool = False


@dataclass(frozen=True)
class AutoConfirmPolicy:
    """Bounded countdown for low-stakes device confirmations."""

    timeout: float = 5.0
    default: Literal["confirm", "reject"] = "confirm"


@dataclass(frozen=True)
class ConfirmationOutcome:
    confirmed: bool
    choice: str | None = None
    automatic: bool = False


@dataclass(frozen=True)
class TurnResult:
    interpretation: Interpretation
    outcome: TurnOutcome
    action_result: ActionResult | None = None
    spoken: str | None = None


AlertSink = Callable[[UserAlert], Any]


class ConfirmationGate:
    """Suspension point that waits for the user to confirm or reject.

    Without a policy the wait is unbounded.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future[ConfirmationOutcome] | None = None
        self._pending: Interpretation | None = None

    @property
    def pending(self) -> Interpretation | None:
        return self._pending

    async def wait(self, interpretation: Interpretation, policy: AutoConfirmPolicy | None = None) -> ConfirmationOutcome:
        if self._future is not None and not self._future.done():
            self._future.cancel()
        future: asyncio.Future[ConfirmationOutcome] = asyncio.get_running_loop().create_future()
        self._future = future
        self._pending = interpretation
        try:
            if policy is None:
                return await future
            try:
                return await asyncio.wait_for(asyncio.shield(future), timeout=policy.timeout)
            except asyncio.TimeoutError:
                return ConfirmationOutcome(confirmed=policy.default == "confirm", automatic=True)
        finally:
            if not future.done():
                future.cancel()
            if self._future is future:
                self._future = None
                self._pending = None

    def confirm(self, choice: str | None = None) -> bool:
        return self._resolve(ConfirmationOutcome(confirmed=True, choice=choice))

    def reject(self) -> bool:
        return self._resolve(ConfirmationOutcome(confirmed=False))

    def cancel(self) -> None:
        if self._future is not None and not self._future.done():
            self._future.cancel()

    def _resolve(self, outcome: ConfirmationOutcome) -> bool:
        future = self._future
        if future is None or future.done():
            return False
        future.set_result(outcome)
        return True


class RequestSupervisor:
    """Single-slot task runner: submitting new work cancels the previous task.

    Cancel-then-create runs under a lock, so overlapping submits are
    serialized and only the last one is left running.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or LOGGER
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    @property
    def active(self) -> asyncio.Task | None:
        task = self._task
        return task if task is not None and not task.done() else None

    async def submit(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        try:
            async with self._lock:
                await self._cancel_current()
                task = asyncio.create_task(coro)
                self._task = task
                return task
        except asyncio.CancelledError:
            coro.close()
            raise

    async def cancel(self) -> None:
        async with self._lock:
            await self._cancel_current()

    async def _cancel_current(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        # wait() leaves our own cancellation distinguishable from the task's.
        await asyncio.wait({task})
        if task.cancelled():
            self.logger.debug("[session] Superseded in-flight request")
        elif task.exception() is not None:
            self.logger.debug("[session] Cancelled request ended with %s", task.exception())


class ConversationSession:
    """Ties the interpretation engine to speech, devices and the user."""

    def __init__(
        self,
        *,
        orchestrator: InterpretationOrchestrator,
        profile: UserProfile | None = None,
        speaker: FallbackSpeaker | None = None,
        devices: DeviceController | None = None,
        inventory: DeviceInventory | None = None,
        visual_provider: Callable[[], VisualContext | None] | None = None,
        publisher: EmberMqttPublisher | None = None,
        caregivers: CaregiverNotifier | None = None,
        alert_sink: AlertSink | None = None,
        gate: ConfirmationGate | None = None,
        auto_confirm: AutoConfirmPolicy | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.profile = profile or UserProfile()
        self.speaker = speaker
        self.devices = devices
        self.inventory = inventory
        self.visual_provider = visual_provider
        self.publisher = publisher
        self.caregivers = caregivers
        self.alert_sink = alert_sink
        self.gate = gate or ConfirmationGate()
        self.auto_confirm = auto_confirm
        self.logger = logger or LOGGER
        self.supervisor = RequestSupervisor(self.logger)
        self._state: SessionState = "idle"
        self._history: deque[ConversationTurn] = deque(maxlen=HISTORY_LIMIT)
        self._state_listeners: list[Callable[[SessionState], None]] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> list[ConversationTurn]:
        return list(self._history)

    def add_state_listener(self, listener: Callable[[SessionState], None]) -> None:
        self._state_listeners.append(listener)

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        self.logger.debug("[session] %s -> %s", self._state, state)
        self._state = state
        if self.publisher is not None:
            self.publisher.publish_state(state)
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as exc:
                self.logger.debug("[session] State listener failed: %s", exc)

    async def start(self) -> None:
        if self._state == "idle":
            self._set_state("listening")

    async def stop(self) -> None:
        """Abort whatever is in flight and return to idle."""
        self.gate.cancel()
        await self.supervisor.cancel()
        self._set_state("idle")

    async def submit(self, utterance: Utterance | str, *, is_final: bool = True) -> asyncio.Task | None:
        """Queue a transcript, superseding any utterance still being processed."""
        if isinstance(utterance, Utterance):
            text, is_final = utterance.text, utterance.is_final
        else:
            text = utterance
        if not is_final or self._state == "idle":
            return None
        if not text or not text.strip():
            return None
        return await self.supervisor.submit(self.handle_utterance(text))

    def confirm(self, choice: str | None = None) -> bool:
        return self.gate.confirm(choice)

    def reject(self) -> bool:
        return self.gate.reject()

    def _context(self) -> InterpretationContext:
        visual = None
        if self.visual_provider is not None:
            try:
                visual = self.visual_provider()
            except Exception as exc:
                self.logger.debug("[session] Visual context unavailable: %s", exc)
        available = frozenset(self.inventory.available_categories()) if self.inventory is not None else None
        return InterpretationContext(
            profile=self.profile,
            visual=visual,
            history=tuple(self.history[-INTERPRETER_HISTORY:]),
            available_categories=available,
        )

    async def handle_utterance(self, text: str) -> TurnResult | None:
        """Run one finalized utterance through the full turn."""
        self._set_state("analyzing")
        context = self._context()
        try:
            analysis = await self.orchestrator.analyze(text, context)
        except InputError:
            self.logger.debug("[session] Ignoring empty transcript")
            self._set_state("listening")
            return None

        if analysis.escalation_failure is not None:
            await self._raise_alert(analysis)

        if analysis.needs_interpreter:
            self._set_state("interpreting")
            interpretation = await self.orchestrator.interpret(analysis, context)
        else:
            interpretation = analysis.interpretation
        if interpretation is None:
            self._set_state("listening")
            return None

        outcome: TurnOutcome = "urgent" if analysis.route == "urgent" else "answered"
        if interpretation.requires_confirmation:
            policy = self.auto_confirm if interpretation.action is not None else None
            decision = await self.gate.wait(interpretation, policy)
            if not decision.confirmed:
                reprompt = self.orchestrator.reject(interpretation)
                self._set_state("responding")
                await self._speak(reprompt)
                self._record(interpretation, reprompt, "rejected")
                self._set_state("listening")
                return TurnResult(interpretation=interpretation, outcome="rejected", spoken=reprompt)
            interpretation = self.orchestrator.confirm(interpretation, decision.choice)
            outcome = "confirmed"

        self._set_state("responding")
        action_result = None
        if interpretation.action is not None and analysis.route != "urgent":
            action_result = await self._execute(interpretation)
            if action_result is not None and action_result.success:
                outcome = "executed"
        reply = self._reply_text(interpretation, action_result, confirmed=outcome == "confirmed")
        await self._speak(reply)
        self._record(interpretation, reply, outcome)
        await self._notify_caregivers(interpretation)
        self._set_state("listening")
        return TurnResult(interpretation=interpretation, outcome=outcome, action_result=action_result, spoken=reply)

    async def _execute(self, interpretation: Interpretation) -> ActionResult | None:
        action = interpretation.action
        if action is None or self.devices is None:
            return None
        device = self.inventory.primary_device(action.device_category) if self.inventory is not None else None
        try:
            return await self.devices.execute(action.action_type, action.room, device.id if device else None)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.warning("[session] Device action %s failed: %s", action.action_type, exc)
            return ActionResult(success=False, message=str(exc), action=action.action_type)

    def _reply_text(
        self, interpretation: Interpretation, action_result: ActionResult | None, *, confirmed: bool
    ) -> str:
        if action_result is not None:
            if action_result.success:
                return f"{action_result.message}."
            return "Sorry, I couldn't do that."
        if confirmed:
            return interpretation.interpreted_text
        return interpretation.response or interpretation.interpreted_text

    async def _speak(self, text: str) -> None:
        if self.speaker is None or not text:
            return
        await self.speaker.speak(text)

    def _record(self, interpretation: Interpretation, reply: str, outcome: str) -> None:
        self._history.append(ConversationTurn(role="user", text=interpretation.original_text))
        self._history.append(ConversationTurn(role="assistant", text=reply))
        if self.publisher is not None:
            self.publisher.publish_interpretation(interpretation, outcome=outcome)

    async def _notify_caregivers(self, interpretation: Interpretation) -> None:
        if self.caregivers is None:
            return
        try:
            report = await self.caregivers.send_interpretation(interpretation)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.warning("[session] Caregiver update failed: %s", exc)
            return
        if report.sent:
            self.logger.info("[session] Caregiver update sent to %d of %d", report.sent, report.total)

    async def _raise_alert(self, analysis: Analysis) -> None:
        failure = analysis.escalation_failure
        if failure is None:
            return
        alert = UserAlert(
            title="Emergency call failed",
            message=f'{failure}. You said: "{failure.original_text}". Call for help another way.',
            level="critical",
            dismissible=False,
        )
        self.logger.critical("[session] %s", alert.message)
        if self.publisher is not None:
            self.publisher.publish_alert(alert.title, alert.message, level=alert.level, dismissible=False)
        if self.alert_sink is None:
            return
        try:
            result = self.alert_sink(alert)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.error("[session] Alert sink failed: %s", exc, exc_info=True)
