"""Tests for the conversation session state machine (ember/assistant/session.py)."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from ember.assistant.correction_memory import CorrectionMemory
from ember.assistant.home_control import ActionResult, Device, DeviceController, DeviceInventory
from ember.assistant.interpreter import InterpreterResult, SemanticInterpreter
from ember.assistant.models import Interpretation, Utterance
from ember.assistant.mqtt_publisher import EmberMqttPublisher
from ember.assistant.errors import NotificationError
from ember.assistant.notifications import CaregiverNotifier, CaregiverReport, NotificationResult
from ember.assistant.orchestrator import REPROMPT_TEXT, InterpretationOrchestrator
from ember.assistant.session import (
    AutoConfirmPolicy,
    ConfirmationGate,
    ConversationSession,
    RequestSupervisor,
    UserAlert,
)
from ember.assistant.speech_output import FallbackSpeaker

pytestmark = pytest.mark.anyio


class BlockingInterpreter(SemanticInterpreter):
    """Never answers until released; used to hold a turn in the interpreting state."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.cancelled = False

    async def interpret(self, text, *, profile, visual_context, history, pattern_type):
        self.started.set()
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return InterpreterResult(interpretation="too late", confidence=90)


async def _until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


@pytest.fixture
def memory():
    return CorrectionMemory()


@pytest.fixture
def speaker():
    speaker = AsyncMock(spec=FallbackSpeaker)
    speaker.speak = AsyncMock(return_value=None)
    return speaker


@pytest.fixture
def devices():
    controller = AsyncMock(spec=DeviceController)
    controller.execute = AsyncMock(
        return_value=ActionResult(success=True, message="Turn lights on", action="lights_on")
    )
    return controller


@pytest.fixture
def inventory():
    return DeviceInventory({"lights": [Device(id="light.living_room", name="Living Room")]})


@pytest.fixture
def publisher():
    return Mock(spec=EmberMqttPublisher)


@pytest.fixture
def make_session(
    make_interpreter, make_notifier, emergency_config, memory, speaker, devices, inventory, publisher, mock_logger
):
    """Factory returning an idle session, its interpreter, its notifier and the recorded states."""

    def _create(result=None, *, interpreter=None, notifier=None, alert_sink=None, auto_confirm=None, caregivers=None):
        interpreter = interpreter or make_interpreter(result)
        notifier = notifier or make_notifier()
        orchestrator = InterpretationOrchestrator(
            interpreter=interpreter,
            memory=memory,
            notifier=notifier,
            emergency=emergency_config,
            logger=mock_logger,
        )
        session = ConversationSession(
            orchestrator=orchestrator,
            speaker=speaker,
            devices=devices,
            inventory=inventory,
            publisher=publisher,
            caregivers=caregivers,
            alert_sink=alert_sink,
            auto_confirm=auto_confirm,
            logger=mock_logger,
        )
        states: list[str] = []
        session.add_state_listener(states.append)
        return session, interpreter, notifier, states

    return _create


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_start_moves_to_listening(self, make_session, publisher):
        session, _interpreter, _notifier, states = make_session()
        assert session.state == "idle"
        await session.start()
        assert session.state == "listening"
        assert states == ["listening"]
        publisher.publish_state.assert_called_with("listening")

    async def test_utterances_ignored_while_idle(self, make_session):
        session, interpreter, _notifier, _states = make_session()
        assert await session.submit("wan coff") is None
        assert interpreter.calls == []

    async def test_partial_utterances_ignored(self, make_session):
        session, interpreter, _notifier, _states = make_session()
        await session.start()
        assert await session.submit(Utterance("wan coff", is_final=False)) is None
        assert await session.submit("   ") is None
        assert interpreter.calls == []

    async def test_listener_errors_do_not_break_transitions(self, make_session):
        session, _interpreter, _notifier, _states = make_session()
        session.add_state_listener(Mock(side_effect=RuntimeError("bad listener")))
        await session.start()
        assert session.state == "listening"


# ---------------------------------------------------------------------------
# End-to-end turns
# ---------------------------------------------------------------------------


class TestTurns:
    async def test_direct_action_with_auto_confirm(self, make_session, devices, speaker):
        session, interpreter, _notifier, states = make_session(auto_confirm=AutoConfirmPolicy(timeout=0.01))
        await session.start()

        task = await session.submit("li on")
        result = await task

        assert result.outcome == "executed"
        assert result.interpretation.action.action_type == "lights_on"
        devices.execute.assert_awaited_once_with("lights_on", None, "light.living_room")
        speaker.speak.assert_awaited_once_with("Turn lights on.")
        assert interpreter.calls == []
        assert states == ["listening", "analyzing", "responding", "listening"]

    async def test_auto_confirm_reject_default(self, make_session, devices, speaker):
        session, _interpreter, _notifier, _states = make_session(
            auto_confirm=AutoConfirmPolicy(timeout=0.01, default="reject")
        )
        await session.start()

        result = await (await session.submit("li on"))

        assert result.outcome == "rejected"
        devices.execute.assert_not_awaited()
        speaker.speak.assert_awaited_once_with(REPROMPT_TEXT)

    async def test_urgent_bypasses_confirmation(self, make_session, devices, speaker):
        session, interpreter, notifier, states = make_session()
        await session.start()

        result = await (await session.submit("hel pai bad"))

        assert result.outcome == "urgent"
        assert result.interpretation.requires_confirmation is False
        assert session.gate.pending is None
        assert "hel pai bad" in notifier.calls[0][1]
        assert interpreter.calls == []
        devices.execute.assert_not_awaited()
        speaker.speak.assert_awaited_once()
        assert "interpreting" not in states
        assert session.state == "listening"

    async def test_critical_failure_raises_alert(self, make_session, make_notifier, publisher):
        alerts: list[UserAlert] = []
        session, _interpreter, _notifier, _states = make_session(
            notifier=make_notifier(result=NotificationResult(success=False, error="line busy")),
            alert_sink=alerts.append,
        )
        await session.start()

        await (await session.submit("I can't breathe"))

        assert len(alerts) == 1
        assert alerts[0].dismissible is False
        assert alerts[0].level == "critical"
        assert "I can't breathe" in alerts[0].message
        publisher.publish_alert.assert_called_once()
        assert publisher.publish_alert.call_args.kwargs["dismissible"] is False

    async def test_async_alert_sink(self, make_session, make_notifier):
        sink = AsyncMock()
        session, _interpreter, _notifier, _states = make_session(
            notifier=make_notifier(result=NotificationResult(success=False, error="x")),
            alert_sink=sink,
        )
        await session.start()
        await (await session.submit("seizure"))
        sink.assert_awaited_once()

    async def test_confirm_with_alternative(self, make_session, memory, speaker, publisher):
        session, _interpreter, _notifier, states = make_session(
            InterpreterResult(interpretation="I want coffee", confidence=60, alternatives=["I want tea"])
        )
        await session.start()

        task = await session.submit("wan coff pleas now")
        await _until(lambda: session.gate.pending is not None)
        assert session.state == "interpreting"
        assert session.confirm("I want tea") is True
        result = await task

        assert result.outcome == "confirmed"
        assert result.spoken == "I want tea"
        speaker.speak.assert_awaited_once_with("I want tea")
        assert memory.get("wan coff pleas now") == "I want tea"
        assert states[-2:] == ["responding", "listening"]
        publisher.publish_interpretation.assert_called_once()
        assert publisher.publish_interpretation.call_args.kwargs["outcome"] == "confirmed"

    async def test_reject(self, make_session, memory, speaker):
        session, _interpreter, _notifier, _states = make_session(
            InterpreterResult(interpretation="I want coffee", confidence=60)
        )
        await session.start()

        task = await session.submit("wan coff pleas now")
        await _until(lambda: session.gate.pending is not None)
        session.reject()
        result = await task

        assert result.outcome == "rejected"
        speaker.speak.assert_awaited_once_with(REPROMPT_TEXT)
        assert len(memory) == 0

    async def test_learned_correction_answers_directly(self, make_session, memory, speaker):
        memory.put("wan coff", "I want coffee")
        session, interpreter, _notifier, states = make_session()
        await session.start()

        result = await (await session.submit("wan coff"))

        assert result.outcome == "answered"
        assert result.interpretation.confidence == 95
        speaker.speak.assert_awaited_once_with("I want coffee")
        assert interpreter.calls == []
        assert states == ["listening", "analyzing", "responding", "listening"]

    async def test_recent_history_reaches_interpreter(self, make_session, memory):
        memory.put("go store", "I want to go to the store")
        memory.put("wan wa", "I want water")
        session, interpreter, _notifier, _states = make_session(
            InterpreterResult(interpretation="I want coffee", confidence=60)
        )
        await session.start()
        await (await session.submit("go store"))
        await (await session.submit("wan wa"))

        task = await session.submit("wan coff pleas now")
        await _until(lambda: session.gate.pending is not None)
        session.confirm()
        await task

        sent = [turn.text for turn in interpreter.calls[0]["history"]]
        assert sent == ["I want to go to the store", "wan wa", "I want water"]
        history = session.history
        assert len(history) == 6
        assert [turn.role for turn in history[-2:]] == ["user", "assistant"]


class TestCaregiverUpdates:
    @pytest.fixture
    def caregivers(self):
        notifier = AsyncMock(spec=CaregiverNotifier)
        notifier.send_interpretation = AsyncMock(return_value=CaregiverReport(success=True, sent=2, total=2))
        return notifier

    async def test_sent_after_resolved_turn(self, make_session, memory, speaker, caregivers):
        memory.put("wan coff", "I want coffee")
        session, _interpreter, _notifier, _states = make_session(caregivers=caregivers)
        await session.start()

        await (await session.submit("wan coff"))

        caregivers.send_interpretation.assert_awaited_once()
        sent = caregivers.send_interpretation.await_args.args[0]
        assert sent.original_text == "wan coff"
        assert sent.interpreted_text == "I want coffee"
        assert sent.confidence == 95

    async def test_sent_with_confirmed_choice(self, make_session, caregivers):
        session, _interpreter, _notifier, _states = make_session(
            InterpreterResult(interpretation="I want coffee", confidence=60, alternatives=["I want tea"]),
            caregivers=caregivers,
        )
        await session.start()

        task = await session.submit("wan coff pleas now")
        await _until(lambda: session.gate.pending is not None)
        caregivers.send_interpretation.assert_not_awaited()
        session.confirm("I want tea")
        await task

        assert caregivers.send_interpretation.await_args.args[0].interpreted_text == "I want tea"

    async def test_not_sent_after_rejection(self, make_session, caregivers):
        session, _interpreter, _notifier, _states = make_session(
            InterpreterResult(interpretation="I want coffee", confidence=60), caregivers=caregivers
        )
        await session.start()

        task = await session.submit("wan coff pleas now")
        await _until(lambda: session.gate.pending is not None)
        session.reject()
        await task

        caregivers.send_interpretation.assert_not_awaited()

    async def test_failure_does_not_break_turn(self, make_session, memory, speaker, caregivers, mock_logger):
        memory.put("wan coff", "I want coffee")
        caregivers.send_interpretation.side_effect = NotificationError("Twilio error: 20003")
        session, _interpreter, _notifier, _states = make_session(caregivers=caregivers)
        await session.start()

        result = await (await session.submit("wan coff"))

        assert result.outcome == "answered"
        speaker.speak.assert_awaited_once_with("I want coffee")
        assert session.state == "listening"
        mock_logger.warning.assert_called()

# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    async def test_new_utterance_supersedes(self, make_session, devices):
        blocking = BlockingInterpreter()
        session, _interpreter, _notifier, _states = make_session(
            interpreter=blocking, auto_confirm=AutoConfirmPolicy(timeout=0.01)
        )
        await session.start()

        first = await session.submit("wan coff pleas now")
        await blocking.started.wait()
        second = await session.submit("li on")
        result = await second

        assert first.cancelled()
        assert blocking.cancelled is True
        assert result.outcome == "executed"
        devices.execute.assert_awaited_once()

    async def test_stop_during_interpretation(self, make_session, memory, speaker):
        blocking = BlockingInterpreter()
        session, _interpreter, _notifier, _states = make_session(interpreter=blocking)
        await session.start()

        task = await session.submit("wan coff pleas now")
        await blocking.started.wait()
        await session.stop()

        assert task.cancelled()
        assert session.state == "idle"
        assert len(memory) == 0
        speaker.speak.assert_not_awaited()
        assert session.history == []

    async def test_stop_while_waiting_for_confirmation(self, make_session, memory, devices, speaker):
        session, _interpreter, _notifier, _states = make_session(
            InterpreterResult(interpretation="I want coffee", confidence=60)
        )
        await session.start()

        task = await session.submit("wan coff pleas now")
        await _until(lambda: session.gate.pending is not None)
        await session.stop()

        assert task.done()
        assert session.state == "idle"
        assert session.gate.pending is None
        assert len(memory) == 0
        devices.execute.assert_not_awaited()
        speaker.speak.assert_not_awaited()
        assert session.confirm() is False


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


class TestConfirmationGate:
    async def test_auto_confirm_on_timeout(self, pending_interpretation):
        gate = ConfirmationGate()
        outcome = await gate.wait(pending_interpretation, AutoConfirmPolicy(timeout=0.01))
        assert outcome.confirmed is True
        assert outcome.automatic is True
        assert gate.pending is None

    async def test_user_answer_beats_timeout(self, pending_interpretation):
        gate = ConfirmationGate()
        waiter = asyncio.create_task(gate.wait(pending_interpretation, AutoConfirmPolicy(timeout=5)))
        await _until(lambda: gate.pending is not None)
        gate.confirm("I want tea")
        outcome = await waiter
        assert outcome.confirmed is True
        assert outcome.choice == "I want tea"
        assert outcome.automatic is False

    async def test_unbounded_until_answered(self, pending_interpretation):
        gate = ConfirmationGate()
        waiter = asyncio.create_task(gate.wait(pending_interpretation))
        await asyncio.sleep(0.02)
        assert not waiter.done()
        gate.reject()
        assert (await waiter).confirmed is False

    async def test_answer_without_pending(self):
        gate = ConfirmationGate()
        assert gate.confirm() is False
        assert gate.reject() is False


class TestRequestSupervisor:
    async def test_submit_cancels_previous(self, mock_logger):
        supervisor = RequestSupervisor(mock_logger)
        first = await supervisor.submit(asyncio.sleep(10))
        second = await supervisor.submit(asyncio.sleep(0, result="done"))
        assert first.cancelled()
        assert await second == "done"

    async def test_overlapping_submits_leave_one_task(self, mock_logger):
        supervisor = RequestSupervisor(mock_logger)
        running: set[str] = set()

        async def work(name):
            running.add(name)
            try:
                await asyncio.Event().wait()
            finally:
                await asyncio.sleep(0)
                running.discard(name)

        first = await supervisor.submit(work("t0"))
        await asyncio.sleep(0)
        second, third = await asyncio.gather(supervisor.submit(work("t1")), supervisor.submit(work("t2")))
        await asyncio.sleep(0)

        assert running == {"t2"}
        assert supervisor.active is third
        assert first.cancelled()
        assert second.cancelled()

        await supervisor.cancel()
        assert running == set()
        assert supervisor.active is None

    async def test_cancel_idle(self, mock_logger):
        supervisor = RequestSupervisor(mock_logger)
        await supervisor.cancel()
        assert supervisor.active is None


@pytest.fixture
def pending_interpretation():
    return Interpretation(
        original_text="li on",
        interpreted_text="Turn lights on",
        confidence=50,
        category="home_control",
        reasoning="test",
        requires_confirmation=True,
    )
