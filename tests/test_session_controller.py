"""Tests for the session lifecycle, detection loop and exercise navigation."""

import asyncio
import json

import pytest

from models.schemas import ExerciseAssignment
from services.session_controller import ExerciseSession, SessionController, SessionState
from services.template_store import TemplateStore
from utils.errors import InitializationError, PermissionDeniedError, SessionBusyError

from fakes import (BlockingPoseModel, FakeCaptureDevice, RecordingRenderer, ScriptedPoseModel,
                   knee_candidate, knee_template, visible_candidate, wait_for)


@pytest.fixture
def store(tmp_path):
    store = TemplateStore(tmp_path)
    store.save_template("squat", knee_template())
    return store


def _session(store, model, exercise_id="squat", target_reps=3, **options):
    options.setdefault("frame_interval", 0)
    return ExerciseSession(
        ExerciseAssignment(exercise_id=exercise_id, target_reps=target_reps),
        FakeCaptureDevice(),
        model,
        store,
        RecordingRenderer(),
        **options
    )


def _cycle(*angles):
    return [[knee_candidate(angle)] for angle in angles]


def test_session_counts_reps_from_stream(store):
    model = ScriptedPoseModel(_cycle(175, 85, 178))

    async def scenario():
        session = _session(store, model)
        await session.start()
        await wait_for(lambda: model.exhausted and session.frames_processed >= 3)
        count = session.rep_count
        await session.stop()
        return session, count

    session, count = asyncio.run(scenario())
    assert count == 1
    assert session.renderer.celebrations == 1
    assert [correct for _, correct in session.renderer.frames[:3]] == [True, True, True]
    assert session.renderer.width == 640


def test_no_template_never_counts(tmp_path):
    model = ScriptedPoseModel([[visible_candidate()]] * 50)
    counts = []

    async def scenario():
        session = _session(TemplateStore(tmp_path), model, exercise_id="unknown")
        session.on_rep = counts.append
        await session.start()
        assert not session.counter.counting_enabled
        await wait_for(lambda: session.frames_processed >= 50)
        counts.append(session.rep_count)
        await session.stop()
        return session

    session = asyncio.run(scenario())
    assert counts == [0]
    assert all(correct for _, correct in session.renderer.frames[:50])


def test_auto_stop_after_target(store):
    # More full cycles keep arriving after the target is met
    model = ScriptedPoseModel(_cycle(175, 85, 178, 85, 175, 85, 175))
    reps = []

    async def scenario():
        session = _session(store, model, target_reps=1, completion_delay=0.05, rep_cooldown=0)
        session.on_rep = reps.append
        await session.start()
        await wait_for(lambda: session.counter.count == 1)
        assert session.is_active
        await wait_for(lambda: session.state == SessionState.STOPPED)
        return session

    session = asyncio.run(scenario())
    assert reps == [1]
    assert session.release_count == 1
    assert session.capture_device.streams[0].stop_calls == 1


def test_stop_twice_releases_once(store):
    model = ScriptedPoseModel()

    async def scenario():
        session = _session(store, model)
        await session.start()
        await session.stop()
        await session.stop()
        return session

    session = asyncio.run(scenario())
    assert session.release_count == 1
    assert session.capture_device.streams[0].stop_calls == 1
    assert model.dispose_calls == 1
    assert model.init_calls == 1
    assert session.state == SessionState.STOPPED


def test_context_manager_releases_on_error(store):
    model = ScriptedPoseModel()
    holder = {}

    async def scenario():
        async with _session(store, model) as session:
            holder["session"] = session
            raise RuntimeError("navigated away")

    with pytest.raises(RuntimeError):
        asyncio.run(scenario())
    assert holder["session"].release_count == 1
    assert model.dispose_calls == 1


def test_in_flight_result_discarded_after_stop(store):
    async def scenario():
        model = BlockingPoseModel(_cycle(175))
        session = _session(store, model)
        await session.start()
        await model.started.wait()
        await session.stop()
        model.release.set()
        await asyncio.sleep(0.01)
        return session, model

    session, model = asyncio.run(scenario())
    assert model.estimate_calls == 1
    assert session.frames_processed == 0
    assert session.renderer.frames == []


def test_estimation_error_does_not_abort(store):
    model = ScriptedPoseModel(_cycle(175, 85, 178))
    model.errors[2] = RuntimeError("bad frame")

    async def scenario():
        session = _session(store, model)
        await session.start()
        await wait_for(lambda: model.exhausted and session.frames_processed >= 3)
        assert session.is_active
        count = session.rep_count
        await session.stop()
        return count

    assert asyncio.run(scenario()) == 1


def test_init_failure_releases_resources(store):
    model = ScriptedPoseModel(fail_init=True)

    async def scenario():
        session = _session(store, model)
        with pytest.raises(InitializationError):
            await session.start()
        await session.stop()
        return session

    session = asyncio.run(scenario())
    assert session.state == SessionState.STOPPED
    assert session.capture_device.streams[0].stop_calls == 1
    assert model.dispose_calls == 1
    assert session.release_count == 1


def test_session_is_single_use(store):
    async def scenario():
        session = _session(store, ScriptedPoseModel())
        await session.start()
        with pytest.raises(SessionBusyError):
            await session.start()
        await session.stop()

    asyncio.run(scenario())


def _controller(store, capture=None, models=None, exercises=None):
    models = models if models is not None else []

    def factory():
        model = ScriptedPoseModel()
        models.append(model)
        return model

    return SessionController(
        capture_device=capture or FakeCaptureDevice(),
        pose_model_factory=factory,
        template_store=store,
        renderer=RecordingRenderer(),
        exercises=exercises or [
            ExerciseAssignment(exercise_id="squat", target_reps=1),
            ExerciseAssignment(exercise_id="lunge", target_reps=2),
        ],
        restart_delay=0,
        frame_interval=0,
    )


def test_controller_rejects_second_start(store):
    async def scenario():
        controller = _controller(store)
        await controller.start()
        with pytest.raises(SessionBusyError):
            await controller.start(1)
        assert controller.index == 0
        await controller.stop()
        await controller.stop()

    asyncio.run(scenario())


def test_controller_next_and_prev(store):
    models = []

    async def scenario():
        controller = _controller(store, models=models)
        first = await controller.start()
        second = await controller.next()
        assert first.state == SessionState.STOPPED
        assert second.is_active
        assert controller.index == 1
        assert controller.get_state().exerciseId == "lunge"
        assert not controller.get_state().countingEnabled

        third = await controller.prev()
        assert controller.index == 0
        assert second.state == SessionState.STOPPED
        assert controller.get_state().countingEnabled
        await controller.stop()
        return third

    asyncio.run(scenario())
    assert len(models) == 3
    assert all(model.init_calls == 1 and model.dispose_calls == 1 for model in models)


def test_cannot_finish_until_last_exercise_complete(store):
    async def scenario():
        controller = _controller(store, exercises=[ExerciseAssignment(exercise_id="squat", target_reps=1)])
        session = await controller.start()
        assert controller.is_last
        assert not controller.can_advance
        assert await controller.next() is None
        assert session.is_active

        for phase in ["start", "peak", "start"]:
            session.counter.update(phase)
        assert controller.can_advance
        assert controller.get_state().isComplete
        assert controller.get_state().lastRepAt > 0

        await controller.next()
        state = controller.get_state()
        assert state.isFinished
        assert state.repCount == 1
        assert not state.isWorkoutActive
        assert session.state == SessionState.STOPPED

    asyncio.run(scenario())


def test_permission_denied_is_retryable(store):
    capture = FakeCaptureDevice(deny=True)

    async def scenario():
        controller = _controller(store, capture=capture)
        with pytest.raises(PermissionDeniedError):
            await controller.start()
        assert "denied" in controller.get_state().errorMessage
        assert not controller.is_busy

        capture.deny = False
        await controller.start()
        assert controller.get_state().errorMessage is None
        assert controller.get_state().isWorkoutActive
        await controller.stop()

    asyncio.run(scenario())


def test_start_index_out_of_range(store):
    async def scenario():
        controller = _controller(store)
        with pytest.raises(IndexError):
            await controller.start(5)
        assert not controller.is_busy

    asyncio.run(scenario())


def test_unreadable_template_disables_counting(tmp_path):
    row = {"exercise_id": "squat", "status": "ready",
           "phases": [{"name": "start", "angles": {"left_knee": "bent"}}]}
    (tmp_path / "squat.json").write_text(json.dumps(row), encoding="utf-8")
    model = ScriptedPoseModel([[visible_candidate()]] * 3)

    async def scenario():
        session = _session(TemplateStore(tmp_path), model)
        await session.start()
        assert session.is_active
        assert session.template is None
        assert not session.counter.counting_enabled
        await wait_for(lambda: session.frames_processed >= 3)
        await session.stop()
        return session

    session = asyncio.run(scenario())
    assert session.rep_count == 0
    assert all(correct for _, correct in session.renderer.frames[:3])


class FlakyRenderer(RecordingRenderer):
    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    def render_simple(self, keypoints, is_correct):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("canvas lost")
        super().render_simple(keypoints, is_correct)


def test_render_error_drops_only_that_frame(store):
    model = ScriptedPoseModel(_cycle(175, 175, 85, 178, 178))

    async def scenario():
        session = _session(store, model)
        session.renderer = FlakyRenderer()
        await session.start()
        await wait_for(lambda: model.exhausted and session.frames_processed >= 5)
        assert session.state == SessionState.RUNNING
        assert not session._loop_task.done()
        count = session.rep_count
        await session.stop()
        return session, count

    session, count = asyncio.run(scenario())
    assert count == 1
    assert len(session.renderer.frames) >= 4


class SlowInitPoseModel(ScriptedPoseModel):
    """Init waits until released; dispose always fails"""

    def __init__(self):
        super().__init__()
        self.init_started = asyncio.Event()
        self.init_release = asyncio.Event()

    async def init(self):
        self.init_calls += 1
        self.init_started.set()
        await self.init_release.wait()

    async def dispose(self):
        self.dispose_calls += 1
        raise RuntimeError("backend already gone")


def test_stop_during_init_tolerates_release_errors(store):
    async def scenario():
        model = SlowInitPoseModel()
        session = _session(store, model)
        starting = asyncio.ensure_future(session.start())
        await model.init_started.wait()
        await session.stop()
        model.init_release.set()
        await starting
        return session, model

    session, model = asyncio.run(scenario())
    assert session.state == SessionState.STOPPED
    assert not session.running
    assert session.release_count == 1
    assert model.dispose_calls == 2
