# session_controller.py
"""
Per-frame orchestration of an exercise session.

An ExerciseSession owns everything acquired for one exercise (capture stream,
pose model, loaded template, repetition counter) and releases all of it on
every exit path. The SessionController walks the patient's exercise list and
guarantees at most one session is active at a time.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from config import config
from models.angle_extractor import (candidate_to_landmarks, extract_angles,
                                    is_pose_visible, scale_keypoints)
from models.phase_matcher import match_pose_to_phase
from models.rep_counter import RepetitionCounter
from models.schemas import ExerciseAssignment, PhaseMatch, Template, WorkoutState
from services.capture_service import CaptureDevice, CaptureStream
from services.pose_service import PoseModel
from services.renderer import Renderer
from services.template_store import TemplateStore
from utils.errors import (InitializationError, PermissionDeniedError,
                          SessionBusyError, TemplateError)
from utils.logging_utils import RateLimitedLogger, logger
from utils.motivation import get_motivation_text


class SessionState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPED = "stopped"


class ExerciseSession:
    """
    One exercise session. Single use: start() once, stop() any number of times.

    The running flag is the only cancellation mechanism for the detection
    loop. Once it is cleared no further model calls are issued, no further
    frames are scheduled, and a result from an estimate already in flight is
    discarded.
    """

    def __init__(self,
                 assignment: ExerciseAssignment,
                 capture_device: CaptureDevice,
                 pose_model: PoseModel,
                 template_store: TemplateStore,
                 renderer: Renderer,
                 clock: Callable[[], float] = time.monotonic,
                 frame_interval: Optional[float] = None,
                 completion_delay: Optional[float] = None,
                 rep_cooldown: Optional[float] = None,
                 on_rep: Optional[Callable[[int], None]] = None,
                 capture_constraints: Optional[Dict[str, Any]] = None):
        self.assignment = assignment
        self.capture_device = capture_device
        self.pose_model = pose_model
        self.template_store = template_store
        self.renderer = renderer
        self.clock = clock
        self.frame_interval = config.frame_interval if frame_interval is None else frame_interval
        self.completion_delay = config.completion_delay if completion_delay is None else completion_delay
        self.rep_cooldown = config.rep_cooldown if rep_cooldown is None else rep_cooldown
        self.on_rep = on_rep
        self.capture_constraints = capture_constraints

        self.state = SessionState.IDLE
        self.running = False
        self.stream: Optional[CaptureStream] = None
        self.template: Optional[Template] = None
        self.counter: Optional[RepetitionCounter] = None
        self.last_match = PhaseMatch()
        self.is_correct = False
        self.frames_processed = 0
        self.release_count = 0
        self.display_size = (0, 0)

        self._released = False
        self._loop_task: Optional[asyncio.Task] = None
        self._completion_handle: Optional[asyncio.TimerHandle] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._warnings = RateLimitedLogger(logger, clock=clock)

    @property
    def exercise_id(self) -> str:
        return self.assignment.exercise_id

    @property
    def is_active(self) -> bool:
        return self.state in (SessionState.INITIALIZING, SessionState.RUNNING)

    @property
    def rep_count(self) -> int:
        return self.counter.count if self.counter else 0

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
        return False

    async def start(self):
        """
        Acquire the capture stream, initialize the pose model, load the
        template and launch the detection loop. Everything acquired so far is
        released again if any step fails.
        """
        if self.state != SessionState.IDLE:
            raise SessionBusyError(f"Session for {self.exercise_id} already {self.state.value}")

        self.state = SessionState.INITIALIZING
        logger.info(f"Starting session for exercise {self.exercise_id} "
                    f"(target {self.assignment.target_reps} reps)")
        try:
            self.stream = await self.capture_device.get_stream(self.capture_constraints)
            await self.pose_model.init()
            self.template = self._load_template()
            self.counter = RepetitionCounter(
                self.template,
                self.assignment.target_reps,
                cooldown=self.rep_cooldown,
                clock=self.clock,
                on_rep=self._handle_rep
            )
            self.display_size = (self.stream.width, self.stream.height)
            self.renderer.resize(*self.display_size)
        except Exception as e:
            logger.error(f"Session initialization failed: {e}")
            await self.stop()
            raise

        if self._released:
            # stop() ran while initializing; drop whatever was acquired after it
            await self._release_resources()
            return

        self.running = True
        self.state = SessionState.RUNNING
        self._loop_task = asyncio.create_task(self._run())

    def _load_template(self) -> Optional[Template]:
        """Snapshot the exercise's template for the session's lifetime"""
        try:
            template = self.template_store.get(self.exercise_id)
        except TemplateError as e:
            logger.warning(f"{e}; falling back to visibility-only feedback, counting disabled")
            return None
        logger.info(f"Loaded template for {self.exercise_id}: "
                    f"{[phase.name for phase in template.phases]}, "
                    f"sequence {template.rep_sequence}, tolerance {template.tolerance_degrees}")
        return template

    async def _run(self):
        while self.running:
            frame = None
            try:
                frame = await self.stream.read()
            except Exception as e:
                logger.warning(f"Frame capture failed: {e}")

            if frame is not None and self.running:
                try:
                    await self.process_frame(frame)
                except Exception as e:
                    logger.warning(f"Dropped frame {self.frames_processed}: {e}")

            if not self.running:
                break
            await asyncio.sleep(self.frame_interval)

    async def process_frame(self, frame) -> Optional[bool]:
        """
        Run one frame through estimation, matching and counting, then draw it.
        Returns the correctness drawn, or None when the frame was dropped.
        """
        try:
            candidates = await self.pose_model.estimate(frame)
        except Exception as e:
            logger.warning(f"Pose estimation failed on frame {self.frames_processed}: {e}")
            return None

        if not self.running:
            return None

        self.frames_processed += 1
        height, width = frame.shape[:2]

        if not candidates:
            self.is_correct = False
            self.counter.tick()
            self.renderer.render_simple([], False)
            return False

        candidate = candidates[0]
        if self.counter.counting_enabled:
            landmarks = candidate_to_landmarks(candidate, width, height)
            self.last_match = match_pose_to_phase(extract_angles(landmarks), self.template)
            self.is_correct = self.last_match.is_match
            counted = self.counter.update(self.last_match.phase)
            if counted and self.counter.is_complete:
                self._schedule_completion()
        else:
            self._warnings.warning(
                "no_template",
                f"No template for exercise {self.exercise_id}, repetition counting disabled"
            )
            self.counter.update(None)
            self.is_correct = is_pose_visible(candidate)

        # Keypoints are in frame pixels; the renderer was sized from the stream
        scale_x = self.display_size[0] / width if self.display_size[0] else 1.0
        scale_y = self.display_size[1] / height if self.display_size[1] else 1.0
        self.renderer.render_simple(scale_keypoints(candidate.keypoints, scale_x, scale_y), self.is_correct)
        return self.is_correct

    def _handle_rep(self, count: int):
        self.renderer.trigger_celebration()
        if self.on_rep is not None:
            self.on_rep(count)

    def _schedule_completion(self):
        if self._completion_handle is not None:
            return
        logger.info(f"Target of {self.assignment.target_reps} reached, "
                    f"stopping in {self.completion_delay:.1f}s")
        loop = asyncio.get_running_loop()
        self._completion_handle = loop.call_later(self.completion_delay, self._complete)

    def _complete(self):
        self._completion_handle = None
        self._stop_task = asyncio.ensure_future(self.stop())

    async def stop(self):
        """
        Stop the loop and release every resource. Idempotent: only the first
        call has an effect, later calls return immediately.
        """
        if self._released:
            return
        self._released = True
        self.running = False

        if self._completion_handle is not None:
            self._completion_handle.cancel()
            self._completion_handle = None

        task = self._loop_task
        self._loop_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        await self._release_resources()

        if self.counter is not None:
            self.counter.reset()
        self.release_count += 1
        self.state = SessionState.STOPPED
        logger.info(f"Session for {self.exercise_id} stopped")

    async def _release_resources(self):
        if self.stream is not None:
            try:
                self.stream.stop()
            except Exception as e:
                logger.error(f"Error stopping capture stream: {e}")
        try:
            await self.pose_model.dispose()
        except Exception as e:
            logger.error(f"Error disposing pose model: {e}")


class SessionController:
    """
    Multi-exercise session coordinator.
    Handles start/stop lifecycle, exercise navigation, and the state snapshot sent to clients.
    """

    def __init__(self,
                 capture_device: CaptureDevice,
                 pose_model_factory: Callable[[], PoseModel],
                 template_store: TemplateStore,
                 renderer: Renderer,
                 exercises: Optional[List[ExerciseAssignment]] = None,
                 restart_delay: Optional[float] = None,
                 **session_options):
        self.capture_device = capture_device
        self.pose_model_factory = pose_model_factory
        self.template_store = template_store
        self.renderer = renderer
        self.exercises: List[ExerciseAssignment] = list(exercises or [])
        self.restart_delay = config.restart_delay if restart_delay is None else restart_delay
        self.session_options = session_options

        self.index = 0
        self.session: Optional[ExerciseSession] = None
        self.error_message: Optional[str] = None
        self.finished = False
        self.best_reps: Dict[int, int] = {}
        self.last_rep_at = 0
        self._starting = False

    def set_exercises(self, exercises: List[ExerciseAssignment]):
        if self.is_busy:
            raise SessionBusyError("Cannot change exercises while a session is active")
        self.exercises = list(exercises)
        self.index = 0
        self.best_reps.clear()
        self.finished = False

    @property
    def is_busy(self) -> bool:
        return self._starting or (self.session is not None and self.session.is_active)

    @property
    def current(self) -> Optional[ExerciseAssignment]:
        if not self.exercises:
            return None
        return self.exercises[self.index]

    @property
    def is_last(self) -> bool:
        return self.index == len(self.exercises) - 1

    def reps_for(self, index: int) -> int:
        live = self.session.rep_count if self.session is not None and self.index == index else 0
        return max(live, self.best_reps.get(index, 0))

    @property
    def current_complete(self) -> bool:
        current = self.current
        return current is not None and self.reps_for(self.index) >= current.target_reps

    @property
    def can_advance(self) -> bool:
        """Moving past the final exercise is only allowed once its target is reached"""
        if not self.exercises or self.finished:
            return False
        if not self.is_last:
            return True
        return self.current_complete

    def _record_rep(self, index: int, count: int):
        self.best_reps[index] = max(self.best_reps.get(index, 0), count)
        self.last_rep_at = int(time.time() * 1000)

    async def start(self, index: Optional[int] = None) -> ExerciseSession:
        """
        Start a session for the exercise at index (default: current one).
        Rejected with SessionBusyError while another session is active or initializing.
        """
        if self.is_busy:
            raise SessionBusyError("A session is already active")
        if not self.exercises:
            raise ValueError("No exercises assigned")
        if index is not None:
            if not 0 <= index < len(self.exercises):
                raise IndexError(f"Exercise index {index} out of range")
            self.index = index

        self._starting = True
        self.error_message = None
        self.finished = False
        self.best_reps.pop(self.index, None)
        current_index = self.index
        try:
            session = ExerciseSession(
                self.exercises[current_index],
                self.capture_device,
                self.pose_model_factory(),
                self.template_store,
                self.renderer,
                on_rep=lambda count: self._record_rep(current_index, count),
                **self.session_options
            )
            self.session = session
            await session.start()
            return session
        except PermissionDeniedError as e:
            self.error_message = f"Camera access denied: {e}"
            raise
        except InitializationError as e:
            self.error_message = f"Pose model failed to initialize: {e}"
            raise
        finally:
            self._starting = False

    async def stop(self):
        if self.session is not None:
            await self.session.stop()

    async def _move_to(self, index: int) -> ExerciseSession:
        await self.stop()
        self.index = index
        await asyncio.sleep(self.restart_delay)
        return await self.start()

    async def next(self) -> Optional[ExerciseSession]:
        """
        Advance to the next exercise and start it. On the final exercise this
        finishes the workout, but only once its target has been reached.
        """
        if not self.can_advance:
            logger.warning("Cannot advance: current exercise not complete")
            return None
        if self.is_last:
            await self.stop()
            self.finished = True
            logger.info("Workout finished")
            return None
        return await self._move_to(self.index + 1)

    async def prev(self) -> Optional[ExerciseSession]:
        if not self.exercises or self.index == 0:
            logger.warning("Already at the first exercise")
            return None
        return await self._move_to(self.index - 1)

    def get_state(self) -> WorkoutState:
        """Build the snapshot sent to clients and drawn by the UI"""
        current = self.current
        session = self.session
        rep_count = self.reps_for(self.index)
        target = current.target_reps if current else 0
        active = session is not None and session.is_active

        return WorkoutState(
            repCount=rep_count,
            targetReps=target,
            exerciseId=current.exercise_id if current else None,
            exerciseIndex=self.index,
            totalExercises=len(self.exercises),
            phase=session.last_match.phase if active else None,
            similarity=session.last_match.similarity if active else 0.0,
            isCorrect=session.is_correct if active else False,
            countingEnabled=bool(active and session.counter and session.counter.counting_enabled),
            motivation=get_motivation_text(rep_count, target),
            isWorkoutActive=active,
            isComplete=self.current_complete,
            canAdvance=self.can_advance,
            isFinished=self.finished,
            errorMessage=self.error_message,
            framesProcessed=session.frames_processed if session else 0,
            lastRepAt=self.last_rep_at
        )
