# main.py
import os
import shutil
import tempfile
import time
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from config import config
from models.schemas import StartSessionRequest, TemplateRecord, WorkoutState
from services.capture_service import OpenCVCaptureDevice
from services.pose_service import YoloPoseService
from services.renderer import OpenCVRenderer
from services.session_controller import SessionController
from services.template_service import extract_template_from_file
from services.template_store import TemplateStore
from utils.errors import (InitializationError, PermissionDeniedError,
                          SessionBusyError, TemplateExtractionError)
from utils.logging_utils import logger

logger.info(f"Starting in: {config.mode_description}")

app = FastAPI(title=f"Rehab Pose Counter - {config.mode_description}")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)

_template_store: Optional[TemplateStore] = None
_session_controller: Optional[SessionController] = None


def get_template_store() -> TemplateStore:
    global _template_store
    if _template_store is None:
        _template_store = TemplateStore(config.templates_dir)
    return _template_store


def get_session_controller(store: TemplateStore = Depends(get_template_store)) -> SessionController:
    global _session_controller
    if _session_controller is None:
        _session_controller = SessionController(
            capture_device=OpenCVCaptureDevice(config.camera_index),
            pose_model_factory=YoloPoseService,
            template_store=store,
            renderer=OpenCVRenderer()
        )
    return _session_controller


@app.on_event("shutdown")
async def shutdown_event():
    """Release the camera and model if a session is still running"""
    if _session_controller is not None:
        await _session_controller.stop()


@app.get("/health")
async def health_check():
    """Simple health check endpoint for service monitoring"""
    return {"status": "healthy", "timestamp": time.time()}


@app.post("/templates/{exercise_id}/extract", response_model=TemplateRecord)
async def extract_exercise_template(
    exercise_id: str,
    file: UploadFile = File(...),
    sample_interval_ms: float = Form(config.default_sample_interval_ms),
    store: TemplateStore = Depends(get_template_store)
):
    """
    Derive a movement template from an uploaded reference video.
    The template row stays non-ready unless extraction succeeds.
    """
    if sample_interval_ms <= 0:
        raise HTTPException(status_code=400, detail="sample_interval_ms must be positive")

    suffix = os.path.splitext(file.filename or "")[1] or ".mp4"
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as tmp:
        shutil.copyfileobj(file.file, tmp)
        video_path = tmp.name

    try:
        return await extract_template_from_file(
            exercise_id, video_path, store, YoloPoseService, sample_interval_ms
        )
    except TemplateExtractionError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except InitializationError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        os.unlink(video_path)


@app.get("/templates/{exercise_id}", response_model=TemplateRecord)
async def get_exercise_template(exercise_id: str, store: TemplateStore = Depends(get_template_store)):
    try:
        record = store.get_record(exercise_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if record is None:
        raise HTTPException(status_code=404, detail=f"No template for exercise {exercise_id}")
    return record


@app.post("/session/start", response_model=WorkoutState)
async def start_session(request: StartSessionRequest,
                        controller: SessionController = Depends(get_session_controller)):
    """Start detection for the given exercise plan, optionally at a specific exercise"""
    try:
        if not controller.is_busy:
            controller.set_exercises(request.exercises)
        await controller.start(request.index)
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except InitializationError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except (ValueError, IndexError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return controller.get_state()


@app.post("/session/stop", response_model=WorkoutState)
async def stop_session(controller: SessionController = Depends(get_session_controller)):
    await controller.stop()
    return controller.get_state()


@app.post("/session/next", response_model=WorkoutState)
async def next_exercise(controller: SessionController = Depends(get_session_controller)):
    if not controller.can_advance:
        raise HTTPException(status_code=409, detail="Complete the current exercise first")
    try:
        await controller.next()
    except (PermissionDeniedError, InitializationError) as e:
        raise HTTPException(status_code=503, detail=str(e))
    return controller.get_state()


@app.post("/session/prev", response_model=WorkoutState)
async def previous_exercise(controller: SessionController = Depends(get_session_controller)):
    try:
        await controller.prev()
    except (PermissionDeniedError, InitializationError) as e:
        raise HTTPException(status_code=503, detail=str(e))
    return controller.get_state()


@app.get("/session/state", response_model=WorkoutState)
async def session_state(controller: SessionController = Depends(get_session_controller)):
    return controller.get_state()
