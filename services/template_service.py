from typing import Callable, Optional

from models.schemas import TemplateRecord, TemplateStatus
from models.template_builder import OpenCVVideoSource, TemplateBuilder, VideoSource
from services.pose_service import PoseModel
from services.template_store import TemplateStore
from utils.errors import TemplateExtractionError
from utils.logging_utils import logger


async def extract_template(exercise_id: str,
                           video: VideoSource,
                           store: TemplateStore,
                           pose_model: PoseModel,
                           sample_interval_ms: Optional[float] = None,
                           **builder_options) -> TemplateRecord:
    """
    Build the template for an exercise from its reference video and persist it.

    The row is marked processing first. It only becomes ready once a full
    template was derived; any failure leaves it failed and re-raises.
    """
    store.create_pending(exercise_id)
    try:
        await pose_model.init()
        builder = TemplateBuilder(pose_model, **builder_options)
        template, keyframes = await builder.build(video, sample_interval_ms)
    except Exception as e:
        logger.error(f"Template extraction for {exercise_id} failed: {e}")
        store.set_status(exercise_id, TemplateStatus.FAILED)
        raise
    finally:
        await pose_model.dispose()
        video.close()

    return store.save_template(exercise_id, template, keyframes)


async def extract_template_from_file(exercise_id: str,
                                     video_path: str,
                                     store: TemplateStore,
                                     pose_model_factory: Callable[[], PoseModel],
                                     sample_interval_ms: Optional[float] = None) -> TemplateRecord:
    try:
        video = OpenCVVideoSource(video_path)
    except TemplateExtractionError:
        store.set_status(exercise_id, TemplateStatus.FAILED)
        raise
    return await extract_template(exercise_id, video, store, pose_model_factory(), sample_interval_ms)
