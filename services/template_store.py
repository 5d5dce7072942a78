import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from config import config
from models.schemas import (Keyframe, KeyframeLogEntry, Phase, Template,
                            TemplateRecord, TemplateStatus)
from utils.errors import InvalidTemplateError, TemplateNotFoundError
from utils.logging_utils import logger

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class TemplateStore:
    """
    File-backed template store, one JSON row per exercise identity plus an
    optional keyframe log for diagnostics.
    """

    def __init__(self, directory: Optional[Path] = None):
        self.directory = Path(directory or config.templates_dir)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, exercise_id: str, suffix: str = ".json") -> Path:
        if not _SAFE_ID.match(exercise_id) or exercise_id.startswith("."):
            raise ValueError(f"Invalid exercise id: {exercise_id!r}")
        return self.directory / f"{exercise_id}{suffix}"

    def get_record(self, exercise_id: str) -> Optional[TemplateRecord]:
        path = self._path(exercise_id)
        if not path.exists():
            return None
        return TemplateRecord.model_validate_json(path.read_text(encoding="utf-8"))

    def _write(self, record: TemplateRecord):
        record.updated_at = datetime.now(timezone.utc).isoformat()
        self._path(record.exercise_id).write_text(record.model_dump_json(indent=2), encoding="utf-8")

    def create_pending(self, exercise_id: str) -> TemplateRecord:
        """Register an exercise whose template is about to be extracted"""
        record = self.get_record(exercise_id) or TemplateRecord(exercise_id=exercise_id)
        record.status = TemplateStatus.PROCESSING
        self._write(record)
        logger.info(f"Template for {exercise_id} marked processing")
        return record

    def update(self, exercise_id: str,
               phases: List[Phase],
               tolerance_degrees: float,
               rep_sequence: List[str],
               status: TemplateStatus) -> TemplateRecord:
        record = self.get_record(exercise_id) or TemplateRecord(exercise_id=exercise_id)
        record.phases = list(phases)
        record.tolerance_degrees = tolerance_degrees
        record.rep_sequence = list(rep_sequence)
        record.status = status
        self._write(record)
        logger.info(f"Template for {exercise_id} saved with status {status.value}")
        return record

    def set_status(self, exercise_id: str, status: TemplateStatus) -> TemplateRecord:
        record = self.get_record(exercise_id) or TemplateRecord(exercise_id=exercise_id)
        record.status = status
        self._write(record)
        return record

    def save_template(self, exercise_id: str, template: Template,
                      keyframes: Optional[List[Keyframe]] = None) -> TemplateRecord:
        """Store an extracted template as ready, with an optional keyframe log"""
        record = self.update(
            exercise_id,
            phases=template.phases,
            tolerance_degrees=template.tolerance_degrees,
            rep_sequence=template.rep_sequence,
            status=TemplateStatus.READY
        )
        if keyframes:
            self.save_keyframes(exercise_id, keyframes)
        return record

    def save_keyframes(self, exercise_id: str, keyframes: List[Keyframe]):
        entries = [
            KeyframeLogEntry(
                exercise_id=exercise_id,
                timestamp_seconds=kf.timestamp,
                angles=kf.angles,
                landmarks=kf.landmarks
            ).model_dump()
            for kf in keyframes
        ]
        self._path(exercise_id, ".keyframes.json").write_text(json.dumps(entries, indent=2), encoding="utf-8")
        logger.info(f"Saved {len(entries)} keyframes for {exercise_id}")

    def get(self, exercise_id: str) -> Template:
        """
        Load the ready template for an exercise.
        Raises TemplateNotFoundError when absent or not ready, InvalidTemplateError when unusable.
        """
        try:
            record = self.get_record(exercise_id)
        except (ValidationError, json.JSONDecodeError) as e:
            raise InvalidTemplateError(f"Stored template for exercise {exercise_id} is unreadable: {e}") from e
        if record is None or record.status != TemplateStatus.READY:
            raise TemplateNotFoundError(f"No ready template for exercise {exercise_id}")

        try:
            return Template(
                phases=record.phases,
                rep_sequence=record.rep_sequence or list(config.default_rep_sequence),
                tolerance_degrees=record.tolerance_degrees or config.default_tolerance_degrees
            )
        except ValidationError as e:
            raise InvalidTemplateError(f"Template for exercise {exercise_id} is invalid: {e}") from e
