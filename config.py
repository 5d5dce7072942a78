import argparse
from pathlib import Path
from typing import List, Optional

class Config:
    """
    Central configuration manager for the rehab pose counter.
    Handles command-line argument parsing, debug modes, and counting parameters.
    """

    def __init__(self):
        # Application mode settings
        self.debug_mode: str = "debug_no_save"
        self.save_frames: bool = False
        self.debug_dir: Optional[Path] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000

        # Pose model settings
        self.pose_model_weights: str = "yolov8n-pose.pt"
        self.model_conf_threshold: float = 0.25  # Minimum pose score for a detection
        self.image_width_limit: int = 640  # Resize frames larger than this before inference
        self.camera_index: int = 0

        # Angle extraction thresholds
        self.min_visibility: float = 0.5  # Every landmark of a joint triple must reach this
        self.visibility_confidence: float = 0.3  # Keypoint score counted as "visible" without a template
        self.min_visible_landmarks: int = 8

        # Phase matching and repetition counting
        self.match_threshold: float = 0.5
        self.default_tolerance_degrees: float = 30
        self.default_rep_sequence: List[str] = ["start", "peak", "start"]
        self.rep_cooldown: float = 0.8  # Seconds before the phase log is cleared after a rep
        self.completion_delay: float = 2.0  # Seconds the completion state is shown before auto-stop
        self.restart_delay: float = 0.1  # Settle time between next/prev stop and restart
        self.frame_interval: float = 1 / 30

        # Template extraction
        self.max_template_samples: int = 10
        self.default_sample_interval_ms: float = 500
        self.seek_settle_delay: float = 0.1
        self.seek_timeout: float = 5.0
        self.templates_dir: Path = Path("templates")

        # Human-readable descriptions for each debug mode
        self.mode_descriptions = {
            "debug": "Debug Mode (with frame saving)",
            "debug_no_save": "Debug Mode (without frame saving)",
            "non_debug": "Non-Debug Mode (minimal logging)"
        }

    def setup_from_args(self, argv: Optional[List[str]] = None):
        """
        Parse command line arguments and configure application settings.
        Creates debug directory if frame saving is enabled.
        """
        parser = argparse.ArgumentParser(description="Rehab Pose Counter Backend")
        parser.add_argument(
            "--mode",
            choices=["debug", "debug_no_save", "non_debug"],
            default="debug_no_save",
            help="Debug mode setting"
        )
        parser.add_argument("--host", default=self.host, help="Bind address")
        parser.add_argument("--port", type=int, default=self.port, help="Bind port")
        parser.add_argument("--camera", type=int, default=self.camera_index, help="Capture device index")
        parser.add_argument(
            "--templates-dir",
            type=Path,
            default=self.templates_dir,
            help="Directory holding extracted movement templates"
        )
        args = parser.parse_args(argv)

        self.debug_mode = args.mode
        self.save_frames = (self.debug_mode == "debug")
        self.host = args.host
        self.port = args.port
        self.camera_index = args.camera
        self.templates_dir = args.templates_dir

        # Create debug frame directory if needed
        if self.save_frames:
            self.debug_dir = Path("debug_frames")
            self.debug_dir.mkdir(exist_ok=True)

    @property
    def mode_description(self) -> str:
        """Get human-readable description of current mode"""
        return self.mode_descriptions[self.debug_mode]

# Global configuration instance - import this in other modules
config = Config()
