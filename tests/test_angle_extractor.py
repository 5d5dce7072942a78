"""Tests for joint angle geometry and landmark conversion."""

import numpy as np
import pytest

from models.angle_extractor import (KEY_ANGLES, calculate_angle, candidate_to_landmarks,
                                    count_visible_keypoints, extract_angles, is_pose_visible)
from models.schemas import Keypoint, Landmark, PoseCandidate

from fakes import knee_candidate, visible_candidate


def _lm(x, y, visibility=1.0):
    return Landmark(x=x, y=y, visibility=visibility)


def test_right_angle_at_elbow():
    landmarks = {
        "left_shoulder": _lm(0, 0),
        "left_elbow": _lm(1, 0),
        "left_wrist": _lm(1, 1),
    }
    assert extract_angles(landmarks) == {"left_elbow": 90}


def test_straight_and_folded_limbs():
    assert calculate_angle(_lm(0, 0), _lm(1, 0), _lm(2, 0)) == 180
    assert calculate_angle(_lm(2, 0), _lm(1, 0), _lm(2, 0)) == 0


def test_reflex_angles_fold_back_below_180():
    # Rays at +135 and -135 degrees are 90 degrees apart the short way round
    vertex = _lm(0, 0)
    a = _lm(-1, 1)
    b = _lm(-1, -1)
    assert calculate_angle(a, vertex, b) == 90


def test_angle_symmetric_and_bounded():
    rng = np.random.RandomState(7)
    for _ in range(500):
        a, v, b = (_lm(*rng.uniform(-1, 2, size=2)) for _ in range(3))
        forward = calculate_angle(a, v, b)
        assert forward == calculate_angle(b, v, a)
        assert 0 <= forward <= 180
        assert isinstance(forward, int)


def test_rounds_to_nearest_degree():
    # Fractions round to the nearest whole degree
    vertex = _lm(0, 0)
    a = _lm(1, 0)
    for degrees, expected in [(45.6, 46), (45.4, 45), (0.4, 0), (179.7, 180)]:
        r = np.radians(degrees)
        b = _lm(np.cos(r), np.sin(r))
        assert calculate_angle(a, vertex, b) == expected


def test_low_visibility_joint_is_omitted():
    landmarks = {
        "left_shoulder": _lm(0, 0),
        "left_elbow": _lm(1, 0, visibility=0.49),
        "left_wrist": _lm(1, 1),
        "right_shoulder": _lm(0, 0),
        "right_elbow": _lm(1, 0, visibility=0.5),
        "right_wrist": _lm(1, 1),
    }
    angles = extract_angles(landmarks)
    assert "left_elbow" not in angles
    assert angles["right_elbow"] == 90


def test_missing_landmark_omits_joint_instead_of_zero():
    angles = extract_angles({"left_hip": _lm(0, 0), "left_knee": _lm(0, 1)})
    assert angles == {}


def test_all_joints_from_full_pose():
    landmarks = candidate_to_landmarks(visible_candidate(), 640, 480)
    assert set(extract_angles(landmarks)) == set(KEY_ANGLES)


def test_candidate_normalized_by_frame_size():
    candidate = PoseCandidate(keypoints=[Keypoint(name="nose", x=320, y=120, score=0.8)])
    landmarks = candidate_to_landmarks(candidate, 640, 480)
    assert landmarks["nose"] == Landmark(x=0.5, y=0.25, visibility=0.8)


def test_candidate_with_invalid_frame_size():
    with pytest.raises(ValueError):
        candidate_to_landmarks(visible_candidate(), 0, 480)


def test_knee_helper_produces_requested_angle():
    landmarks = candidate_to_landmarks(knee_candidate(135), 640, 480)
    assert extract_angles(landmarks) == {"left_knee": 135}


def test_visibility_heuristic():
    assert is_pose_visible(visible_candidate(score=0.3))
    assert not is_pose_visible(visible_candidate(score=0.29))
    # Only hip, knee and ankle are confident
    assert count_visible_keypoints(knee_candidate(120)) == 3
    assert not is_pose_visible(knee_candidate(120))
