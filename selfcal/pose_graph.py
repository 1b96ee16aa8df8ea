#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Pose Graph Store
================

Append-only keyframe poses and landmark tracks held in flat lists and
referenced by integer index. Nothing is ever removed: poses are mutated in
place by BA readback, tracks are only flagged as outliers.

Concurrency: the store itself is not locked. Every caller that mutates it,
or reads it to build an optimization problem, holds the context locks
(see SelfCalContext.locked).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from .camera import unit_rays
from .errors import NonMonotonicTimestampError


@dataclass
class Track:
    """Landmark: reference bearing + inverse depth, plus its observations."""

    id: int
    ref_pose: int
    center_px: np.ndarray
    ray: np.ndarray
    rho: float
    observations: Dict[int, np.ndarray] = field(default_factory=dict)
    is_outlier: bool = False
    tracked: bool = True
    opt_ids: Dict[int, int] = field(default_factory=dict)

    @property
    def num_good_tracked_frames(self) -> int:
        return len(self.observations)

    @property
    def last_pose(self) -> int:
        return max(self.observations) if self.observations else self.ref_pose


@dataclass
class Pose:
    """Keyframe body pose (T_wb), velocity, IMU bias [bg, ba] and camera snapshot."""

    t_wb: np.ndarray
    time: float
    v_w: np.ndarray = field(default_factory=lambda: np.zeros(3))
    b: np.ndarray = field(default_factory=lambda: np.zeros(6))
    cam_params: Optional[np.ndarray] = None
    tracks: List[int] = field(default_factory=list)
    longest_track: int = 1
    opt_ids: Dict[int, int] = field(default_factory=dict)


class PoseGraphStore:
    """Ordered keyframes and the tracks they own."""

    def __init__(self):
        self.poses: List[Pose] = []
        self.tracks: List[Track] = []

    @property
    def num_poses(self) -> int:
        return len(self.poses)

    def add_pose(self, pose: Pose) -> int:
        """Append a keyframe; timestamps must strictly increase."""
        if self.poses and not pose.time > self.poses[-1].time:
            raise NonMonotonicTimestampError(self.poses[-1].time, pose.time)
        self.poses.append(pose)
        return len(self.poses) - 1

    def add_track(self, ref_pose: int, center_px: np.ndarray, cam_params: np.ndarray,
                  rho: float) -> int:
        """Create a landmark referenced at ``ref_pose`` and observed there."""
        center_px = np.asarray(center_px, dtype=float).reshape(2,)
        track = Track(
            id=len(self.tracks),
            ref_pose=int(ref_pose),
            center_px=center_px.copy(),
            ray=unit_rays(cam_params, center_px)[0],
            rho=float(rho),
        )
        track.observations[int(ref_pose)] = center_px.copy()
        self.tracks.append(track)
        self.poses[ref_pose].tracks.append(track.id)
        return track.id

    def add_observation(self, track_id: int, pose_index: int, px: np.ndarray) -> None:
        self.tracks[track_id].observations[int(pose_index)] = np.asarray(px, dtype=float).reshape(2,).copy()

    def pose_tracks(self, pose_index: int) -> Iterator[Track]:
        for tid in self.poses[pose_index].tracks:
            yield self.tracks[tid]

    def longest_track_id(self) -> Optional[int]:
        """Currently tracked landmark with the most observations."""
        best, best_len = None, 0
        for t in self.tracks:
            if t.tracked and not t.is_outlier and t.num_good_tracked_frames > best_len:
                best, best_len = t.id, t.num_good_tracked_frames
        return best

    def update_longest_track(self, pose_index: int) -> int:
        """Record how far back the currently tracked landmarks reach."""
        length = 1
        for t in self.tracks:
            if t.tracked and pose_index in t.observations:
                length = max(length, pose_index - min(t.observations) + 1)
        self.poses[pose_index].longest_track = length
        return length

    def ba_pose_range(self, num_active_poses: int) -> Tuple[int, int]:
        """
        (start_pose, start_active_pose) for a BA over the last poses.

        Active poses are the last ``num_active_poses``. The range extends back
        so every landmark seen by an active pose keeps its reference pose.
        """
        n = len(self.poses)
        start_active = max(0, n - int(num_active_poses))
        start_pose = start_active
        for ii in range(start_active, n):
            start_pose = min(start_pose, max(0, ii - self.poses[ii].longest_track + 1))
        return start_pose, start_active

    def reset_outliers(self) -> None:
        for t in self.tracks:
            t.is_outlier = False

    def rebackproject(self, start_pose: int, cam_params: np.ndarray) -> int:
        """
        Refresh reference rays and per-pose camera snapshots after an
        intrinsics change, for every pose from ``start_pose`` onward.
        """
        count = 0
        for ii in range(max(0, start_pose), len(self.poses)):
            pose = self.poses[ii]
            pose.cam_params = np.asarray(cam_params, dtype=float).copy()
            for t in self.pose_tracks(ii):
                t.ray = unit_rays(cam_params, t.center_px)[0]
                count += 1
        return count
