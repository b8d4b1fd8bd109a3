"""Keyframes, map points, covisibility graph, keyframe database, local mapping and loop correction for visual SLAM."""

__version__ = "0.1.0"