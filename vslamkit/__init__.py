"""Geometry for visual SLAM: EPnP and RANSAC pose, Sim3 alignment, contour region properties and trajectory export."""

__version__ = "0.1.0"

__all__ = ["epnp", "pnp_ransac", "sim3", "regionprops", "trajectory"]