"""Binary feature matching, EPnP pose estimation with RANSAC and Sim3 alignment."""

__version__ = "0.1.0"

__all__ = [
    "bow_matching",
    "epnp",
    "matching",
    "pnp_ransac",
    "projection_matching",
    "sim3",
]