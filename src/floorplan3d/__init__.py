"""
floorplan3d - turn a 2D floorplan image into a viewable 3D model.

The heavy lifting (segmentation, depth estimation, mesh reconstruction and
diffusion rendering) is done by hosted inference services. This package
coordinates those calls per uploaded image, polls the long-running mesh job,
and keeps the intermediate artifacts around so later steps can reuse them.
"""

from floorplan3d.version import __version__, __version_display__

__all__ = ["__version__", "__version_display__"]
