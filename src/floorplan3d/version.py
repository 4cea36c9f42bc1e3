"""Version information for floorplan3d."""

__version__ = "0.3.0"
__version_display__ = f"floorplan3d V{__version__}"
