"""Render Watch: live progress for image-sequence renders.

Watches a render output folder for new numbered frames, works out how
many are complete and streams progress / ETA snapshots to every
connected viewer.
"""

__version__ = "1.0.0"
__app_name__ = "Render Watch"
