"""ZIM Transport - resumable, verified migration payload transfer"""

__version__ = "1.0.0"
