"""Editor file-focus context."""
from .open_files import BufferEvent, OpenFileTracker, TrackedFile

__all__ = ["BufferEvent", "OpenFileTracker", "TrackedFile"]
