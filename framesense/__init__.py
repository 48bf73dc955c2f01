"""framesense - cost-aware cache and routing core for image question answering."""

__version__ = "0.1.0"
