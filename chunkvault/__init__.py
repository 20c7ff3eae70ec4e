"""Content-defined chunking, chunk encryption with erasure coding, and threaded chunk transfer."""

__version__ = "0.1.0"

__all__ = [
    "benchmark",
    "chunk",
    "chunkdownloader",
    "chunkmaker",
    "chunkoperator",
    "chunkuploader",
    "config",
    "highwayhash",
    "reedsolomon",
    "storage",
]