from . import checksum, chunks, compression, encryption, stream_copy
from .chunks import ChunkSetReader, chunk_count, chunk_name, reassemble, split
from .stream_copy import ProgressTracker, copy_with_progress, queue_progress

__all__ = [
    'checksum',
    'chunks',
    'compression',
    'encryption',
    'stream_copy',
    'ChunkSetReader',
    'chunk_count',
    'chunk_name',
    'reassemble',
    'split',
    'ProgressTracker',
    'copy_with_progress',
    'queue_progress'
]
