"""
Core module for HowTube
"""

__all__ = [
    'audio',
    'broadcaster',
    'database',
    'downloader',
    'error_handling',
    'guide_generator',
    'guide_storage',
    'job_store',
    'models',
    'storage_paths',
    'transcription',
    'url_parser',
]
