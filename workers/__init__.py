"""
Workers module for HowTube
"""

from workers.base import BaseWorker, WorkerStatus
from workers.orchestrator import PipelineOrchestrator, PipelineStage, build_orchestrator

__all__ = [
    'BaseWorker',
    'WorkerStatus',
    'PipelineOrchestrator',
    'PipelineStage',
    'build_orchestrator',
]
