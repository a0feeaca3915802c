"""
Base worker class for HowTube pipeline workers.

This module provides the abstract base class that workers inherit from,
ensuring consistent error handling, logging, and execution patterns.
"""

import logging
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Optional


class WorkerStatus(Enum):
    """Status constants for worker execution results."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class BaseWorker(ABC):
    """
    Abstract base class for async workers.

    Provides common functionality for logging, error handling and execution
    tracking while enforcing a consistent interface.

    Attributes:
        name: Human-readable name for the worker
        logger: Configured logger instance
    """

    def __init__(self, name: str, log_level: str = "INFO") -> None:
        """
        Initialize the base worker.

        Args:
            name: Human-readable name for this worker
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        """
        self.name = name
        self.logger = self._setup_logger(log_level)
        self._execution_start_time: Optional[float] = None

    def _setup_logger(self, log_level: str) -> logging.Logger:
        """Set up logger with consistent formatting for this worker."""
        logger = logging.getLogger(f"worker.{self.name}")

        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        logger.setLevel(getattr(logging, str(log_level).upper(), logging.INFO))
        return logger

    @contextmanager
    def _execution_timer(self):
        """Context manager to track execution time."""
        self._execution_start_time = time.time()
        try:
            yield
        finally:
            if self._execution_start_time:
                execution_time = time.time() - self._execution_start_time
                self.log_with_context(
                    f"Execution completed in {execution_time:.2f}s",
                    level="INFO"
                )

    def log_with_context(
        self,
        message: str,
        level: str = "INFO",
        extra_context: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log message with worker context and optional additional context.

        Args:
            message: Log message
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            extra_context: Additional context to include in log
        """
        context_msg = f"[{self.name}] {message}"

        if extra_context:
            context_parts = [f"{k}={v}" for k, v in extra_context.items()]
            context_msg += f" | Context: {', '.join(context_parts)}"

        log_method = getattr(self.logger, level.lower())
        log_method(context_msg)

    def get_execution_time(self) -> Optional[float]:
        if self._execution_start_time:
            return time.time() - self._execution_start_time
        return None

    async def run(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Main execution method with built-in error handling and timing.

        Returns:
            Standardized result dictionary with status, data, and metadata
        """
        self.log_with_context("Starting execution", extra_context={"input_keys": list(input_data.keys())})

        try:
            with self._execution_timer():
                if not self.validate_input(input_data):
                    return self._create_result(
                        status=WorkerStatus.FAILED,
                        error="Input validation failed",
                    )

                result = await self.execute(input_data)
                if not isinstance(result, dict):
                    result = {"data": result}

                return self._create_result(status=WorkerStatus.SUCCESS, data=result)

        except Exception as e:
            self.log_with_context(f"Execution failed: {str(e)}", level="ERROR")
            return self._create_result(
                status=WorkerStatus.FAILED,
                error=str(e),
                error_details=self.handle_error(e),
            )

    def _create_result(
        self,
        status: WorkerStatus,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create standardized result dictionary."""
        result = {
            "status": status.value,
            "worker": self.name,
            "timestamp": time.time(),
            "execution_time": self.get_execution_time()
        }

        if data is not None:
            result["data"] = data
        if error is not None:
            result["error"] = error
        if error_details is not None:
            result["error_details"] = error_details

        return result

    @abstractmethod
    def validate_input(self, input_data: Dict[str, Any]) -> bool:
        """Validate input data before execution."""
        pass

    @abstractmethod
    async def execute(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Execute the main worker logic.

        Raises:
            Exception: On execution failure
        """
        pass

    @abstractmethod
    def handle_error(self, error: Exception) -> Dict[str, Any]:
        """Return error context for a failed execution."""
        pass
