#!/usr/bin/env python3
"""
Base Component Class for the block storage components

Provides the pieces every component shares: merged configuration, a named
logger, and a bounded history of the operations it ran with their outcome.
"""

import datetime
import json
import logging
import traceback
import uuid
from collections import deque
from contextlib import contextmanager
from typing import Any, Deque, Dict, Iterator, List, Optional, TypedDict


class ComponentConfig(TypedDict, total=False):
    """TypedDict for component configuration."""
    component_id: str
    log_level: str


class StatusData(TypedDict):
    """TypedDict for component execution status."""
    success: bool
    error: Optional[str]
    message: Optional[str]


class OperationRecord(TypedDict):
    """TypedDict for one tracked operation."""
    operation: str
    start: str
    end: Optional[str]
    success: bool
    error: Optional[str]
    details: Dict[str, Any]


class ExecutionSummary(TypedDict):
    """TypedDict for execution summary."""
    component_id: str
    component_name: str
    status: StatusData
    operations_count: int
    failed_operations: List[str]
    last_operation: Optional[OperationRecord]


HISTORY_SIZE = 100


class BaseComponent:
    """
    Base class for all components in the package.

    Subclasses set DEFAULT_CONFIG and wrap each public operation in
    ``with self.track("name", **details):`` so failures are logged, recorded
    in the status and re-raised.
    """

    DEFAULT_CONFIG: Dict[str, Any] = {}

    def __init__(self, config: Dict[str, Any], logger: Optional[logging.Logger] = None) -> None:
        """
        Initialize a new component instance.

        Args:
            config: Configuration dictionary for the component
            logger: Optional logger instance (if not provided, a new one will be created)
        """
        # Merge provided config with defaults using the dict merge operator
        self.config = self.DEFAULT_CONFIG | dict(config)
        self.component_id: str = self.config.get('component_id') or str(uuid.uuid4())
        self.component_name: str = self.__class__.__name__

        self.logger: logging.Logger = logger or self._setup_logger()

        self.operations: Deque[OperationRecord] = deque(maxlen=HISTORY_SIZE)
        self.status: StatusData = {
            'success': True,
            'error': None,
            'message': None
        }

        self.logger.debug(f"Initialized {self.component_name} (ID: {self.component_id})")

    def _setup_logger(self) -> logging.Logger:
        """
        Set up a logger for this component.

        Returns:
            A configured logger instance
        """
        logger = logging.getLogger(self.component_name)
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.setLevel(getattr(logging, str(self.config.get('log_level', 'INFO')).upper(), logging.INFO))
        return logger

    @contextmanager
    def track(self, operation: str, **details: Any) -> Iterator[OperationRecord]:
        """
        Record one operation: timestamps, outcome, and the error if it failed.

        The exception is logged and re-raised unchanged.
        """
        record: OperationRecord = {
            'operation': operation,
            'start': datetime.datetime.now().isoformat(),
            'end': None,
            'success': False,
            'error': None,
            'details': dict(details),
        }
        self.operations.append(record)
        self.logger.debug(f"Starting {operation} {details or ''}".rstrip())

        try:
            yield record
        except Exception as e:
            self.logger.error(f"Error during {operation}: {str(e)}")
            self.logger.debug(traceback.format_exc())
            record['error'] = str(e)
            self.status = {
                'success': False,
                'error': str(e),
                'message': f"{operation} failed: {str(e)}"
            }
            raise
        else:
            record['success'] = True
            self.status = {
                'success': True,
                'error': None,
                'message': f"{operation} completed"
            }
        finally:
            record['end'] = datetime.datetime.now().isoformat()

    def get_execution_summary(self) -> ExecutionSummary:
        """
        Get a summary of the component's operations.

        Returns:
            Dictionary with execution summary
        """
        return {
            "component_id": self.component_id,
            "component_name": self.component_name,
            "status": self.status,
            "operations_count": len(self.operations),
            "failed_operations": [op['operation'] for op in self.operations if op['error']],
            "last_operation": self.operations[-1] if self.operations else None,
        }

    def to_json(self) -> str:
        """
        Convert component state to JSON.

        Returns:
            JSON string representation of the component state
        """
        return json.dumps(self.get_execution_summary(), indent=2, default=str)
