"""Thread-safe singleton base class.

Used by components that must exist once per process even when first touched
from several threads at the same time, such as the background usage queue
whose worker thread owns its own event loop.
"""

import logging
import threading
from abc import ABC
from typing import ClassVar, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T', bound='ThreadSafeSingleton')


class ThreadSafeSingleton(ABC):
    """Abstract base class for process-wide singletons.

    Instance creation and one-time setup are both guarded by double-checked
    locking, so concurrent ``get_instance()`` calls always observe a fully
    initialized object.

    Subclasses put their setup in ``_initialize()`` and their teardown in
    ``_cleanup()``; they must not override ``__new__`` or ``__init__``.
    """

    _instance: ClassVar[Optional['ThreadSafeSingleton']] = None
    _lock: ClassVar[threading.Lock] = threading.Lock()
    _initialized: bool = False

    def __new__(cls: type[T]) -> T:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._initialized = False
                    cls._instance = instance
        return cls._instance  # type: ignore

    def __init__(self) -> None:
        if not self._initialized:
            with self._lock:
                if not self._initialized:
                    self._initialize()
                    self._initialized = True

    def _initialize(self) -> None:
        """One-time setup, called when the instance is first created."""
        pass

    @classmethod
    def get_instance(cls: type[T]) -> T:
        """Return the process-wide instance, creating it on first use."""
        return cls()

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the current instance after running its cleanup (for testing)."""
        with cls._lock:
            if cls._instance is not None:
                try:
                    cls._instance._cleanup()
                except Exception as e:
                    logger.warning(f"Cleanup failed while resetting {cls.__name__}: {e}")
                cls._instance = None

    def _cleanup(self) -> None:
        """Release resources held by the instance. Called by reset_instance()."""
        pass
