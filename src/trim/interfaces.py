"""
Collaborator interfaces consumed by the trim controller and batch executor.

The SQLite implementations live in src/storage and src/scheduler; tests may
substitute in-memory fakes.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any

from src.trim.schemas import RunState


class RecordStore(ABC):
    @abstractmethod
    def count_anonymous(self) -> int:
        pass

    @abstractmethod
    def delete_oldest_anonymous(self, limit: int) -> int:
        """Delete up to ``limit`` anonymous rows, oldest updated_at first."""


class SettingsStore(ABC):
    @abstractmethod
    def get_setting(self, key: str, default: Any = None) -> Any:
        pass


class RunStateStore(ABC):
    @abstractmethod
    def get_run_state(self) -> RunState | None:
        pass

    @abstractmethod
    def save_run_state(self, state: RunState) -> None:
        pass

    @abstractmethod
    def clear_run_state(self) -> None:
        pass


class LeaseStore(ABC):
    @abstractmethod
    def try_acquire(self, name: str, ttl_seconds: int) -> bool:
        """Take the named lease unless a live one exists. Never blocks."""

    @abstractmethod
    def release(self, name: str) -> None:
        pass

    @abstractmethod
    def lease_expires_at(self, name: str) -> datetime | None:
        """Expiry of the live lease, or None if it is free."""


class TaskRunner(ABC):
    @abstractmethod
    def schedule_recurring(self, name: str, interval: timedelta, first_run_time: datetime) -> None:
        pass

    @abstractmethod
    def schedule_once(self, name: str, run_time: datetime) -> None:
        pass

    @abstractmethod
    def cancel_all(self, name: str) -> int:
        pass

    @abstractmethod
    def is_any_scheduled(self, name: str, include_claimed: bool = False) -> bool:
        """True if a job is waiting; ``include_claimed`` also counts running jobs."""
