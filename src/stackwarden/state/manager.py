"""State manager for loading, saving, and locking orchestrator state."""

import fcntl
import json
import os
import time
from pathlib import Path
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from stackwarden.state.models import State
from stackwarden.utils.errors import StateError
from stackwarden.utils.logging import get_logger

logger = get_logger(__name__)


class StateLockError(StateError):
    """Raised when the state file cannot be locked."""


class StateNotFoundError(StateError):
    """Raised when the state file does not exist."""


def state_file_path(state_dir: str, project_name: str, environment: str) -> Path:
    """Location of the state file for one project environment."""
    return Path(state_dir) / f"{project_name}-{environment}.json"


class StateManager:
    """Manages orchestrator state with file locking and atomic writes.

    Only one process may hold the lock for a given state file at a time;
    writes go to a temporary file that is renamed over the original.
    """

    def __init__(self, state_path: str):
        """
        Initialize StateManager.

        Args:
            state_path: Path to the state file
        """
        self.state_path = Path(state_path)
        self._lock_file: Optional[int] = None
        self._current_state: Optional[State] = None

    def load(self) -> State:
        """
        Load state from file.

        Returns:
            State object

        Raises:
            StateNotFoundError: If state file does not exist
            StateError: If state file is corrupted or invalid
        """
        if not self.state_path.exists():
            raise StateNotFoundError(f"State file not found: {self.state_path}")

        try:
            with open(self.state_path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file {self.state_path}: {e}", cause=e)
        except OSError as e:
            raise StateError(f"Failed to read state file {self.state_path}: {e}", cause=e)

        try:
            self._current_state = State.from_dict(data)
        except PydanticValidationError as e:
            raise StateError(f"State file {self.state_path} is invalid: {e}", cause=e)

        logger.debug(f"Loaded state with {len(self._current_state.stacks)} stack(s)")
        return self._current_state

    def save(self, state: State) -> None:
        """
        Save state to file.

        Args:
            state: State object to save

        Raises:
            StateError: If state cannot be saved
        """
        self.state_path.parent.mkdir(parents=True, exist_ok=True)

        temp_path = self.state_path.with_suffix(".tmp")
        try:
            with open(temp_path, "w") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            temp_path.replace(self.state_path)
            self._current_state = state
        except OSError as e:
            raise StateError(f"Failed to save state file {self.state_path}: {e}", cause=e)

        logger.debug(f"Saved state to {self.state_path}")

    def initialize(self, environment: str, project_name: str, region: Optional[str] = None) -> State:
        """
        Create a new empty state and write it.

        Args:
            environment: Environment name
            project_name: Project name
            region: Provider region

        Returns:
            New State object
        """
        state = State(environment=environment, project_name=project_name, region=region)
        self.save(state)
        logger.info(f"Initialized state file {self.state_path}")
        return state

    def load_or_initialize(self, environment: str, project_name: str, region: Optional[str] = None) -> State:
        """Load the state file, creating it when it does not exist yet."""
        if self.exists():
            return self.load()
        return self.initialize(environment, project_name, region)

    def exists(self) -> bool:
        """Check if state file exists."""
        return self.state_path.exists()

    def lock(self, timeout: float = 30) -> None:
        """
        Acquire exclusive lock on state file.

        Args:
            timeout: Lock timeout in seconds

        Raises:
            StateLockError: If lock cannot be acquired
        """
        lock_path = self.state_path.with_suffix(".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._lock_file = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
        except OSError as e:
            raise StateLockError(f"Failed to open lock file {lock_path}: {e}", cause=e)

        start_time = time.monotonic()
        while True:
            try:
                fcntl.flock(self._lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() - start_time > timeout:
                    os.close(self._lock_file)
                    self._lock_file = None
                    raise StateLockError(
                        f"Failed to acquire lock on state file after {timeout}s",
                        suggestions=["Another stackwarden process may be running against this environment"]
                    )
                time.sleep(0.1)

    def unlock(self) -> None:
        """Release lock on state file."""
        if self._lock_file is not None:
            try:
                fcntl.flock(self._lock_file, fcntl.LOCK_UN)
                os.close(self._lock_file)
            finally:
                self._lock_file = None

    @property
    def is_locked(self) -> bool:
        return self._lock_file is not None

    def __enter__(self):
        """Context manager entry - acquire lock and load state."""
        self.lock()
        if self.exists():
            try:
                self.load()
            except StateError:
                self.unlock()
                raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - release lock."""
        self.unlock()
