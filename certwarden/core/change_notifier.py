"""
Change notifications for one watched file.

Watches the file's parent directory (editors often replace files by
rename) and yields write/create events for the file itself.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator

from watchfiles import Change, awatch

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    WRITE = "write"
    CREATE = "create"


_KINDS = {Change.modified: ChangeKind.WRITE, Change.added: ChangeKind.CREATE}


@dataclass(frozen=True)
class ChangeEvent:
    path: Path
    kind: ChangeKind


class WatchError(Exception):
    """The watch primitive could not be created or bound to its target."""

    def __init__(self, message: str, path: Path = None):
        self.message = message
        self.path = path
        super().__init__(message)


class ChangeNotifier:
    """Async iterator of ChangeEvents for one file."""

    def __init__(self, path: Path, stop_event=None):
        self.path = Path(path).expanduser().resolve()
        if not self.path.is_file():
            raise WatchError(f"Cannot watch {self.path}: file does not exist", path=self.path)
        if not self.path.parent.is_dir():
            raise WatchError(f"Cannot watch {self.path}: parent directory missing", path=self.path)
        self._stop_event = stop_event

    async def events(self) -> AsyncIterator[ChangeEvent]:
        """Yield at most one event per batch of filesystem changes."""
        async for changes in awatch(self.path.parent, stop_event=self._stop_event, recursive=False):
            kinds = {
                _KINDS[change]
                for change, changed_path in changes
                if change in _KINDS and Path(changed_path).resolve() == self.path
            }
            if not kinds:
                continue
            # A save that recreates the file reports both added and modified
            kind = ChangeKind.CREATE if ChangeKind.CREATE in kinds else ChangeKind.WRITE
            logger.debug(f"Watched file {kind.value}: {self.path}")
            yield ChangeEvent(path=self.path, kind=kind)

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self.events()
