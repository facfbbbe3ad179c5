"""Runtime paths shared by the services and routers.

Meeting documents, temporary chunk files and uploads live under the
resolved ``data_dir``.  Logs always stay beside the working directory so a
misconfigured data directory never hides the boot log.
"""

from __future__ import annotations

import os


class AppContext:
    """Resolved directory layout for one running service."""

    def __init__(self, *, cwd: str, data_dir: str, config_path: str) -> None:
        self._cwd = cwd
        self._data_dir = data_dir
        self._config_path = config_path

    @property
    def data_dir(self) -> str:
        return self._data_dir

    @property
    def config_path(self) -> str:
        return self._config_path

    @property
    def meetings_dir(self) -> str:
        return os.path.join(self._data_dir, "meetings")

    @property
    def chunks_dir(self) -> str:
        return os.path.join(self._data_dir, "chunks")

    @property
    def uploads_dir(self) -> str:
        return os.path.join(self._data_dir, "uploads")

    @property
    def logs_dir(self) -> str:
        return os.path.join(self._cwd, "logs")

    def ensure_dirs(self) -> None:
        for path in (self.data_dir, self.meetings_dir, self.chunks_dir, self.uploads_dir, self.logs_dir):
            os.makedirs(path, exist_ok=True)
