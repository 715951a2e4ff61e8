"""Capture device contract and the file-import device used by the CLI."""

from __future__ import annotations

import os
import shutil
import threading
import uuid
from typing import Optional

from ..domain.errors import PermissionDenied, RecordingFailed
from ..logging import get_logger
from ..paths import expand_abs

LOG = get_logger("orchestrator-capture")


class CaptureDevice:
    """Audio input owned exclusively by one recording session at a time.

    Subclasses implement the recording calls; the lease is shared logic.
    """

    def __init__(self) -> None:
        self._lease = threading.Lock()

    # ---- lease -------------------------------------------------------------
    def acquire(self) -> bool:
        return self._lease.acquire(blocking=False)

    def release(self) -> None:
        try:
            self._lease.release()
        except RuntimeError:
            LOG.debug("Capture device lease already released")

    # ---- capability --------------------------------------------------------
    def request_permission(self) -> bool:
        raise NotImplementedError

    def has_permission(self) -> bool:
        raise NotImplementedError

    def start(self) -> str:
        raise NotImplementedError

    def stop(self) -> str:
        raise NotImplementedError

    def cancel(self) -> None:
        raise NotImplementedError


class ImportedRecordingDevice(CaptureDevice):
    """Treats an existing audio file as the recording.

    ``start`` reserves ``recording_<uuid><ext>`` under ``recordings_dir``,
    ``stop`` copies the source there, ``cancel`` removes any partial copy.
    """

    def __init__(self, source_path: str, recordings_dir: str) -> None:
        super().__init__()
        self.source_path = expand_abs(source_path)
        self.recordings_dir = expand_abs(recordings_dir)
        self._target: Optional[str] = None
        self._granted = False

    def request_permission(self) -> bool:
        self._granted = os.path.isfile(self.source_path) and os.access(self.source_path, os.R_OK)
        if not self._granted:
            LOG.warning(f"Audio source not readable: {self.source_path}")
        return self._granted

    def has_permission(self) -> bool:
        return self._granted

    def start(self) -> str:
        if not self._granted:
            raise PermissionDenied("audio source not readable")
        if self._target is not None:
            raise RecordingFailed("recording already in progress")
        try:
            os.makedirs(self.recordings_dir, exist_ok=True)
        except OSError as exc:
            raise RecordingFailed(f"cannot create {self.recordings_dir}: {exc}") from exc
        ext = os.path.splitext(self.source_path)[1] or ".m4a"
        self._target = os.path.join(self.recordings_dir, f"recording_{uuid.uuid4().hex}{ext}")
        LOG.info(f"Recording to {self._target}")
        return self._target

    def stop(self) -> str:
        if self._target is None:
            raise RecordingFailed("no recording in progress")
        target, self._target = self._target, None
        try:
            shutil.copy2(self.source_path, target)
        except OSError as exc:
            self._remove(target)
            raise RecordingFailed(f"copy failed: {exc}") from exc
        LOG.info(f"Recording stored at {target}")
        return target

    def cancel(self) -> None:
        target, self._target = self._target, None
        if target:
            self._remove(target)

    @staticmethod
    def _remove(path: str) -> None:
        if os.path.isfile(path):
            try:
                os.remove(path)
                LOG.debug(f"Removed partial recording: {path}")
            except OSError as exc:
                LOG.warning(f"Failed to remove partial recording {path}: {exc}")
