import logging
import os
from pathlib import Path
from typing import List, Union

logger = logging.getLogger("tidbyt_proxy.scratch")


class ScratchFiles:
    """Tracks the temporary files of one request and removes them on exit, whatever the outcome."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.paths: List[Path] = []

    def track(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        self.paths.append(path)
        return path

    def cleanup(self) -> None:
        for path in reversed(self.paths):
            try:
                os.remove(path)
                logger.debug("removed scratch file %s", path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Failed to remove scratch file %s: %s", path, exc)
        self.paths.clear()

    def __enter__(self) -> "ScratchFiles":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()
