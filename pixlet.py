import logging
import shutil
import subprocess
import time
from pathlib import Path
from typing import List, Optional, Tuple, Union

from errors import PushError, RenderError, RenderTimeout, RenderToolAbsent

logger = logging.getLogger("tidbyt_proxy.pixlet")

PIXLET_BINARY = "pixlet"
DEFAULT_TIMEOUT = 30.0
ARTIFACT_SUFFIX = ".gif"

PathLike = Union[str, Path]


def pixlet_available(binary: str = PIXLET_BINARY) -> bool:
    return shutil.which(binary) is not None


def artifact_path_for(source_path: PathLike, timestamp: int) -> Path:
    """``<source>-<unix timestamp>.gif``; downstream tooling matches on this name."""
    return Path(f"{source_path}-{timestamp}{ARTIFACT_SUFFIX}")


def _redact(cmd: List[str]) -> str:
    shown = list(cmd)
    if "--api-token" in shown:
        index = shown.index("--api-token") + 1
        if index < len(shown):
            shown[index] = "****"
    return " ".join(shown)


def _decode(output) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="ignore")
    return output


def _invoke(cmd: List[str], timeout: float) -> Tuple[int, str, float]:
    """Run pixlet with stdout and stderr merged; the combined output is always logged at debug."""
    logger.info("Running pixlet: %s", _redact(cmd))
    start = time.perf_counter()
    try:
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, timeout=timeout, check=False)
    except subprocess.TimeoutExpired as exc:
        logger.debug("%s", _decode(exc.output))
        raise
    output = _decode(proc.stdout)
    logger.debug("%s", output)
    return proc.returncode, output, time.perf_counter() - start


def run_pixlet_render(
    source_path: PathLike,
    output_path: PathLike,
    *,
    binary: str = PIXLET_BINARY,
    timeout: float = DEFAULT_TIMEOUT,
) -> float:
    if not pixlet_available(binary):
        logger.debug("pixlet binary doesn't exist")
        raise RenderToolAbsent(f"{binary} was not found on PATH")

    cmd = [binary, "render", str(source_path), "--output", str(output_path), "--gif"]
    try:
        returncode, output, elapsed = _invoke(cmd, timeout)
    except subprocess.TimeoutExpired as exc:
        logger.error("pixlet render of %s timed out after %ss", source_path, timeout)
        raise RenderTimeout(
            f"pixlet render timed out after {timeout}s", output=_decode(exc.output)
        ) from exc
    except OSError as exc:
        logger.error("pixlet render of %s could not start: %s", source_path, exc)
        raise RenderError(f"pixlet could not be started: {exc}") from exc

    if returncode != 0:
        logger.error("pixlet render failed (returncode=%s) for %s: %s", returncode, source_path, output)
        raise RenderError(f"pixlet render exited with status {returncode}", returncode=returncode, output=output)
    if not Path(output_path).exists():
        logger.error("pixlet render reported success but %s is missing", output_path)
        raise RenderError("pixlet render completed but no GIF was generated.", returncode=returncode, output=output)
    return elapsed


def run_pixlet_push(
    artifact_path: PathLike,
    *,
    api_key: str,
    device_id: str,
    installation_id: Optional[str] = None,
    api_url: str = "",
    binary: str = PIXLET_BINARY,
    timeout: float = DEFAULT_TIMEOUT,
) -> float:
    cmd = [binary, "push", "--api-token", api_key]
    if api_url:
        cmd.extend(["--url", api_url])
    if installation_id:
        cmd.extend(["--installation-id", installation_id])
    cmd.extend([device_id, str(artifact_path)])

    try:
        returncode, output, elapsed = _invoke(cmd, timeout)
    except subprocess.TimeoutExpired as exc:
        logger.error("pixlet push of %s timed out after %ss", artifact_path, timeout)
        raise PushError(f"pixlet push timed out after {timeout}s", detail=_decode(exc.output) or None) from exc
    except OSError as exc:
        logger.error("pixlet push of %s could not start: %s", artifact_path, exc)
        raise PushError(f"pixlet could not be started: {exc}") from exc

    if returncode != 0:
        logger.error("pixlet push failed (returncode=%s) for %s: %s", returncode, artifact_path, output)
        raise PushError(f"pixlet push exited with status {returncode}", detail=output or None)
    return elapsed
