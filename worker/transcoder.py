#!/usr/bin/env python3
"""
Transcoding worker: turns queued originals into the HLS quality ladder.

Each job runs the ladder bottom-up, one ffmpeg process per rung:

    queued -> running(240p) -> running(360p) -> ... -> completed
                     \\-> failed(rung, reason)

There is no retry. A failed rung leaves the original and any finished
renditions on disk, and the resolver keeps serving whatever exists.

Workers run either inside the API process (TRANSCODE_CONCURRENCY tasks started
from the app lifespan) or standalone:

    python -m worker.transcoder
"""

import asyncio
import logging
import signal
import uuid
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional

from api import storage
from api.database import configure_database, database
from api.errors import ExternalToolFailureError, NotFoundError, summarize_job_error
from api.job_queue import (
    TranscodeJob,
    claim_next_job,
    mark_job_completed,
    mark_job_failed,
    register_wakeup,
    requeue_interrupted_jobs,
    set_current_rung,
    unregister_wakeup,
)
from config import (
    FFMPEG_BINARY,
    FFMPEG_TIMEOUT,
    HLS_SEGMENT_DURATION,
    LOG_LEVEL,
    MEDIA_PATH,
    QUALITY_LADDER,
    TRANSCODE_CONCURRENCY,
    WORKER_POLL_INTERVAL,
)

logger = logging.getLogger(__name__)

# Lines of ffmpeg stderr kept for the failure message
STDERR_TAIL_LINES = 20


class WorkerState:
    """
    Mutable state for one transcoder worker.

    Each worker owns its wake-up event, so several workers can share a process
    (and tests can build fresh instances) without touching globals.
    """

    def __init__(self, worker_id: Optional[str] = None):
        self.worker_id = worker_id or str(uuid.uuid4())
        self.shutdown_requested = False
        self.new_job_event: Optional[asyncio.Event] = None

    def request_shutdown(self):
        """Request graceful shutdown of the worker."""
        self.shutdown_requested = True
        # Wake up the idle wait
        if self.new_job_event is not None:
            self.new_job_event.set()


# State used by the signal handler of a standalone worker
_default_worker_state: Optional[WorkerState] = None


def get_worker_state() -> WorkerState:
    """Get the default worker state, creating it if necessary."""
    global _default_worker_state
    if _default_worker_state is None:
        _default_worker_state = WorkerState()
    return _default_worker_state


def set_worker_state(state: Optional[WorkerState]):
    """Set the default worker state (useful for testing)."""
    global _default_worker_state
    _default_worker_state = state


def build_transcode_command(input_path: Path, root: Path, quality: dict, filename: str) -> List[str]:
    """
    Build the ffmpeg command for one ladder rung.

    Args:
        input_path: Absolute path of the original
        root: Media root the renditions are written under
        quality: Ladder entry (name, resolution, bitrate)
        filename: Original's filename; its stem names the playlist and segments
    """
    name = quality["name"]
    playlist = root / storage.rendition_path(name, filename)
    segments = root / storage.rendition_segment_pattern(name, filename)
    return [
        FFMPEG_BINARY,
        "-y",
        "-i",
        str(input_path),
        "-c:v",
        "libx264",
        "-c:a",
        "aac",
        "-b:v",
        quality["bitrate"],
        "-s",
        quality["resolution"],
        "-f",
        "hls",
        "-hls_time",
        str(HLS_SEGMENT_DURATION),
        "-hls_list_size",
        "0",
        "-hls_base_url",
        f"/media/{storage.rendition_dir(name)}/",
        "-hls_segment_filename",
        str(segments),
        str(playlist),
    ]


async def cleanup_ffmpeg_process(process: asyncio.subprocess.Process, context: str = "FFmpeg") -> None:
    """
    Kill an ffmpeg subprocess that is still running and reap it.

    The process may exit between the returncode check and kill(); that race
    is expected and ignored.
    """
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


async def run_ffmpeg(cmd: List[str], timeout: float = FFMPEG_TIMEOUT, context: str = "FFmpeg") -> None:
    """
    Run an ffmpeg command to completion.

    stderr is streamed line by line into the debug log; the last lines are kept
    for the error message. A timeout of 0 lets the process run as long as it
    needs.

    Raises:
        ExternalToolFailureError: the binary is missing, the process timed out
            or exited non-zero
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ExternalToolFailureError(f"{cmd[0]} executable not found") from e

    tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    async def drain_stderr():
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="ignore").rstrip()
            if text:
                logger.debug(f"[{context}] {text}")
                tail.append(text)
        await process.wait()

    try:
        if timeout and timeout > 0:
            await asyncio.wait_for(drain_stderr(), timeout=timeout)
        else:
            await drain_stderr()
    except asyncio.TimeoutError:
        raise ExternalToolFailureError(f"{context} timed out after {timeout:.0f} seconds")
    finally:
        await cleanup_ffmpeg_process(process, context)

    if process.returncode != 0:
        last = tail[-1] if tail else "no output"
        raise ExternalToolFailureError(f"{context} exited with code {process.returncode}: {last}")


async def transcode_job(job: TranscodeJob, state: WorkerState, root: Optional[Path] = None) -> bool:
    """
    Run every ladder rung for a claimed job and record the outcome.

    Returns True when all rungs completed. Failures are recorded on the job row
    and never raised.
    """
    root = root or MEDIA_PATH
    filename = Path(job.source_path).name

    try:
        input_path = storage.absolute_path(root, job.source_path)
    except NotFoundError:
        input_path = None
    if input_path is None or not input_path.is_file():
        logger.error(f"Job {job.id}: source {job.source_path} is missing")
        await mark_job_failed(job.id, None, summarize_job_error(None, "Source file not found", f"job {job.id}"))
        return False

    for quality in QUALITY_LADDER:
        rung = quality["name"]
        if state.shutdown_requested:
            # Left running; requeued by the next startup
            logger.info(f"Job {job.id}: shutdown requested before {rung}")
            return False

        await set_current_rung(job.id, rung)
        logger.info(f"Job {job.id}: transcoding {filename} to {rung}")
        try:
            (root / storage.rendition_dir(rung)).mkdir(parents=True, exist_ok=True)
            cmd = build_transcode_command(input_path, root, quality, filename)
            await run_ffmpeg(cmd, FFMPEG_TIMEOUT, context=f"FFmpeg {rung}")
        except (ExternalToolFailureError, OSError) as e:
            reason = e.detail if isinstance(e, ExternalToolFailureError) else str(e)
            logger.error(f"Job {job.id}: {rung} failed: {reason}")
            await mark_job_failed(job.id, rung, summarize_job_error(rung, reason, f"job {job.id}"))
            return False

    await mark_job_completed(job.id)
    logger.info(f"Job {job.id}: completed all {len(QUALITY_LADDER)} renditions for {filename}")
    return True


def signal_handler(sig, frame):
    """Handle shutdown signals gracefully."""
    sig_name = signal.strsignal(sig) if hasattr(signal, "strsignal") else str(sig)
    logger.info(f"{sig_name} received, finishing current rung and shutting down...")
    get_worker_state().request_shutdown()


async def worker_loop(state: Optional[WorkerState] = None, standalone: bool = True):
    """
    Claim and process jobs until shutdown is requested.

    A standalone worker installs signal handlers, owns the database connection
    and requeues jobs orphaned by a crash. Embedded workers rely on the app
    lifespan for all three.
    """
    if state is None:
        state = get_worker_state()

    state.new_job_event = asyncio.Event()
    register_wakeup(state.new_job_event)

    if standalone:
        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)
        await database.connect()
        await configure_database()
        requeued = await requeue_interrupted_jobs()
        if requeued:
            logger.info(f"Requeued {requeued} interrupted job(s)")

    logger.info(f"Transcoding worker started (ID: {state.worker_id})")

    try:
        while not state.shutdown_requested:
            try:
                job = await claim_next_job(state.worker_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Worker {state.worker_id} failed to claim a job: {e}")
                job = None

            if job is not None:
                try:
                    await transcode_job(job, state)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.exception(f"Job {job.id}: unexpected error: {e}")
                    await mark_job_failed(job.id, job.current_rung, summarize_job_error(job.current_rung, str(e)))
                # Look for more work before sleeping
                continue

            if state.shutdown_requested:
                break
            try:
                await asyncio.wait_for(state.new_job_event.wait(), timeout=WORKER_POLL_INTERVAL)
            except asyncio.TimeoutError:
                pass
            state.new_job_event.clear()
    finally:
        unregister_wakeup(state.new_job_event)
        if standalone:
            await database.disconnect()
        logger.info(f"Worker {state.worker_id} stopped")


# Workers started by the API lifespan
_embedded: List[tuple] = []


def start_embedded_workers(count: int = TRANSCODE_CONCURRENCY) -> int:
    """Start count worker tasks on the running loop. Returns how many were started."""
    for _ in range(count):
        state = WorkerState()
        task = asyncio.create_task(worker_loop(state, standalone=False))
        _embedded.append((state, task))
    if count:
        logger.info(f"Started {count} embedded transcoding worker(s)")
    return count


async def stop_embedded_workers(timeout: float = 10.0) -> None:
    """Ask embedded workers to stop; cancel any still busy after timeout."""
    if not _embedded:
        return
    for state, _task in _embedded:
        state.request_shutdown()
    tasks = [task for _state, task in _embedded]
    _done, pending = await asyncio.wait(tasks, timeout=timeout)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    _embedded.clear()


def main():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(worker_loop())


if __name__ == "__main__":
    main()
