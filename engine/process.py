"""Run external command-line tools with line streaming and a hard wall-clock timeout."""

from __future__ import annotations

import logging
import subprocess
import threading
import time

from engine.errors import ProcessFailedError, ProcessTimeoutError

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.2
_TERMINATE_GRACE_SECONDS = 5


def run_process(argv, *, timeout=None, line_callback=None, cwd=None, poll_interval=_POLL_INTERVAL):
    """Run ``argv`` to completion and return its combined stdout/stderr text.

    Every output line is handed to ``line_callback`` as it arrives. When the
    process outlives ``timeout`` seconds it is terminated, then killed, and
    ``ProcessTimeoutError`` is raised. A non-zero exit raises
    ``ProcessFailedError`` carrying the collected output.
    """
    output_lines = []
    try:
        proc = subprocess.Popen(
            list(argv),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
            cwd=cwd,
            errors="replace",
        )
    except FileNotFoundError as exc:
        raise ProcessFailedError(127, argv, f"{argv[0]} is not installed or not available in PATH") from exc

    def _read_output():
        stream = proc.stdout
        if stream is None:
            return
        for raw_line in iter(stream.readline, ""):
            output_lines.append(raw_line)
            if callable(line_callback):
                try:
                    line_callback(raw_line.rstrip("\r\n"))
                except Exception:
                    logger.exception("process_line_callback_failed")
        stream.close()

    reader = threading.Thread(target=_read_output, name=f"{argv[0]}-output-reader", daemon=True)
    reader.start()

    started = time.monotonic()
    timed_out = False
    while proc.poll() is None:
        if timeout is not None and time.monotonic() - started > timeout:
            timed_out = True
            proc.terminate()
            break
        time.sleep(poll_interval)

    if timed_out:
        try:
            proc.wait(timeout=_TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        reader.join(timeout=1)
        logger.error("Killed %s after %ss wall-clock timeout", argv[0], timeout)
        raise ProcessTimeoutError(argv, timeout, "".join(output_lines))

    return_code = proc.wait()
    # stdout reaches EOF once the process has exited
    reader.join()
    output = "".join(output_lines)
    if return_code != 0:
        raise ProcessFailedError(return_code, argv, output)
    return output
