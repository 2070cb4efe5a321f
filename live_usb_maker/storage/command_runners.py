"""Command execution utilities with logging and progress tracking."""

import re
import select
import subprocess
import time

from live_usb_maker.logging import get_logger

from .progress import format_eta, format_progress_display


log = get_logger(source="command", tags=["storage", "command"])
output_log = get_logger(source="command", tags=["storage", "command-output"])


def run_command(command, check=True, log_output=True, log_command=True):
    """Run a command with captured output, logging it at DEBUG level."""
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(command, check=check, text=True, capture_output=True)
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            output_log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            output_log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        output_log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        output_log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def run_interactive_command(command):
    """Run a command attached to the terminal so it can prompt the user.

    Returns the exit status; nothing is captured.
    """
    log.debug(f"Running interactive command: {' '.join(command)}")
    result = subprocess.run(command)
    log.debug(f"Command completed with return code {result.returncode}")
    return result.returncode


def run_checked_with_streaming_progress(
    command,
    total_bytes=None,
    title="WORKING",
    progress_callback=None,
    subtitle=None,
):
    """Run a command, parsing dd-style progress from stderr as it streams."""

    def emit_progress(lines, ratio=None):
        if progress_callback:
            progress_callback(lines, ratio)
        else:
            log.debug(" | ".join(lines))

    def compute_ratio(bytes_copied, percent_value):
        if bytes_copied is not None and total_bytes:
            return max(0.0, min(1.0, bytes_copied / total_bytes))
        if percent_value is not None:
            return max(0.0, min(1.0, percent_value / 100.0))
        return None

    emit_progress(
        format_progress_display(
            title, 0 if total_bytes else None, total_bytes, None, None, None,
            subtitle=subtitle,
        ),
        ratio=compute_ratio(0 if total_bytes else None, None),
    )
    log.debug(f"Running command: {' '.join(command)}")
    process = subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
    )
    stderr_lines = []
    last_bytes = None
    last_time = None
    last_rate = None
    last_eta = None
    last_percent = None
    refresh_interval = 1.0
    while True:
        ready, _, _ = select.select([process.stderr], [], [], refresh_interval)
        now = time.time()
        line = None
        if ready:
            # dd rewrites its status line with carriage returns
            line = process.stderr.readline()
        if line:
            stderr_lines.append(line)
            output_log.debug(f"stderr: {line.strip()}")
            bytes_match = re.search(r"(\d+)\s+bytes", line)
            percent_match = re.search(r"(\d+(?:\.\d+)?)%", line)
            rate_match = re.search(r"(\d+(?:\.\d+)?)\s*MiB/s", line)
            bytes_copied = None
            rate = last_rate
            eta = last_eta
            if bytes_match:
                bytes_copied = int(bytes_match.group(1))
                if rate_match:
                    rate = float(rate_match.group(1)) * 1024 * 1024
                elif last_bytes is not None and last_time is not None:
                    delta_bytes = bytes_copied - last_bytes
                    delta_time = now - last_time
                    if delta_bytes >= 0 and delta_time > 0:
                        rate = delta_bytes / delta_time
                if rate and total_bytes and bytes_copied <= total_bytes:
                    eta = format_eta((total_bytes - bytes_copied) / rate)
                last_bytes = bytes_copied
                last_time = now
                last_rate = rate or last_rate
                last_eta = eta or last_eta
            if percent_match:
                last_percent = float(percent_match.group(1))
            emit_progress(
                format_progress_display(
                    title,
                    bytes_copied if bytes_copied is not None else last_bytes,
                    total_bytes,
                    last_percent,
                    last_rate,
                    last_eta,
                    subtitle=subtitle,
                ),
                ratio=compute_ratio(last_bytes, last_percent),
            )
        if process.poll() is not None and not line:
            break
    remaining_stderr = process.stderr.read() if process.stderr else ""
    if remaining_stderr:
        stderr_lines.append(remaining_stderr)
    stdout_data = process.stdout.read() if process.stdout else ""
    process.wait()
    stderr_output = "".join(stderr_lines)
    if process.returncode != 0:
        message = stderr_output.strip() or stdout_data.strip() or "Command failed"
        raise RuntimeError(f"Command failed ({' '.join(command)}): {message}")
    emit_progress([title, "Complete"], ratio=1.0)
    return subprocess.CompletedProcess(
        command, process.returncode, stdout=stdout_data, stderr=stderr_output
    )


__all__ = [
    "run_command",
    "run_interactive_command",
    "run_checked_with_streaming_progress",
]
