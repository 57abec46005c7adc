"""Common utilities for stack deployment."""

import logging
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def run_shell(script: str, cwd: Optional[Path] = None, timeout: int = 600) -> tuple[int, str, str]:
    """Run a script through /bin/sh -c."""
    return run_command(['sh', '-c', script], cwd=cwd, timeout=timeout)


def format_duration(seconds: float) -> str:
    """Format elapsed seconds as e.g. '1m 05.20s' or '3.41s'."""
    minutes, secs = divmod(seconds, 60)
    if minutes:
        return f"{int(minutes)}m {secs:05.2f}s"
    return f"{secs:.2f}s"


def mask(value: object) -> str:
    """Mask a secret value for log output."""
    return '*' * len(str(value))
