from __future__ import annotations

import logging
import os
import shlex
import subprocess

logger = logging.getLogger(__name__)


class RunnerError(RuntimeError):
    pass


def build_environment(injected_env: dict[str, str], inherit: bool = True) -> dict[str, str]:
    """Profile variables layered over the current environment (or over nothing)."""
    env = os.environ.copy() if inherit else {}
    env.update(injected_env)
    return env


def run_with_env(command: list[str], injected_env: dict[str, str], inherit: bool = True) -> int:
    if not command:
        raise RunnerError("No command provided")

    logger.debug("Launching %s with %d profile variables", command[0], len(injected_env))
    try:
        result = subprocess.run(command, env=build_environment(injected_env, inherit), check=False)
    except FileNotFoundError as exc:
        raise RunnerError(f"Command not found: {command[0]}") from exc
    return result.returncode


def parse_command(raw: str) -> list[str]:
    parts = shlex.split(raw)
    if not parts:
        raise RunnerError("Command parsing produced no arguments")
    return parts
