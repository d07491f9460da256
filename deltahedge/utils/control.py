"""
Control inbox.

The polling driver is the only process that owns the engine state.  The
CLI control modes (activate, deactivate, reset-pnl) therefore never
touch ``state.json`` themselves: they append one JSON command per line
to an inbox file, and the running driver drains the inbox before each
pass over its positions.

Draining renames the inbox before reading it, so commands appended
while a drain is in progress land in a fresh file and are picked up by
the next drain.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

ACTIVATE = 'activate'
DEACTIVATE = 'deactivate'
RESET_ACCOUNTING = 'reset_accounting'
UPDATE_CONFIG = 'update_config'

COMMANDS = (ACTIVATE, DEACTIVATE, RESET_ACCOUNTING, UPDATE_CONFIG)


def enqueue_command(path: str, command: Dict[str, Any]) -> None:
    """Append one command to the inbox at `path`.

    Raises
    ------
    ValueError
        If the command has no known ``op``.
    """
    if command.get('op') not in COMMANDS:
        raise ValueError(f"Unknown control command: {command.get('op')!r}")
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(command) + "\n"
    with file_path.open("a", encoding="utf-8") as fh:
        fh.write(line)
        fh.flush()
        os.fsync(fh.fileno())


def drain_commands(path: str) -> List[Dict[str, Any]]:
    """Take every pending command out of the inbox, oldest first.

    A batch left behind by a crash in the middle of an earlier drain is
    returned before the current inbox.  Lines that are not valid JSON
    objects are logged and dropped.
    """
    file_path = Path(path)
    draining = file_path.with_name(file_path.name + ".draining")
    commands: List[Dict[str, Any]] = []
    if draining.exists():
        commands.extend(_read_batch(draining))
    if file_path.exists():
        os.replace(file_path, draining)
        commands.extend(_read_batch(draining))
    return commands


def _read_batch(path: Path) -> List[Dict[str, Any]]:
    commands = []
    with path.open("r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                command = json.loads(line)
            except ValueError as exc:
                logger.error("Dropping malformed control line %s:%d: %s", path, lineno, exc)
                continue
            if not isinstance(command, dict):
                logger.error("Dropping control line %s:%d: not an object", path, lineno)
                continue
            commands.append(command)
    path.unlink()
    return commands
