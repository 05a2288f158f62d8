"""
Pre- and post-backup hooks.

A hook is either a shell command string or a Python callable. Pre-backup
hooks are gatekeepers: the first failure aborts the run. Post-backup hooks
are best effort: failures are collected and reported as warnings.
"""

import logging
import subprocess
from typing import Callable, List, Optional, Sequence

from .config import Hook
from .errors import HookError


logger = logging.getLogger(__name__)

HOOK_TIMEOUT_SECONDS = 300


def describe_hook(hook: Hook) -> str:
    if isinstance(hook, str):
        return hook
    return getattr(hook, '__name__', repr(hook))


def run_hook(hook: Hook, timeout: int = HOOK_TIMEOUT_SECONDS):
    """
    Run a single hook.

    Raises:
        HookError: If the command exits non-zero, times out, or the callable raises
    """
    name = describe_hook(hook)

    if isinstance(hook, str):
        try:
            result = subprocess.run(
                hook, shell=True, capture_output=True, text=True, timeout=timeout
            )
        except subprocess.TimeoutExpired:
            raise HookError(f"Hook timed out after {timeout}s: {name}")
        except OSError as e:
            raise HookError(f"Hook could not be started: {name}: {e}")

        if result.returncode != 0:
            raise HookError(
                f"Hook failed with exit code {result.returncode}: {name}",
                {'stderr': result.stderr.strip()[-500:]} if result.stderr else None
            )
        return

    try:
        hook()
    except HookError:
        raise
    except Exception as e:
        raise HookError(f"Hook raised {type(e).__name__}: {name}: {e}")


def run_pre_hooks(hooks: Sequence[Hook], log: Optional[Callable[[str], None]] = None):
    """Run hooks in order. The first failure raises HookError and stops the rest."""
    for index, hook in enumerate(hooks, start=1):
        if log:
            log(f"Running pre-backup hook {index}/{len(hooks)}: {describe_hook(hook)}")
        run_hook(hook)


def run_post_hooks(hooks: Sequence[Hook], log: Optional[Callable[[str], None]] = None) -> List[str]:
    """Run every hook. Returns a warning per failed hook."""
    warnings = []
    for index, hook in enumerate(hooks, start=1):
        if log:
            log(f"Running post-backup hook {index}/{len(hooks)}: {describe_hook(hook)}")
        try:
            run_hook(hook)
        except HookError as e:
            logger.warning(f"Post-backup hook failed: {e}")
            warnings.append(f"Post-backup hook failed: {e}")
    return warnings
