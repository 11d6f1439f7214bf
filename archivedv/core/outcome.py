"""
Exit-outcome policy for a finished capture process.

Pure decision logic: given how the process ended, its diagnostics and the
state of its working directory, say what should happen to the job.  The
supervisor applies the decision.
"""

from dataclasses import dataclass
from typing import Optional

from archivedv.core.auth import classify_auth_failure
from archivedv.core.constants import FolderState, NOTE_STREAM_ENDED

LIVE_SCHEDULED_MARKER = "This live event will begin"


class TrackerState:
    RUNNING = "running"
    STREAM_ENDED_LOOP = "stream_ended_loop"
    AUTH_SKIPPED = "auth_skipped"
    WATCHDOG_KILLED = "watchdog_killed"
    CANCELLED = "cancelled"
    EXITED = "exited"

    # Paths that resolved the job before the process exited
    RESOLVED = frozenset({AUTH_SKIPPED, WATCHDOG_KILLED, CANCELLED})


class OutcomeKind:
    SUCCESS = "success"
    CLEANUP_ONLY = "cleanup_only"
    AUTH_SKIP = "auth_skip"
    AUTH_FINALIZE = "auth_finalize"
    RETRY = "retry"


@dataclass(frozen=True)
class ExitOutcome:
    kind: str
    reason: str = ""
    note: Optional[str] = None
    delete_dir: bool = False
    false_negative: bool = False


def retry_reason(diagnostics: str, folder_kind: str, exit_code) -> str:
    if LIVE_SCHEDULED_MARKER in (diagnostics or ""):
        reason = "Live scheduled; retry later"
    elif folder_kind == FolderState.INCOMPLETE:
        reason = "Partial/incomplete download; retry"
    else:
        reason = "Download failed; retry"
    return f"{reason} (exit {exit_code})"


def decide_exit_outcome(state: str, exit_code: int | None, diagnostics: str,
                        folder_kind: str, credentials_usable: bool,
                        prior_attempts: int, max_auth_attempts: int) -> ExitOutcome:
    """
    Evaluated once per terminated process, in priority order:
    forbidden-loop stop, already-resolved paths, clean exit, auth failure,
    then the working directory.
    """
    if state == TrackerState.STREAM_ENDED_LOOP:
        return ExitOutcome(OutcomeKind.SUCCESS, note=NOTE_STREAM_ENDED)

    if state in TrackerState.RESOLVED:
        return ExitOutcome(OutcomeKind.CLEANUP_ONLY)

    if exit_code == 0:
        return ExitOutcome(OutcomeKind.SUCCESS)

    auth = classify_auth_failure(diagnostics)
    if auth is not None:
        if not credentials_usable:
            return ExitOutcome(OutcomeKind.AUTH_SKIP, reason=auth.reason)
        if prior_attempts + 1 >= max_auth_attempts:
            return ExitOutcome(OutcomeKind.AUTH_FINALIZE, reason=f"auth_failed_{auth.reason}")

    if folder_kind == FolderState.COMPLETE:
        return ExitOutcome(OutcomeKind.SUCCESS, false_negative=True)

    return ExitOutcome(
        OutcomeKind.RETRY,
        reason=retry_reason(diagnostics, folder_kind, exit_code),
        delete_dir=folder_kind == FolderState.EMPTY,
    )
