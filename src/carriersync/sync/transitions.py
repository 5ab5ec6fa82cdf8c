"""Pure phase transitions of the sync state machine.

Each function takes the token as it stands after a phase did its I/O plus the
observed outcome, and returns a :class:`Decision` describing what to publish
next.  Nothing here touches the network or the database.
"""

from __future__ import annotations

from dataclasses import dataclass

from carriersync.sync.state import SyncState


@dataclass(frozen=True)
class Continuation:
    state: SyncState
    delay_seconds: int


@dataclass(frozen=True)
class Decision:
    continuations: tuple[Continuation, ...] = ()
    build_missing_queue: bool = False
    start_usage_sync: bool = False
    start_detail_sync: bool = False
    abandoned: bool = False


def within_retry_ceiling(state: SyncState, max_retries: int) -> bool:
    return state.retry_number <= max_retries


def after_ban_drain(state: SyncState, *, remaining: int, max_retries: int, delay: int) -> Decision:
    """BANs left and budget for another hop: keep priming.  Otherwise move on to device pages."""
    if remaining > 0 and within_retry_ceiling(state, max_retries):
        return Decision(continuations=(Continuation(state, delay),))
    moved_on = state.model_copy(update={"initialize_processing": False, "retry_number": 0})
    return Decision(continuations=(Continuation(moved_on, delay),), abandoned=remaining > 0)


def after_device_pages(state: SyncState, *, max_retries: int, delay: int) -> Decision:
    """Requeue paging while pages remain, else fan out the missing-device drain."""
    more_pages = not state.is_last_cycle or state.has_more_data
    if more_pages and within_retry_ceiling(state, max_retries):
        return Decision(continuations=(Continuation(state, delay),))
    return Decision(build_missing_queue=True, abandoned=more_pages)


def after_empty_device_fetch(
    state: SyncState, *, time_exhausted: bool, max_retries: int, delay: int
) -> Decision:
    """No device rows this hop: retry if the clock ran out, otherwise hand off to usage sync."""
    if time_exhausted and within_retry_ceiling(state, max_retries):
        return Decision(continuations=(Continuation(state, delay),))
    return Decision(start_usage_sync=True, abandoned=time_exhausted)


def fan_out_groups(state: SyncState, max_group: int, *, delay: int, last_delay: int) -> tuple[Continuation, ...]:
    """One drain continuation per group ``0..max_group``; the last one is flagged and delayed longer."""
    continuations: list[Continuation] = []
    for group in range(max_group + 1):
        is_last = group == max_group
        next_state = state.model_copy(
            update={
                "initialize_processing": False,
                "is_process_device_not_exists_staging": True,
                "is_last_process_device_not_exists_staging": is_last,
                "group_number": group,
                "retry_number": 0,
                "is_last_cycle": False,
            }
        )
        continuations.append(Continuation(next_state, last_delay if is_last else delay))
    return tuple(continuations)


def after_missing_group(state: SyncState, *, remaining: int, max_retries: int, delay: int) -> Decision:
    """Requeue the same group while rows remain; the last group hands off downstream."""
    if remaining > 0 and within_retry_ceiling(state, max_retries):
        return Decision(continuations=(Continuation(state, delay),))
    last = state.is_last_process_device_not_exists_staging
    return Decision(start_usage_sync=last, start_detail_sync=last, abandoned=remaining > 0)
