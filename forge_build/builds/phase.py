"""Build phase projection.

The phase is not a state machine: it is recomputed on every pass from
the rest of the status, with later checks overriding earlier ones.
Note that ``ready`` overrides both Failed and Terminating, and does not
look at the provisioners; a Build whose infrastructure reports ready is
Completed even while being deleted or before any provisioner ran.
"""

from __future__ import annotations

from forge_build import conditions
from forge_build.builds.schema import Build
from forge_build.runtime.events import EventRecorder
from forge_build.types import BuildPhase, ConditionType, EventType


def project_phase(build: Build) -> BuildPhase:
    """Compute the phase for the Build's current status.

    Returns:
        The new phase; the Build is not modified.
    """
    status = build.status
    if not status.phase:
        return BuildPhase.PENDING

    phase = status.typed_phase
    if build.spec.infrastructure_ref is not None and conditions.has(
        build, ConditionType.INFRASTRUCTURE_READY.value
    ):
        phase = BuildPhase.BUILDING
    if status.infrastructure_ready:
        phase = BuildPhase.BUILDING
    if status.failure_reason or status.failure_message:
        phase = BuildPhase.FAILED
    if build.is_deleting():
        phase = BuildPhase.TERMINATING
    if status.ready:
        phase = BuildPhase.COMPLETED
    return phase


def reconcile_phase(build: Build, recorder: EventRecorder | None = None) -> None:
    """Update status.phase and record an event when it changes."""
    previous = build.status.typed_phase if build.status.phase else None
    phase = project_phase(build)
    build.status.set_typed_phase(phase)
    if previous == phase or recorder is None:
        return

    if phase == BuildPhase.FAILED:
        recorder.event(
            build,
            EventType.WARNING,
            phase.value,
            f"Build {build.name} is {phase.value}: "
            f"{build.status.failure_message or 'unknown'}",
        )
    else:
        recorder.event(
            build,
            EventType.NORMAL,
            phase.value,
            f"Build {build.name} is {phase.value}",
        )


__all__ = ["project_phase", "reconcile_phase"]
