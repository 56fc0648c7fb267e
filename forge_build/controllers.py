"""Wiring of the controllers run by the manager."""

from __future__ import annotations

import logging
import os
import socket
import uuid

from forge_build.builds.controller import BuildReconciler
from forge_build.config import Settings
from forge_build.provisioners.shell.controller import ShellJobController
from forge_build.runtime.controller import Controller
from forge_build.runtime.events import EventRecorder
from forge_build.runtime.leader import LeaderElector
from forge_build.runtime.manager import Manager
from forge_build.runtime.retry import RetryPolicy
from forge_build.store.client import ObjectStore

logger = logging.getLogger(__name__)

BUILD_CONTROLLER_NAME = "build-controller"
SHELL_JOB_CONTROLLER_NAME = "shelljob-controller"


def leader_identity() -> str:
    """Unique candidate identity: host name plus a random suffix."""
    host = os.environ.get("HOSTNAME") or socket.gethostname()
    return f"{host}_{uuid.uuid4()}"


def setup_manager(store: ObjectStore, settings: Settings) -> Manager:
    """Create a manager running the Build and shell Job controllers.

    Args:
        store: Object store shared by the controllers.
        settings: Effective settings.

    Returns:
        Manager ready to ``start``.
    """
    elector = None
    if settings.leader_elect:
        elector = LeaderElector(
            store,
            settings.leader_election_id,
            settings.leader_election_namespace,
            leader_identity(),
            lease_duration=settings.lease_duration,
        )
    manager = Manager(store, elector)

    def retry_policy() -> RetryPolicy:
        return RetryPolicy(
            base_delay=settings.retry_base_delay, max_delay=settings.retry_max_delay
        )

    reconciler = BuildReconciler(
        store, EventRecorder(store, BUILD_CONTROLLER_NAME), settings
    )
    build_controller = Controller(
        BUILD_CONTROLLER_NAME,
        reconciler.reconcile,
        store,
        workers=settings.worker_number,
        retry_policy=retry_policy(),
    )
    reconciler.setup(build_controller)
    manager.add(build_controller)
    if reconciler.tracker is not None:
        manager.on_stop(reconciler.tracker.reset)

    observer = ShellJobController(store, settings.provisioner_namespace)
    job_controller = Controller(
        SHELL_JOB_CONTROLLER_NAME,
        observer.reconcile,
        store,
        workers=1,
        retry_policy=retry_policy(),
    )
    observer.setup(job_controller)
    manager.add(job_controller)

    logger.info(
        "Configured controllers",
        extra={
            "workers": settings.worker_number,
            "worker_name": settings.worker_name or None,
            "leader_elect": settings.leader_elect,
        },
    )
    return manager


__all__ = ["leader_identity", "setup_manager"]
