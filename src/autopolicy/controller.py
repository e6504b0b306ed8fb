"""
Controller process: watches, routing and the reconcile worker pool.

Watch threads stream AutoPolicy objects, every configured workload kind and
the derived autoscaling objects. Each event is mapped to a policy identity
(no network I/O on that path) and pushed onto the work queue; async workers
take one identity at a time and run a full reconcile pass for it.
"""

from __future__ import annotations

import asyncio
import signal
import threading
from typing import Any, Callable, Iterable, Mapping, Sequence

import pydantic
import structlog
from kubernetes import watch

from autopolicy.config import Settings
from autopolicy.core.errors import MissingRequiredFieldError, UpstreamUnavailableError
from autopolicy.kube import KubeClient
from autopolicy.models import AutoPolicy, ObjectRef, ResourceKind, Workload
from autopolicy.queue import WorkQueue
from autopolicy.reconciler import Reconciler, ReconcileResult
from autopolicy.router import PolicyRouter
from autopolicy.store import PolicyStore

logger = structlog.get_logger()

EventHandler = Callable[[str, Mapping[str, Any]], ObjectRef | None]
RelistHandler = Callable[[Sequence[Mapping[str, Any]]], Iterable[ObjectRef]]


def _needs_reconcile(previous: AutoPolicy | None, policy: AutoPolicy) -> bool:
    """Status-only updates (including our own status patch) keep uid and generation."""
    if previous is None or previous.metadata.uid != policy.metadata.uid:
        return True
    generation = policy.metadata.generation
    return generation is None or previous.metadata.generation != generation


class Controller:
    """Wires the policy store, router, work queue and reconciler together."""

    def __init__(self, settings: Settings, kube: KubeClient, store: PolicyStore | None = None) -> None:
        self._settings = settings
        self._kube = kube
        self.store = store or PolicyStore()
        self.router = PolicyRouter(self.store.snapshot, settings.policy_kind)
        self.reconciler = Reconciler(
            kube,
            self.store,
            policy_kind=settings.policy_kind_ref,
            derived_kind=settings.derived_kind_ref,
            workload_kinds=settings.workload_kinds,
            name_suffix=settings.derived_name_suffix,
            requeue_delay=settings.requeue_delay_seconds,
        )
        self.queue: WorkQueue | None = None

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._watchers: list[watch.Watch] = []
        self._watchers_lock = threading.Lock()

    # -- Event mapping (watch threads) --

    def handle_policy_event(self, event_type: str, obj: Mapping[str, Any]) -> ObjectRef | None:
        name = (obj.get("metadata") or {}).get("name")
        if not name:
            return None

        if event_type == "DELETED":
            self.store.delete(name)
            logger.info("policy_deleted", policy=name)
            return ObjectRef(name=name)

        previous = self.store.get(name)
        try:
            policy = self.store.upsert_raw(obj)
        except pydantic.ValidationError as e:
            logger.error("policy_invalid", policy=name, error=str(e))
            return None

        if not _needs_reconcile(previous, policy):
            return None
        return policy.ref

    def handle_policy_relist(self, objects: Sequence[Mapping[str, Any]]) -> list[ObjectRef]:
        """Replace the cache with a full list; enqueue what changed or disappeared."""
        policies: list[AutoPolicy] = []
        for obj in objects:
            try:
                policies.append(AutoPolicy.from_dict(obj))
            except pydantic.ValidationError as e:
                name = (obj.get("metadata") or {}).get("name")
                logger.error("policy_invalid", policy=name, error=str(e))

        previous = self.store.snapshot()
        removed = self.store.replace(policies)
        refs = [ObjectRef(name=name) for name in removed]
        refs.extend(
            policy.ref
            for policy in policies
            if policy.name and _needs_reconcile(previous.get(policy.name), policy)
        )
        logger.info("policies_relisted", listed=len(policies), removed=removed)
        return refs

    def handle_workload_event(
        self, kind: ResourceKind, event_type: str, obj: Mapping[str, Any]
    ) -> ObjectRef | None:
        try:
            workload = Workload.from_object(kind, obj)
        except MissingRequiredFieldError as e:
            logger.debug("workload_event_ignored", reason=e.message, **e.details)
            return None
        return self.router.route(workload)

    def handle_derived_event(self, event_type: str, obj: Mapping[str, Any]) -> ObjectRef | None:
        return self.router.route_owner(obj)

    def enqueue(self, ref: ObjectRef) -> None:
        if self.queue is not None:
            self.queue.add_threadsafe(ref)

    # -- Watch threads --

    def _watch_loop(
        self, kind: ResourceKind, handler: EventHandler, relist: RelistHandler | None = None
    ) -> None:
        log = logger.bind(kind=str(kind))
        while not self._stop.is_set():
            watcher = watch.Watch()
            with self._watchers_lock:
                self._watchers.append(watcher)
            try:
                resource_version = None
                if relist is not None:
                    # Reflector: list, then watch from the list's version so
                    # objects deleted while no watch was open are dropped.
                    objects, resource_version = self._kube.relist(kind)
                    for ref in relist(objects):
                        self.enqueue(ref)
                log.debug("watch_started", resource_version=resource_version)
                for event_type, obj in self._kube.stream(
                    kind, watcher, self._settings.watch_timeout_seconds, resource_version=resource_version
                ):
                    if self._stop.is_set():
                        break
                    if event_type == "ERROR":
                        # Usually 410 Gone; the next session relists or replays current state.
                        log.warning("watch_error_event", status=obj.get("code"), reason=obj.get("reason"))
                        break
                    ref = handler(event_type, obj)
                    if ref is not None:
                        self.enqueue(ref)
            except UpstreamUnavailableError as e:
                log.warning("watch_failed", error=e.message)
                self._stop.wait(self._settings.requeue_delay_seconds)
            finally:
                with self._watchers_lock:
                    self._watchers.remove(watcher)
        log.debug("watch_stopped")

    def _start_watch(
        self, kind: ResourceKind, handler: EventHandler, relist: RelistHandler | None = None
    ) -> None:
        thread = threading.Thread(
            target=self._watch_loop,
            args=(kind, handler, relist),
            name=f"watch-{kind.kind.lower()}",
            daemon=True,
        )
        thread.start()
        self._threads.append(thread)

    def start_watches(self) -> None:
        settings = self._settings
        self._start_watch(settings.policy_kind_ref, self.handle_policy_event, self.handle_policy_relist)
        for kind in settings.workload_kinds:
            self._start_watch(
                kind,
                lambda event_type, obj, kind=kind: self.handle_workload_event(kind, event_type, obj),
            )
        self._start_watch(settings.derived_kind_ref, self.handle_derived_event)

    # -- Workers --

    async def process(self, ref: ObjectRef) -> ReconcileResult:
        """Run one reconcile pass and schedule the retry if it asks for one."""
        try:
            result = await self.reconciler.reconcile(ref)
        except Exception as e:
            result = self.reconciler.error_policy(ref, e)

        if result.requeue_after is not None and self.queue is not None:
            self.queue.add_after(ref, result.requeue_after)
        return result

    async def _worker(self, worker_id: int) -> None:
        assert self.queue is not None
        while True:
            ref = await self.queue.get()
            if ref is None:
                logger.debug("worker_stopped", worker=worker_id)
                return
            try:
                await self.process(ref)
            finally:
                self.queue.done(ref)

    # -- Lifecycle --

    async def run(self) -> None:
        """
        Run until stopped.

        Raises:
            ConfigurationError: If the AutoPolicy CRD is not queryable
        """
        settings = self._settings
        await self._kube.check_queryable(settings.policy_kind_ref)

        loop = asyncio.get_running_loop()
        self.queue = WorkQueue(loop)
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.stop)

        self.start_watches()
        logger.info(
            "controller_started",
            workload_kinds=[str(kind) for kind in settings.workload_kinds],
            derived_kind=str(settings.derived_kind_ref),
            workers=settings.max_concurrent_reconciles,
        )

        workers = [
            asyncio.create_task(self._worker(i)) for i in range(settings.max_concurrent_reconciles)
        ]
        await asyncio.gather(*workers)

        for thread in self._threads:
            thread.join(timeout=1.0)
        logger.info("controller_stopped")

    def stop(self) -> None:
        if self._stop.is_set():
            return
        logger.info("controller_stopping")
        self._stop.set()
        with self._watchers_lock:
            for watcher in self._watchers:
                watcher.stop()
        if self.queue is not None:
            self.queue.shutdown()
