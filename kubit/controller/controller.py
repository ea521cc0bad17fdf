"""
Installation controller implementation.

This controller reconciles AppInstance resources held in the store into
cluster state. Each reconciliation attempt resolves the package, synthesizes
an execution plan and hands it to a runner, then writes the outcome back as
the installation's status.

Key Concepts:
    - Attempt: one pass of resolve, plan and execute for a single spec
      generation. The outcome is written to status exactly once.
    - Worker: at most one task per installation consumes its triggers. Store
      events, retry timers and resyncs that arrive while an attempt runs are
      coalesced into a single follow up attempt.
    - Object set: everything an installation applied, tracked by the applyset
      label so that uninstall and pruning never touch foreign objects.

Dependencies:
    - kubit.store.Store: Source of installations and sink for status.
    - kubit.package.PackageResolver: Fetches and extracts packages.
    - kubit.plan.synthesize: Builds the execution plan.
    - kubit.runner.Runner: Executes plans locally or as in-cluster jobs.
"""

import asyncio
from datetime import datetime, timezone
import logging

from kubit.config import ControllerConfig, RunnerConfig
from kubit.context import trace_context
from kubit.credentials import CredentialProvider, NoCredentials
from kubit.exceptions import (
    AttemptTimeoutError,
    ConflictError,
    ExecutionError,
    KubitException,
    ObjectSetCollisionError,
    UninstallError,
)
from kubit.manifest import (
    CONDITION_FAILED,
    CONDITION_PROGRESSING,
    CONDITION_READY,
    UNINSTALL_FINALIZER,
    Condition,
    Installation,
    InstallationStatus,
    NamedResource,
)
from kubit.objectset import ObjectSetRegistry, object_set_for
from kubit.package import PackageResolver
from kubit.plan import UNINSTALL_PHASE, RunMode, synthesize, uninstall_step
from kubit.result import AttemptResult, PhaseResult, truncate_log
from kubit.runner import Runner
from kubit.store import Store, StoreEvent
from kubit.task import get_task_service
from kubit.workdir import Workdir, attempt_workdir

from .artifact import ObjectSetArtifact
from .record import AttemptRecord

_LOGGER = logging.getLogger(__name__)

# Bound on condition messages; the full output is in lastLogs
MAX_MESSAGE_LENGTH = 1024

REASON_APPLIED = "Applied"
REASON_SETTLED = "Settled"
REASON_RETRYING = "Retrying"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _message(error: KubitException) -> str:
    message = str(error).strip()
    if len(message) > MAX_MESSAGE_LENGTH:
        return message[: MAX_MESSAGE_LENGTH - 3] + "..."
    return message


class InstallationController:
    """
    Controller for reconciling AppInstance resources.

    The controller listens for installations being added or changed in the
    store and runs one worker per installation. Attempts for distinct
    installations run concurrently, bounded by `max_concurrent`.
    """

    def __init__(
        self,
        store: Store,
        runner: Runner,
        config: ControllerConfig | None = None,
        *,
        resolver: PackageResolver | None = None,
        credentials: CredentialProvider | None = None,
        runner_config: RunnerConfig | None = None,
        in_cluster: bool = False,
    ) -> None:
        """
        Initialize the controller and start listening to the store.

        Args:
            store: The store holding installations and their status
            runner: Executes plans, in process or as jobs
            config: Controller configuration
            resolver: Package resolver, built from `config.resolver` if unset
            credentials: Source of registry credentials, anonymous if unset
            runner_config: Binaries and impersonation used in plans
            in_cluster: Plans refer to packages by pinned reference
        """
        self._store = store
        self._runner = runner
        self._config = config or ControllerConfig()
        self._resolver = resolver or PackageResolver(self._config.resolver)
        self._credentials = credentials or NoCredentials()
        self._runner_config = runner_config or RunnerConfig()
        self._in_cluster = in_cluster
        self._records: dict[NamedResource, AttemptRecord] = {}
        self._workers: dict[NamedResource, asyncio.Task[None]] = {}
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent)
        self._registry = ObjectSetRegistry()
        self._fatal: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._task_service = get_task_service()
        self._tasks: list[asyncio.Task[None]] = []
        if self._config.resync_interval:
            self._tasks.append(
                self._task_service.create_background_task(
                    self._resync(self._config.resync_interval), name="kubit-resync"
                )
            )
        self._listeners = [
            store.add_listener(StoreEvent.OBJECT_REMOVED, self._on_removed),
            store.add_listener(StoreEvent.OBJECT_ADDED, self._on_added, flush=True),
        ]

    async def close(self) -> None:
        """Stop listening and cancel workers, timers and the resync loop."""
        _LOGGER.info("Closing InstallationController, cancelling tasks")
        for remove in self._listeners:
            remove()
        self._listeners.clear()
        for record in self._records.values():
            record.cancel_retry()
        tasks = [*self._tasks, *self._workers.values()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def wait(self) -> None:
        """Block until the controller hits a fatal error, then raise it."""
        await self._fatal

    def record(self, resource_id: NamedResource) -> AttemptRecord | None:
        """Return the attempt bookkeeping for an installation."""
        return self._records.get(resource_id)

    def _on_added(self, resource_id: NamedResource, obj: Installation) -> None:
        self.trigger(resource_id)

    def _on_removed(self, resource_id: NamedResource, obj: Installation) -> None:
        _LOGGER.debug("Installation %s was removed", resource_id.namespaced_name)
        if (record := self._records.pop(resource_id, None)) is not None:
            record.cancel_retry()
        self._registry.forget(resource_id)

    def trigger(self, resource_id: NamedResource, force: bool = False) -> None:
        """Request a reconciliation of the installation.

        Triggers arriving while a worker is busy are coalesced: the worker
        runs exactly one more pass afterwards. With `force` the next pass
        attempts even if the generation was already observed.
        """
        if (record := self._records.get(resource_id)) is None:
            record = AttemptRecord(resource_id)
            self._records[resource_id] = record
        record.pending = True
        record.force = record.force or force
        if resource_id in self._workers:
            _LOGGER.debug("Coalescing trigger for %s", resource_id.namespaced_name)
            return
        self._workers[resource_id] = self._task_service.create_task(
            self._worker(resource_id),
            name=f"kubit-reconcile-{resource_id.namespaced_name}",
        )

    async def _worker(self, resource_id: NamedResource) -> None:
        try:
            while (
                record := self._records.get(resource_id)
            ) is not None and record.pending:
                record.pending = False
                async with self._semaphore:
                    await self._reconcile(resource_id, record)
        except ObjectSetCollisionError as err:
            _LOGGER.critical("Fatal error reconciling %s: %s", resource_id, err)
            if not self._fatal.done():
                self._fatal.set_exception(err)
            raise
        finally:
            if self._workers.get(resource_id) is asyncio.current_task():
                del self._workers[resource_id]

    async def _resync(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            objects = self._store.list_objects()
            _LOGGER.debug("Resyncing %d installations", len(objects))
            for obj in objects:
                record = self._records.get(obj.resource_id)
                if record is not None and record.retry is not None:
                    continue
                self.trigger(obj.resource_id, force=True)

    def _schedule_retry(self, resource_id: NamedResource, record: AttemptRecord) -> None:
        delay = self._config.backoff(record.failures)
        _LOGGER.info(
            "Retrying %s in %.1fs after %d failures",
            resource_id.namespaced_name,
            delay,
            record.failures,
        )
        record.cancel_retry()
        record.retry = self._task_service.create_background_task(
            self._retry_after(resource_id, record, delay),
            name=f"kubit-retry-{resource_id.namespaced_name}",
        )

    async def _retry_after(
        self, resource_id: NamedResource, record: AttemptRecord, delay: float
    ) -> None:
        await asyncio.sleep(delay)
        record.retry = None
        if self._records.get(resource_id) is record:
            self.trigger(resource_id, force=True)

    def _needs_attempt(
        self, obj: Installation, record: AttemptRecord, toggled: bool
    ) -> bool:
        force, record.force = record.force, False
        if record.terminal_generation == obj.generation and not toggled:
            _LOGGER.debug(
                "Generation %d of %s failed terminally, waiting for a change",
                obj.generation,
                obj.namespaced_name,
            )
            return False
        if force or toggled:
            return True
        status = self._store.get_status(obj.resource_id)
        observed = (status.observed_generation if status else None) or 0
        return observed < obj.generation

    async def _reconcile(self, resource_id: NamedResource, record: AttemptRecord) -> None:
        if (obj := self._store.get_object(resource_id)) is None:
            return
        if obj.pause != self._config.paused_only:
            if record.paused != obj.pause:
                _LOGGER.info(
                    "Skipping %s installation %s",
                    "paused" if obj.pause else "unpaused",
                    obj.namespaced_name,
                )
            record.paused = obj.pause
            record.force = False
            return
        toggled = record.paused is not None and record.paused != obj.pause
        record.paused = obj.pause
        if obj.deleting:
            await self._finalize(resource_id, obj, record)
            return
        if not self._needs_attempt(obj, record, toggled):
            return
        await self._attempt(resource_id, obj, record)

    def _ensure_finalizer(self, obj: Installation) -> None:
        if UNINSTALL_FINALIZER not in obj.finalizers:
            _LOGGER.debug("Adding finalizer to %s", obj.namespaced_name)
            self._store.set_finalizers(
                obj.resource_id, [*obj.finalizers, UNINSTALL_FINALIZER]
            )

    async def _attempt(
        self, resource_id: NamedResource, obj: Installation, record: AttemptRecord
    ) -> None:
        """Run one attempt on the current generation and settle it."""
        try:
            record.begin(obj.generation)
        except ConflictError as err:
            _LOGGER.debug("%s", err)
            record.pending = True
            return
        record.cancel_retry()
        _LOGGER.info(
            "Reconciling %s generation %d", obj.namespaced_name, obj.generation
        )
        with trace_context(f"Reconcile '{obj.namespaced_name}'"):
            self._ensure_finalizer(obj)
            with attempt_workdir(
                resource_id, obj.generation, self._config.resolver.workdir
            ) as workdir:
                try:
                    async with asyncio.timeout(self._config.attempt_timeout):
                        result = await self._plan_and_run(obj, record, workdir)
                except asyncio.TimeoutError:
                    _LOGGER.warning(
                        "Attempt on %s timed out after %ss",
                        obj.namespaced_name,
                        self._config.attempt_timeout,
                    )
                    result = AttemptResult(
                        installation=resource_id,
                        generation=obj.generation,
                        mode=RunMode.APPLY,
                        error=AttemptTimeoutError(
                            f"Attempt exceeded {self._config.attempt_timeout}s"
                        ),
                    )
        record.settle(result.error)
        self._settle(resource_id, record, result)
        record.idle()

    async def _plan_and_run(
        self, obj: Installation, record: AttemptRecord, workdir: Workdir
    ) -> AttemptResult:
        resource_id = obj.resource_id
        object_set = self._registry.register(resource_id)
        result = AttemptResult(
            installation=resource_id, generation=obj.generation, mode=RunMode.APPLY
        )
        try:
            credentials = await self._credentials.credentials(obj)
            package = await self._resolver.resolve(
                obj.package.image, credentials, workdir.subdir("package")
            )
            result.digest = package.digest
            plan = synthesize(
                package,
                obj,
                object_set,
                workdir.path,
                in_cluster=self._in_cluster,
                config=self._runner_config,
            )
            record.executing()
            return await self._runner.run(plan, RunMode.APPLY)
        except KubitException as err:
            _LOGGER.info("Attempt on %s failed: %s", obj.namespaced_name, err)
            result.error = err
        except Exception as err:
            _LOGGER.error(
                "Uncaught exception reconciling %s: %s",
                obj.namespaced_name,
                err,
                exc_info=True,
            )
            result.error = ExecutionError(
                "reconcile", None, f"{type(err).__name__}: {err}"
            )
        return result

    def _status(
        self,
        resource_id: NamedResource,
        generation: int,
        error: KubitException | None,
        logs: dict[str, str],
    ) -> InstallationStatus:
        """Status reporting a settled attempt."""
        previous = self._store.get_status(resource_id)
        if error is None:
            conditions = [
                Condition(
                    CONDITION_READY,
                    "True",
                    REASON_APPLIED,
                    f"Applied generation {generation}",
                ),
                Condition(CONDITION_FAILED, "False", REASON_APPLIED),
                Condition(CONDITION_PROGRESSING, "False", REASON_SETTLED),
            ]
        else:
            conditions = [
                Condition(CONDITION_READY, "False", error.reason, _message(error)),
                Condition(CONDITION_FAILED, "True", error.reason, _message(error)),
                Condition(
                    CONDITION_PROGRESSING,
                    "True" if error.retryable else "False",
                    REASON_RETRYING if error.retryable else REASON_SETTLED,
                ),
            ]
        now = _now()
        for condition in conditions:
            prior = previous.condition(condition.type) if previous else None
            if prior is not None and prior.status == condition.status:
                condition.last_transition_time = prior.last_transition_time
            else:
                condition.last_transition_time = now
        return InstallationStatus(
            last_logs=logs,
            observed_generation=generation,
            conditions=conditions,
        )

    def _settle(
        self, resource_id: NamedResource, record: AttemptRecord, result: AttemptResult
    ) -> None:
        """Write the outcome of an attempt once, unless it was superseded."""
        if (current := self._store.get_object(resource_id)) is None:
            _LOGGER.info(
                "Installation %s went away during the attempt", resource_id
            )
            return
        if current.generation > result.generation:
            _LOGGER.info(
                "Discarding result of %s generation %d, superseded by %d",
                resource_id.namespaced_name,
                result.generation,
                current.generation,
            )
            return
        status = self._status(
            resource_id,
            result.generation,
            result.error,
            result.logs(self._runner_config.log_limit),
        )
        if not self._store.update_status(resource_id, status):
            return
        if result.error is None:
            self._store.set_artifact(
                resource_id,
                ObjectSetArtifact(
                    set_id=object_set_for(resource_id).id,
                    members=frozenset(result.members),
                    digest=result.digest,
                    generation=result.generation,
                ),
            )
            _LOGGER.info(
                "Successfully reconciled %s generation %d",
                resource_id.namespaced_name,
                result.generation,
            )
        elif result.error.retryable:
            self._schedule_retry(resource_id, record)
        else:
            _LOGGER.warning(
                "Reconciling %s failed with %s, waiting for a spec change",
                resource_id.namespaced_name,
                result.error.reason,
            )

    async def _finalize(
        self, resource_id: NamedResource, obj: Installation, record: AttemptRecord
    ) -> None:
        """Uninstall the object set, then release the installation."""
        if UNINSTALL_FINALIZER not in obj.finalizers:
            return
        try:
            record.begin(obj.generation)
        except ConflictError as err:
            _LOGGER.debug("%s", err)
            record.pending = True
            return
        record.cancel_retry()
        record.executing()
        _LOGGER.info("Uninstalling %s", obj.namespaced_name)
        object_set = object_set_for(resource_id)
        with attempt_workdir(
            resource_id, obj.generation, self._config.resolver.workdir
        ) as workdir:
            step = uninstall_step(object_set, workdir.path, self._runner_config)
            try:
                async with asyncio.timeout(self._config.attempt_timeout):
                    phase = await self._runner.uninstall(step)
            except asyncio.TimeoutError:
                phase = PhaseResult(
                    UNINSTALL_PHASE,
                    None,
                    f"Uninstall exceeded {self._config.attempt_timeout}s\n",
                )
            except Exception as err:
                _LOGGER.error(
                    "Uncaught exception uninstalling %s: %s",
                    obj.namespaced_name,
                    err,
                    exc_info=True,
                )
                phase = PhaseResult(UNINSTALL_PHASE, None, f"{err}\n")
        if phase.success:
            record.settle(None)
            record.idle()
            self._registry.forget(resource_id)
            self._store.set_finalizers(
                resource_id,
                [f for f in obj.finalizers if f != UNINSTALL_FINALIZER],
            )
            _LOGGER.info("Uninstalled %s", obj.namespaced_name)
            return
        error = UninstallError(
            f"Uninstall of {obj.namespaced_name} failed: {phase.output.strip()}"
        )
        record.settle(error)
        status = self._status(
            resource_id,
            obj.generation,
            error,
            {UNINSTALL_PHASE: truncate_log(phase.output, self._runner_config.log_limit)},
        )
        self._store.update_status(resource_id, status)
        self._schedule_retry(resource_id, record)
        record.idle()
