"""Runner executing plans as ephemeral in-cluster Jobs.

Each attempt becomes one Job in the namespace of the installation:

- the overlay is stored in a ConfigMap `kubit-overlay-<hash>` and mounted
  where the render step expects it.
- a `render` init container runs the renderer image pinned to the version
  the package was built with and exports into an `emptyDir` volume.
- an `apply` container runs `kubectl apply --applyset` over that volume
  using the credentials of a service account.

The job is never retried by Kubernetes; retries are the controller's job.
"""

import asyncio
import hashlib
import logging
import math
from typing import Any

from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiException
from kubernetes_asyncio.client.api_client import ApiClient
import yaml

from kubit.config import JobRunnerConfig, KUBECFG_REGISTRY
from kubit.context import trace_context
from kubit.docker_config import DOCKER_CONFIG_KEY, DOCKER_CONFIG_SECRET_TYPE
from kubit.exceptions import ExecutionError, InputException, KubitException
from kubit.plan import (
    APPLY_PHASE,
    OVERLAY_FILENAME,
    RENDER_PHASE,
    ExecutionPlan,
    RunMode,
    UninstallStep,
)
from kubit.result import AttemptResult, PhaseResult, truncate_log

from .base import Runner

__all__ = [
    "JobRunner",
]

_LOGGER = logging.getLogger(__name__)

INSTANCE_LABEL = "kubit.kubecfg.dev/instance"
JOB_NAME_LABEL = "job-name"

DOCKER_CONFIG_DIR = "/.docker"

MANIFESTS_VOLUME = "manifests"
OVERLAY_VOLUME = "overlay"
CREDENTIALS_VOLUME = "credentials"
CLEANUP_VOLUME = "cleanup"

# Kubernetes names are limited to 63 characters
MAX_NAME_LENGTH = 63


def _name(*parts: Any) -> str:
    return "-".join(str(part) for part in parts)[:MAX_NAME_LENGTH].rstrip("-")


def overlay_configmap_name(plan: ExecutionPlan) -> str:
    """Name of the ConfigMap holding the overlay, derived from its content."""
    digest = hashlib.sha256(plan.render.overlay_json().encode("utf-8")).hexdigest()
    return f"kubit-overlay-{digest[:16]}"


def apply_job_name(plan: ExecutionPlan) -> str:
    return _name("kubit-apply", plan.installation.name, plan.generation)


def credentials_secret_name(plan: ExecutionPlan) -> str:
    return _name("kubit-credentials", plan.installation.name, plan.generation)


def cleanup_job_name(step: UninstallStep) -> str:
    return _name("kubit-cleanup", step.object_set.name)


def _env(values: dict[str, str]) -> list[dict[str, str]]:
    return [{"name": key, "value": value} for key, value in sorted(values.items())]


class JobRunner(Runner):
    """Runs apply attempts as Jobs through the Kubernetes API.

    Only the apply and script modes are supported; the dry-run modes that
    return manifests or diffs need the local runner.
    """

    def __init__(self, api_client: ApiClient, config: JobRunnerConfig | None = None):
        self._config = config or JobRunnerConfig()
        self._batch_api = client.BatchV1Api(api_client)
        self._core_api = client.CoreV1Api(api_client)

    def kubecfg_image(self, plan: ExecutionPlan) -> str:
        """Renderer image for the plan, pinned to the package's kubecfg version."""
        if self._config.kubecfg_image:
            return self._config.kubecfg_image
        if not plan.kubecfg_version:
            raise InputException(
                f"Package for {plan.installation} does not record a kubecfg "
                "version and no renderer image is configured"
            )
        return f"{KUBECFG_REGISTRY}:{plan.kubecfg_version}"

    def _deadline(self) -> dict[str, int]:
        if self._config.active_deadline is None:
            return {}
        seconds = max(1, math.ceil(self._config.active_deadline))
        return {"activeDeadlineSeconds": seconds}

    def credentials_secret(self, plan: ExecutionPlan) -> dict[str, Any] | None:
        """Pull secret holding the credential that fetched the package."""
        if plan.registry_credentials is None:
            return None
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": DOCKER_CONFIG_SECRET_TYPE,
            "metadata": {
                "name": credentials_secret_name(plan),
                "namespace": plan.object_set.namespace,
                "labels": {INSTANCE_LABEL: plan.installation.name},
            },
            "stringData": {DOCKER_CONFIG_KEY: plan.registry_credentials.to_json()},
        }

    def overlay_configmap(self, plan: ExecutionPlan) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": overlay_configmap_name(plan),
                "namespace": plan.object_set.namespace,
                "labels": {INSTANCE_LABEL: plan.installation.name},
            },
            "data": {OVERLAY_FILENAME: plan.render.overlay_json()},
        }

    def apply_job(self, plan: ExecutionPlan) -> dict[str, Any]:
        """The Job manifest running both phases of the plan."""
        render = plan.render
        manifests_mount = {
            "name": MANIFESTS_VOLUME,
            "mountPath": str(render.output_dir),
        }
        volumes: list[dict[str, Any]] = [
            {"name": MANIFESTS_VOLUME, "emptyDir": {}},
            {
                "name": OVERLAY_VOLUME,
                "configMap": {"name": overlay_configmap_name(plan)},
            },
        ]
        render_mounts = [
            manifests_mount,
            {
                "name": OVERLAY_VOLUME,
                "mountPath": str(render.overlay_path.parent),
                "readOnly": True,
            },
        ]
        render_env: dict[str, str] = {}
        if plan.registry_credentials is not None:
            volumes.append(
                {
                    "name": CREDENTIALS_VOLUME,
                    "secret": {
                        "secretName": credentials_secret_name(plan),
                        "items": [{"key": DOCKER_CONFIG_KEY, "path": "config.json"}],
                    },
                }
            )
            render_mounts.append(
                {
                    "name": CREDENTIALS_VOLUME,
                    "mountPath": DOCKER_CONFIG_DIR,
                    "readOnly": True,
                }
            )
            render_env["DOCKER_CONFIG"] = DOCKER_CONFIG_DIR
        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {
                "name": apply_job_name(plan),
                "namespace": plan.object_set.namespace,
                "labels": {INSTANCE_LABEL: plan.installation.name},
                "annotations": {"kubit.kubecfg.dev/digest": plan.digest},
            },
            "spec": {
                "backoffLimit": 0,
                **self._deadline(),
                "template": {
                    "metadata": {"labels": {INSTANCE_LABEL: plan.installation.name}},
                    "spec": {
                        "restartPolicy": "Never",
                        "serviceAccountName": self._config.service_account,
                        "volumes": volumes,
                        "initContainers": [
                            {
                                "name": RENDER_PHASE,
                                "image": self.kubecfg_image(plan),
                                "command": render.command(),
                                "env": _env(render_env),
                                "volumeMounts": render_mounts,
                            }
                        ],
                        "containers": [
                            {
                                "name": APPLY_PHASE,
                                "image": self._config.kubectl_image,
                                "command": plan.apply.command(),
                                "env": _env(plan.apply.env),
                                "volumeMounts": [manifests_mount],
                            }
                        ],
                    },
                },
            },
        }

    def cleanup_configmap(self, step: UninstallStep) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": cleanup_job_name(step),
                "namespace": step.object_set.namespace,
                "labels": {INSTANCE_LABEL: step.object_set.name},
            },
            "data": {
                step.cleanup_path.name: yaml.dump(step.cleanup_doc(), sort_keys=False)
            },
        }

    def cleanup_job(self, step: UninstallStep) -> dict[str, Any]:
        """The Job manifest pruning the set, then removing its bookkeeping."""
        prune, delete_cleanup, delete_parent = step.commands()
        mounts = [
            {
                "name": CLEANUP_VOLUME,
                "mountPath": str(step.cleanup_dir),
                "readOnly": True,
            }
        ]
        env = _env(step.env)
        image = self._config.kubectl_image
        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {
                "name": cleanup_job_name(step),
                "namespace": step.object_set.namespace,
                "labels": {INSTANCE_LABEL: step.object_set.name},
            },
            "spec": {
                "backoffLimit": 0,
                **self._deadline(),
                "template": {
                    "metadata": {"labels": {INSTANCE_LABEL: step.object_set.name}},
                    "spec": {
                        "restartPolicy": "Never",
                        "serviceAccountName": self._config.service_account,
                        "volumes": [
                            {
                                "name": CLEANUP_VOLUME,
                                "configMap": {"name": cleanup_job_name(step)},
                            }
                        ],
                        "initContainers": [
                            {
                                "name": "prune",
                                "image": image,
                                "command": prune,
                                "env": env,
                                "volumeMounts": mounts,
                            },
                            {
                                "name": "delete-cleanup",
                                "image": image,
                                "command": delete_cleanup,
                            },
                        ],
                        "containers": [
                            {
                                "name": "delete-parent",
                                "image": image,
                                "command": delete_parent,
                            }
                        ],
                    },
                },
            },
        }

    async def _create_or_replace_configmap(self, body: dict[str, Any]) -> None:
        metadata = body["metadata"]
        try:
            await self._core_api.create_namespaced_config_map(
                namespace=metadata["namespace"], body=body
            )
        except ApiException as ex:
            if ex.status != 409:
                raise
            await self._core_api.replace_namespaced_config_map(
                name=metadata["name"], namespace=metadata["namespace"], body=body
            )

    async def _create_or_replace_secret(self, body: dict[str, Any]) -> None:
        metadata = body["metadata"]
        try:
            await self._core_api.create_namespaced_secret(
                namespace=metadata["namespace"], body=body
            )
        except ApiException as ex:
            if ex.status != 409:
                raise
            await self._core_api.replace_namespaced_secret(
                name=metadata["name"], namespace=metadata["namespace"], body=body
            )

    async def _delete_secret(self, name: str, namespace: str) -> None:
        try:
            await self._core_api.delete_namespaced_secret(
                name=name, namespace=namespace
            )
        except ApiException as ex:
            if ex.status != 404:
                raise

    async def _delete_configmap(self, name: str, namespace: str) -> None:
        try:
            await self._core_api.delete_namespaced_config_map(
                name=name, namespace=namespace
            )
        except ApiException as ex:
            if ex.status != 404:
                raise

    async def _wait_for_active_jobs(self, instance: str, namespace: str) -> None:
        """Wait until no job of the installation is still running."""
        while True:
            jobs = await self._batch_api.list_namespaced_job(
                namespace=namespace, label_selector=f"{INSTANCE_LABEL}={instance}"
            )
            active = [
                job.metadata.name
                for job in jobs.items
                if job.status.active or job.metadata.deletion_timestamp
            ]
            if not active:
                return
            _LOGGER.info("Waiting for active jobs %s to finish", active)
            await asyncio.sleep(self._config.poll_interval)

    async def _delete_job(
        self, name: str, namespace: str, propagation_policy: str = "Background"
    ) -> None:
        try:
            await self._batch_api.delete_namespaced_job(
                name=name, namespace=namespace, propagation_policy=propagation_policy
            )
        except ApiException as ex:
            if ex.status != 404:
                raise

    async def _run_job(self, body: dict[str, Any]) -> list[PhaseResult]:
        """Create the job, wait for it to finish and collect per container results."""
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]
        await self._delete_job(name, namespace)
        await self._batch_api.create_namespaced_job(namespace=namespace, body=body)
        _LOGGER.info("Created job %s/%s", namespace, name)
        try:
            job = await self._wait_for_job(name, namespace)
        except asyncio.CancelledError:
            # A job being deleted counts as active until its pod is gone
            _LOGGER.info("Stopping cancelled job %s/%s", namespace, name)
            await self._delete_job(name, namespace, "Foreground")
            raise
        _LOGGER.debug(
            "Job %s/%s finished (succeeded=%s)", namespace, name, job.status.succeeded
        )
        try:
            return await self._collect(name, namespace)
        finally:
            await self._delete_job(name, namespace)

    async def _wait_for_job(self, name: str, namespace: str) -> Any:
        while True:
            job = await self._batch_api.read_namespaced_job_status(
                name=name, namespace=namespace
            )
            if job.status.succeeded or job.status.failed:
                return job
            await asyncio.sleep(self._config.poll_interval)

    async def _collect(self, job_name: str, namespace: str) -> list[PhaseResult]:
        pods = await self._core_api.list_namespaced_pod(
            namespace=namespace, label_selector=f"{JOB_NAME_LABEL}={job_name}"
        )
        if not pods.items:
            return []
        pod = max(pods.items, key=lambda pod: pod.metadata.creation_timestamp)
        statuses = [
            *(pod.status.init_container_statuses or []),
            *(pod.status.container_statuses or []),
        ]
        results = []
        for status in statuses:
            terminated = status.state.terminated if status.state else None
            if terminated is None:
                continue
            try:
                output = await self._core_api.read_namespaced_pod_log(
                    name=pod.metadata.name, namespace=namespace, container=status.name
                )
            except ApiException as ex:
                output = f"Unable to read logs of container {status.name}: {ex.reason}\n"
            results.append(
                PhaseResult(
                    phase=status.name,
                    exit_code=terminated.exit_code,
                    output=truncate_log(output or "", self._config.log_limit),
                )
            )
        return results

    async def run(self, plan: ExecutionPlan, mode: RunMode) -> AttemptResult:
        result = AttemptResult(
            installation=plan.installation,
            generation=plan.generation,
            mode=mode,
            digest=plan.digest,
        )
        if mode is RunMode.SCRIPT:
            result.script = plan.script(RunMode.APPLY)
            return result
        if mode is not RunMode.APPLY:
            result.error = InputException(
                f"Mode {mode.value} is not supported by in-cluster execution"
            )
            return result
        namespace = plan.object_set.namespace
        try:
            job = self.apply_job(plan)
            with trace_context(f"Job '{job['metadata']['name']}'"):
                await self._wait_for_active_jobs(plan.installation.name, namespace)
                configmap = self.overlay_configmap(plan)
                secret = self.credentials_secret(plan)
                await self._create_or_replace_configmap(configmap)
                try:
                    if secret is not None:
                        await self._create_or_replace_secret(secret)
                    phases = await self._run_job(job)
                finally:
                    await self._delete_configmap(
                        configmap["metadata"]["name"], namespace
                    )
                    if secret is not None:
                        await self._delete_secret(secret["metadata"]["name"], namespace)
        except KubitException as err:
            result.error = err
            return result
        except ApiException as ex:
            _LOGGER.info("Job for %s failed: %s", plan.installation, ex)
            result.error = ExecutionError(
                APPLY_PHASE, None, f"Kubernetes API error: {ex.status} {ex.reason}\n"
            )
            return result
        result.phases = phases
        for phase in phases:
            if not phase.success:
                result.error = phase.error()
                break
        else:
            if [phase.phase for phase in phases] != [RENDER_PHASE, APPLY_PHASE]:
                result.error = PhaseResult(
                    APPLY_PHASE, None, "Job finished without running every phase\n"
                ).error()
        return result

    async def uninstall(self, step: UninstallStep) -> PhaseResult:
        namespace = step.object_set.namespace
        configmap = self.cleanup_configmap(step)
        with trace_context(f"Job '{cleanup_job_name(step)}'"):
            await self._wait_for_active_jobs(step.object_set.name, namespace)
            await self._create_or_replace_configmap(configmap)
            try:
                phases = await self._run_job(self.cleanup_job(step))
            finally:
                await self._delete_configmap(configmap["metadata"]["name"], namespace)
        output = "".join(phase.output for phase in phases)
        failed = [phase for phase in phases if not phase.success]
        if failed:
            return PhaseResult(step.phase, failed[0].exit_code, output)
        if len(phases) != 3:
            return PhaseResult(step.phase, None, output)
        return PhaseResult(step.phase, 0, output)
