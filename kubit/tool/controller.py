"""kubit controller action."""

import asyncio
import logging
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
from typing import cast

from kubit.applier import KubectlApplier
from kubit.config import (
    DEFAULT_KUBECTL_IMAGE,
    ControllerConfig,
    JobRunnerConfig,
    ResolverConfig,
    RunnerConfig,
)
from kubit.controller import InstallationController
from kubit.kubernetes import InstallationSync, KubernetesCredentials, load_api_client
from kubit.renderer import KubecfgRenderer
from kubit.runner import JobRunner, LocalRunner, Runner
from kubit.store import InMemoryStore
from kubit.task import get_task_service


_LOGGER = logging.getLogger(__name__)


class ControllerAction:
    """Run the kubit controller against the current cluster."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "controller",
                help="Reconcile AppInstance resources in the cluster",
                description=(
                    "Watch AppInstance resources and install their packages, "
                    "writing the outcome back into their status."
                ),
            ),
        )
        args.add_argument(
            "--namespace",
            default=None,
            help="Only reconcile AppInstances in this namespace",
        )
        args.add_argument(
            "--paused-only",
            action="store_true",
            help="Only reconcile paused AppInstances, for running next to another controller",
        )
        args.add_argument(
            "--local-executor",
            action="store_true",
            help="Run kubecfg and kubectl in this process instead of in Jobs",
        )
        args.add_argument(
            "--resync-interval",
            type=float,
            default=ControllerConfig.resync_interval,
            help="Seconds between re-applies of every AppInstance, 0 to disable",
        )
        args.add_argument(
            "--attempt-timeout",
            type=float,
            default=ControllerConfig.attempt_timeout,
            help="Seconds a single reconciliation attempt may take",
        )
        args.add_argument(
            "--max-concurrent",
            type=int,
            default=ControllerConfig.max_concurrent,
            help="Maximum number of attempts running at once",
        )
        args.add_argument(
            "--kubecfg-image",
            default=None,
            help="Renderer image, by default the version the package was built with",
        )
        args.add_argument(
            "--kubectl-image",
            default=DEFAULT_KUBECTL_IMAGE,
            help="Image used to apply rendered manifests",
        )
        args.add_argument(
            "--service-account",
            default=JobRunnerConfig.service_account,
            help="Service account the apply Jobs run as",
        )
        args.add_argument(
            "--insecure-registry",
            action="store_true",
            help="Talk plain http to package registries",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        namespace: str | None,
        paused_only: bool,
        local_executor: bool,
        resync_interval: float,
        attempt_timeout: float,
        max_concurrent: int,
        kubecfg_image: str | None,
        kubectl_image: str,
        service_account: str,
        insecure_registry: bool,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        config = ControllerConfig(
            namespace=namespace,
            paused_only=paused_only,
            max_concurrent=max_concurrent,
            attempt_timeout=attempt_timeout,
            resync_interval=resync_interval or None,
            resolver=ResolverConfig(insecure=insecure_registry),
        )
        api_client = await load_api_client()
        async with api_client:
            store = InMemoryStore()
            sync = InstallationSync(api_client, store, namespace)
            await sync.check()

            runner: Runner
            runner_config: RunnerConfig
            if local_executor:
                runner_config = RunnerConfig()
                runner = LocalRunner(
                    KubecfgRenderer(),
                    KubectlApplier(kubectl_bin=runner_config.kubectl_bin),
                )
            else:
                runner_config = JobRunnerConfig(
                    kubecfg_image=kubecfg_image,
                    kubectl_image=kubectl_image,
                    service_account=service_account,
                    active_deadline=attempt_timeout,
                )
                runner = JobRunner(api_client, runner_config)

            controller = InstallationController(
                store,
                runner,
                config,
                credentials=KubernetesCredentials(api_client),
                runner_config=runner_config,
                in_cluster=not local_executor,
            )
            _LOGGER.info(
                "Starting controller (namespace=%s, paused_only=%s, executor=%s)",
                namespace or "*",
                paused_only,
                "local" if local_executor else "job",
            )
            sync_task = get_task_service().create_background_task(
                sync.run(), name="kubit-sync"
            )
            wait_task = asyncio.ensure_future(controller.wait())
            try:
                done, _ = await asyncio.wait(
                    [sync_task, wait_task], return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    task.result()
            finally:
                wait_task.cancel()
                sync_task.cancel()
                sync.close()
                await controller.close()
