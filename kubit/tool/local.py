"""kubit local action."""

import logging
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
import pathlib
from typing import cast

from kubit import local
from kubit.plan import RunMode
from kubit.result import AttemptResult


_LOGGER = logging.getLogger(__name__)

DRY_RUN_MODES = [RunMode.SCRIPT.value, RunMode.RENDER.value, RunMode.DIFF.value]


def _mode(dry_run: str | None) -> RunMode:
    return RunMode(dry_run) if dry_run else RunMode.APPLY


def _report(result: AttemptResult) -> None:
    """Print the outcome and raise the error of a failed run."""
    if output := local.format_result(result):
        print(output, end="" if output.endswith("\n") else "\n")
    if result.error is not None:
        raise result.error


class LocalApplyAction:
    """Apply an AppInstance file to the current cluster."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "apply",
                help="Install an AppInstance from a local file",
                description=(
                    "Resolve the package of an AppInstance file, render it and "
                    "apply it to the cluster of the current kubeconfig context."
                ),
            ),
        )
        args.add_argument(
            "path",
            help="Path of the AppInstance manifest",
            type=pathlib.Path,
        )
        args.add_argument(
            "--dry-run",
            choices=DRY_RUN_MODES,
            default=None,
            help="Print the script, the rendered manifests or a diff instead of applying",
        )
        args.add_argument(
            "--package-image",
            default=None,
            help="Override the package image, e.g. file:///path/to/main.jsonnet",
        )
        args.add_argument(
            "--skip-auth",
            action="store_true",
            help="Pull the package anonymously instead of using the docker config",
        )
        args.add_argument(
            "--as",
            dest="impersonate",
            default=None,
            help="Username to impersonate when applying",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        dry_run: str | None,
        package_image: str | None,
        skip_auth: bool,
        impersonate: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        result = await local.local_apply(
            path,
            _mode(dry_run),
            package_image=package_image,
            skip_auth=skip_auth,
            impersonate=impersonate,
        )
        _report(result)


class LocalDeleteAction:
    """Uninstall the object set of an AppInstance file."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "delete",
                help="Uninstall an AppInstance from a local file",
                description=(
                    "Delete every object applied for the AppInstance along with "
                    "its object set parent."
                ),
            ),
        )
        args.add_argument(
            "path",
            help="Path of the AppInstance manifest",
            type=pathlib.Path,
        )
        args.add_argument(
            "--dry-run",
            choices=[RunMode.SCRIPT.value],
            default=None,
            help="Print the uninstall script instead of running it",
        )
        args.add_argument(
            "--as",
            dest="impersonate",
            default=None,
            help="Username to impersonate when deleting",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        dry_run: str | None,
        impersonate: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        result = await local.local_delete(
            path, _mode(dry_run), impersonate=impersonate
        )
        _report(result)


class LocalAction:
    """kubit local action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "local",
                help="Run installations from this machine",
                description=(
                    "Install or uninstall an AppInstance file without a "
                    "controller, using kubecfg and kubectl from the PATH."
                ),
            ),
        )
        subcmds = args.add_subparsers(
            title="Available commands",
            required=True,
        )
        LocalApplyAction.register(subcmds)
        LocalDeleteAction.register(subcmds)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        # No-op given subcommands are always the dispatch target
