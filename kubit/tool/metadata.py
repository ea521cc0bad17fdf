"""kubit metadata action."""

import logging
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
import pathlib
from typing import cast

from kubit.local import fetch_package_config
from kubit.manifest import read_installation


_LOGGER = logging.getLogger(__name__)


def _add_common_flags(args: ArgumentParser) -> None:
    args.add_argument(
        "path",
        help="Path of the AppInstance manifest",
        type=pathlib.Path,
    )
    args.add_argument(
        "--skip-auth",
        action="store_true",
        help="Pull the package anonymously instead of using the docker config",
    )


class MetadataSchemaAction:
    """Print the JSON schema of a package."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "schema",
                help="Print the JSON schema of the package spec",
            ),
        )
        _add_common_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        skip_auth: bool,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        installation = await read_installation(path)
        config = await fetch_package_config(path, skip_auth=skip_auth)
        print(config.schema(installation.package.image))


class MetadataImagesAction:
    """Print the images referenced by a package."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "images",
                help="Print the OCI images used by the package",
            ),
        )
        _add_common_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        skip_auth: bool,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        installation = await read_installation(path)
        config = await fetch_package_config(path, skip_auth=skip_auth)
        for image in config.images(installation.package.image):
            print(image)


class MetadataAction:
    """kubit metadata action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "metadata",
                help="Inspect the metadata of a package",
                description="Print metadata stored in the config of a package artifact.",
            ),
        )
        subcmds = args.add_subparsers(
            title="Available commands",
            required=True,
        )
        MetadataSchemaAction.register(subcmds)
        MetadataImagesAction.register(subcmds)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        # No-op given subcommands are always the dispatch target
