"""Command line tool for installing packages and running the kubit controller."""

import argparse
import asyncio
import logging
import sys
import traceback
from typing import Any

import yaml

from kubit.exceptions import KubitException
from kubit.task import task_service_context
from . import controller, local, metadata

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for installing packaged Kubernetes applications.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    local.LocalAction.register(subparsers)
    controller.ControllerAction.register(subparsers)
    metadata.MetadataAction.register(subparsers)
    return parser


async def _run(action: Any, args: argparse.Namespace) -> None:
    with task_service_context() as task_service:
        try:
            await action.run(**vars(args))
        finally:
            await task_service.close()


def main() -> None:
    """kubit command line tool main entry point."""

    def str_presenter(dumper: yaml.Dumper, data: Any) -> Any:
        """Represent multi-line yaml strings as you'd expect.

        See https://github.com/yaml/pyyaml/issues/240
        """
        return dumper.represent_scalar(
            "tag:yaml.org,2002:str", data, style="|" if data.count("\n") > 0 else None
        )

    yaml.add_representer(str, str_presenter)

    parser = _make_parser()
    args = parser.parse_args()

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(_run(action, args))
    except KubitException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("kubit error: ", err, file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
